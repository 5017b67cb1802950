import random
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import PortBlockConfig
from .errors import ReservationFailedError
from .logging_setup import get_logger
from .net.probe import PortReservation, is_port_in_use


logger = get_logger(__name__)


ProbeFn = Callable[[int], bool]
ReserveFn = Callable[[int], PortReservation]


@dataclass
class BlockAllocation:
    """Result of allocating a block: the held anchor plus the free ports behind it."""
    block: int
    first_port: int
    reservation: PortReservation
    free_ports: List[int] = field(default_factory=list)


class BlockAllocator:
    """Picks a random usable block and reserves its anchor port."""

    def __init__(
        self,
        config: PortBlockConfig,
        rng: Optional[random.Random] = None,
        probe: ProbeFn = is_port_in_use,
        reserve: ReserveFn = PortReservation.acquire,
    ):
        self.config = config
        # Own random source; seeded once here so no global state is touched
        self.rng = rng if rng is not None else random.Random(config.seed)
        self.probe = probe
        self.reserve = reserve

    def allocate(self, effective_max_blocks: int) -> BlockAllocation:
        """
        Reserve one block and scan it for free ports.

        Args:
            effective_max_blocks: Number of usable blocks from the planner

        Returns:
            BlockAllocation holding the reservation and the free ports in
            ascending order, anchor excluded

        Raises:
            ReservationFailedError: If the anchor port cannot be bound. No
                other block is tried.
        """
        if effective_max_blocks <= 0:
            raise ValueError("effective_max_blocks must be positive")

        block = self.rng.randrange(effective_max_blocks)
        first = self.config.lower_bound + block * self.config.block_size

        try:
            reservation = self.reserve(first)
        except OSError as e:
            logger.warning(f"Could not reserve block {block} anchor {first}: {e}", block=block, port=first)
            raise ReservationFailedError(first, str(e)) from e

        try:
            free_ports = self.scan(first)
        except BaseException:
            reservation.release()
            raise

        logger.info(
            f"Allocated block {block} at {first} with {len(free_ports)} free ports",
            block=block,
            first_port=first,
        )
        return BlockAllocation(
            block=block,
            first_port=first,
            reservation=reservation,
            free_ports=free_ports,
        )

    def scan(self, first_port: int) -> List[int]:
        """Return the free ports behind the anchor, ascending."""
        return [
            port
            for port in range(first_port + 1, first_port + self.config.block_size)
            if not self.probe(port)
        ]
