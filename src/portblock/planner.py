"""Block planning against the host ephemeral port range."""

from dataclasses import dataclass
from typing import Iterator, Tuple

from .config import PORT_SPACE, PortBlockConfig
from .errors import BlockTooLargeError, RangeExhaustedError
from .logging_setup import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class Block:
    """A contiguous run of ports; port_min is the block's anchor."""
    index: int
    port_min: int
    port_max: int

    def __contains__(self, port: int) -> bool:
        return self.port_min <= port <= self.port_max


def block_at(config: PortBlockConfig, index: int) -> Block:
    port_min = config.lower_bound + index * config.block_size
    return Block(index=index, port_min=port_min, port_max=port_min + config.block_size - 1)


def iter_blocks(config: PortBlockConfig) -> Iterator[Block]:
    """Yield the candidate blocks in index order."""
    for index in range(config.max_blocks):
        yield block_at(config, index)


def range_overlap(min1: int, max1: int, min2: int, max2: int) -> bool:
    """Check whether two inclusive ranges intersect. Inverted ranges never do."""
    if min1 > max1:
        return False
    if min2 > max2:
        return False
    return min1 <= max2 and min2 <= max1


def plan_blocks(config: PortBlockConfig, ephemeral_range: Tuple[int, int]) -> int:
    """Return how many leading blocks can be used without touching the ephemeral range.

    Raises:
        RangeExhaustedError: if the very first block already overlaps
        BlockTooLargeError: if the usable blocks run past the port space
    """
    ephemeral_min, ephemeral_max = ephemeral_range
    effective_max_blocks = config.max_blocks

    for block in iter_blocks(config):
        if range_overlap(block.port_min, block.port_max, ephemeral_min, ephemeral_max):
            effective_max_blocks = block.index
            logger.debug(
                f"Block {block.index} [{block.port_min}-{block.port_max}] overlaps "
                f"ephemeral range {ephemeral_min}-{ephemeral_max}",
                block=block.index,
            )
            break

    if effective_max_blocks <= 0:
        raise RangeExhaustedError(
            f"No port blocks available outside of ephemeral range "
            f"{ephemeral_min}-{ephemeral_max}"
        )

    if config.lower_bound + effective_max_blocks * config.block_size > PORT_SPACE:
        raise BlockTooLargeError(
            f"Block size too big or too many blocks allocated: "
            f"{effective_max_blocks} x {config.block_size} from {config.lower_bound} "
            f"exceeds port {PORT_SPACE - 1}"
        )

    return effective_max_blocks
