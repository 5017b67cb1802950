"""Allocation lifecycle: plan, reserve, populate, reconcile, close."""

import random
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from .allocator import BlockAllocation, BlockAllocator, ProbeFn
from .config import PortBlockConfig, default_config
from .errors import PortBlockError, ReservationFailedError
from .logging_setup import get_logger
from .metrics.prometheus import PortBlockMetrics, get_metrics
from .net.ephemeral import EphemeralRangeProvider, get_ephemeral_range_provider
from .net.probe import is_port_in_use
from .planner import plan_blocks
from .pool import PortPool, ReconcileLoop


logger = get_logger(__name__)


class Allocation:
    """A reserved port block and the pool of free ports inside it.

    Create one with Allocation.new() (or open_allocation() for scoped use)
    and always close() it; closing releases the anchor port and stops the
    reconcile thread.
    """

    def __init__(
        self,
        config: PortBlockConfig,
        effective_max_blocks: int,
        block: BlockAllocation,
        pool: PortPool,
    ):
        self.config = config
        self.effective_max_blocks = effective_max_blocks
        self.block = block.block
        self.first_port = block.first_port
        self.reservation = block.reservation
        self.pool = pool
        self.logger = logger.bind(first_port=self.first_port)
        self._loop: Optional[ReconcileLoop] = None
        self._close_lock = threading.Lock()
        self._closed = False

    @classmethod
    def new(
        cls,
        config: Optional[PortBlockConfig] = None,
        provider: Optional[EphemeralRangeProvider] = None,
        metrics: Optional[PortBlockMetrics] = None,
        rng: Optional[random.Random] = None,
        probe: ProbeFn = is_port_in_use,
    ) -> "Allocation":
        """
        Allocate a port block.

        Raises:
            EphemeralRangeError: If the host ephemeral range cannot be read
            RangeExhaustedError: If every block overlaps the ephemeral range
            BlockTooLargeError: If the blocks do not fit below port 65536
            ReservationFailedError: If the chosen block's anchor is taken
        """
        config = config or default_config()
        metrics = metrics or get_metrics()
        provider = provider or get_ephemeral_range_provider(config.os_override)

        ephemeral_range = provider.get_range()
        effective_max_blocks = plan_blocks(config, ephemeral_range)

        allocator = BlockAllocator(config, rng=rng, probe=probe)
        try:
            block = allocator.allocate(effective_max_blocks)
        except ReservationFailedError:
            metrics.record_reservation_failure()
            raise

        try:
            pool = PortPool(
                block.first_port,
                config.block_size,
                free_ports=block.free_ports,
                probe=probe,
                metrics=metrics,
                take_timeout_s=config.take_timeout_s,
            )
            allocation = cls(config, effective_max_blocks, block, pool)
            if config.auto_reconcile:
                allocation.start_reconciler()
        except BaseException:
            block.reservation.release()
            raise

        return allocation

    def start_reconciler(self) -> None:
        """Start the background reconcile thread (no-op if running or closed)."""
        with self._close_lock:
            if self._closed or self._loop is not None:
                return
            self._loop = ReconcileLoop(self.pool, self.config.reconcile_interval_s)
            self._loop.start()
        self.logger.debug(f"Started reconciler every {self.config.reconcile_interval_s}s")

    @property
    def block_size(self) -> int:
        return self.config.block_size

    @property
    def closed(self) -> bool:
        return self._closed

    def take(self, n: int, timeout: Optional[float] = None) -> List[int]:
        """Take n free ports from the block."""
        return self.pool.take(n, timeout=timeout)

    def must_take(self, n: int) -> List[int]:
        """Take n ports or abort the process. Meant for test and bootstrap setup.

        Failure raises SystemExit, which only ends the process when called
        from the main thread; in a worker thread it ends that thread alone.
        Call it from the main thread, or use take() elsewhere.
        """
        try:
            return self.take(n)
        except PortBlockError as e:
            self.logger.critical(f"Could not take {n} ports: {e}")
            raise SystemExit(1) from e

    def return_ports(self, ports: Iterable[int]) -> None:
        """Give ports back to the pool."""
        self.pool.return_ports(ports)

    def close(self) -> None:
        """Release the anchor reservation and stop reconciling."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            loop, self._loop = self._loop, None

        try:
            self.reservation.release()
        finally:
            if loop is not None:
                loop.stop()
        self.logger.info(f"Released port block at {self.first_port}")

    def __enter__(self) -> "Allocation":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Allocation(first_port={self.first_port}, block_size={self.block_size}, "
            f"free={self.pool.free_count}, closed={self._closed})"
        )


def new(config: Optional[PortBlockConfig] = None, **kwargs) -> Allocation:
    """Allocate a port block. See Allocation.new."""
    return Allocation.new(config, **kwargs)


@contextmanager
def open_allocation(config: Optional[PortBlockConfig] = None, **kwargs) -> Iterator[Allocation]:
    """Allocate a port block for the duration of a with-block."""
    allocation = Allocation.new(config, **kwargs)
    try:
        yield allocation
    finally:
        allocation.close()
