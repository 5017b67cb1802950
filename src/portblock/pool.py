import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

from .errors import InsufficientPortsError, TakeTimeoutError
from .logging_setup import get_logger
from .metrics.prometheus import PortBlockMetrics, get_metrics
from .net.probe import is_port_in_use


logger = get_logger(__name__)


class PortPool:
    """Thread-safe registry of the free and pending ports of one block.

    Free ports are confirmed available and handed out in FIFO order. Pending
    ports were returned by a caller and wait until a probe shows the old
    connection is gone. Both lists only ever hold ports strictly between the
    block anchor and the end of the block.
    """
    
    def __init__(
        self,
        first_port: int,
        block_size: int,
        free_ports: Iterable[int] = (),
        probe: Callable[[int], bool] = is_port_in_use,
        metrics: Optional[PortBlockMetrics] = None,
        take_timeout_s: Optional[float] = None,
    ):
        self.first_port = first_port
        self.block_size = block_size
        self.probe = probe
        self.metrics = metrics or get_metrics()
        self.take_timeout_s = take_timeout_s
        self.lock = threading.Lock()
        self.logger = logger.bind(first_port=first_port)

        self._free: Deque[int] = deque()
        self._pending: List[int] = []
        for port in free_ports:
            if self.in_block(port) and port not in self._free:
                self._free.append(port)
        self._publish()
    
    def in_block(self, port: int) -> bool:
        """Check whether the port belongs to this pool's block (anchor excluded)."""
        return self.first_port < port < self.first_port + self.block_size
    
    def take(self, n: int, timeout: Optional[float] = None) -> List[int]:
        """
        Take n free ports.
        
        Every port is probed again before it is handed out; ports that were
        grabbed by another process since the last scan are dropped for good.
        
        Args:
            n: Number of ports wanted
            timeout: Max seconds to wait for the pool lock (default: pool setting)
            
        Returns:
            Ports in the order they left the free queue
            
        Raises:
            InsufficientPortsError: If fewer than n ports are free, or if
                stale ports drain the pool part way through. The free set is
                left as it was minus any stale ports.
            TakeTimeoutError: If the lock could not be acquired in time
        """
        if n <= 0:
            return []
        
        if timeout is None:
            timeout = self.take_timeout_s
        acquired = self.lock.acquire(timeout=timeout) if timeout is not None else self.lock.acquire()
        if not acquired:
            self.metrics.record_take(self.first_port, False)
            raise TakeTimeoutError(f"Timed out after {timeout}s waiting for the port pool")
        
        try:
            if n > len(self._free):
                self.metrics.record_take(self.first_port, False)
                raise InsufficientPortsError(n, len(self._free))
            
            ports: List[int] = []
            stale: List[int] = []
            while len(ports) < n:
                if not self._free:
                    # Starved by stale ports; put back what we confirmed
                    self._free.extendleft(reversed(ports))
                    self._report_stale(stale)
                    self._publish()
                    self.metrics.record_take(self.first_port, False)
                    raise InsufficientPortsError(n, len(ports))
                
                port = self._free.popleft()
                if self.probe(port):
                    stale.append(port)
                    continue
                ports.append(port)
            
            self._report_stale(stale)
            self._publish()
        finally:
            self.lock.release()
        
        self.metrics.record_take(self.first_port, True)
        self.logger.debug(f"Took {len(ports)} ports", ports=ports)
        return ports
    
    def return_ports(self, ports: Iterable[int]) -> None:
        """Hand ports back. They become free again after a later reconcile()."""
        ports = list(ports)
        if not ports:
            return
        
        with self.lock:
            for port in ports:
                if not self.in_block(port):
                    self.logger.debug(f"Ignoring returned port {port} outside block", port=port)
                    continue
                if port in self._pending or port in self._free:
                    continue
                self._pending.append(port)
            self._publish()
    
    def reconcile(self) -> List[int]:
        """Move pending ports that probe as unbound back to the free set.
        
        Probing happens outside the lock; the move is re-checked under it.
        Returns the reclaimed ports.
        """
        with self.lock:
            candidates = list(self._pending)
        if not candidates:
            return []
        
        start = time.perf_counter()
        unbound = [port for port in candidates if not self.probe(port)]
        
        reclaimed: List[int] = []
        with self.lock:
            for port in unbound:
                if port in self._pending:
                    self._pending.remove(port)
                    self._free.append(port)
                    reclaimed.append(port)
            self._publish()
        
        self.metrics.record_reconcile(self.first_port, len(reclaimed), time.perf_counter() - start)
        if reclaimed:
            self.logger.debug(f"Reclaimed {len(reclaimed)} returned ports", ports=reclaimed)
        return reclaimed
    
    @property
    def free_count(self) -> int:
        with self.lock:
            return len(self._free)
    
    @property
    def pending_count(self) -> int:
        with self.lock:
            return len(self._pending)
    
    def snapshot(self) -> Dict[str, List[int]]:
        """Get a copy of both port lists."""
        with self.lock:
            return {"free": list(self._free), "pending": list(self._pending)}
    
    def _report_stale(self, stale: List[int]) -> None:
        if stale:
            self.logger.warning(
                f"Discarded {len(stale)} ports bound by another process",
                ports=stale,
                event="stale_ports",
            )
            self.metrics.record_stale_ports(self.first_port, len(stale))
    
    def _publish(self) -> None:
        self.metrics.update_pool_counts(self.first_port, len(self._free), len(self._pending))
    
    def __len__(self) -> int:
        """Return number of free ports."""
        return self.free_count
    
    def __contains__(self, port: int) -> bool:
        """Check if a port is tracked as free or pending."""
        with self.lock:
            return port in self._free or port in self._pending


class ReconcileLoop(threading.Thread):
    """Background thread that reconciles a pool on a fixed interval."""

    def __init__(self, pool: PortPool, interval_s: float = 0.5):
        super().__init__(name=f"portblock-reconcile-{pool.first_port}", daemon=True)
        self.pool = pool
        self.interval_s = interval_s
        self._stop_event = threading.Event()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the loop to exit and wait for it. Safe to call repeatedly."""
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning(f"Thread {self.name} did not shutdown cleanly")

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            try:
                self.pool.reconcile()
            except Exception as e:
                logger.exception(f"Reconcile cycle failed for {self.pool.first_port}: {e}")
