from typing import Optional
from threading import Lock

from prometheus_client import Counter, Gauge, Histogram, start_http_server, CollectorRegistry

from ..logging_setup import get_logger
from ..config import MetricsConfig


logger = get_logger(__name__)


class PortBlockMetrics:
    """Prometheus metrics for the port pool."""
    
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        # Use a per-instance registry to avoid global duplication across tests
        self.registry: CollectorRegistry = registry or CollectorRegistry()

        self.free_ports = Gauge(
            'portblock_free_ports',
            'Number of ports confirmed free in the pool',
            ['first_port'],
            registry=self.registry
        )
        
        self.pending_ports = Gauge(
            'portblock_pending_ports',
            'Number of returned ports waiting for reconciliation',
            ['first_port'],
            registry=self.registry
        )
        
        self.take_total = Counter(
            'portblock_take_total',
            'Total number of take requests',
            ['first_port', 'status'],
            registry=self.registry
        )
        
        self.stale_ports_total = Counter(
            'portblock_stale_ports_total',
            'Ports discarded by take because something else bound them',
            ['first_port'],
            registry=self.registry
        )
        
        self.reclaimed_ports_total = Counter(
            'portblock_reclaimed_ports_total',
            'Returned ports moved back to the free set',
            ['first_port'],
            registry=self.registry
        )
        
        self.reservation_failures_total = Counter(
            'portblock_reservation_failures_total',
            'Block anchor ports that could not be reserved',
            registry=self.registry
        )
        
        self.reconcile_duration = Histogram(
            'portblock_reconcile_duration_seconds',
            'Time spent in one reconciliation cycle',
            ['first_port'],
            registry=self.registry
        )
        
        self._lock = Lock()
        self._http_server_port: Optional[int] = None
    
    def update_pool_counts(self, first_port: int, free: int, pending: int) -> None:
        """Update free and pending gauges."""
        self.free_ports.labels(first_port=str(first_port)).set(free)
        self.pending_ports.labels(first_port=str(first_port)).set(pending)
    
    def record_take(self, first_port: int, success: bool) -> None:
        status = "success" if success else "failure"
        self.take_total.labels(first_port=str(first_port), status=status).inc()
    
    def record_stale_ports(self, first_port: int, count: int) -> None:
        if count > 0:
            self.stale_ports_total.labels(first_port=str(first_port)).inc(count)
    
    def record_reconcile(self, first_port: int, reclaimed: int, duration: float) -> None:
        """Record one reconciliation cycle."""
        if reclaimed > 0:
            self.reclaimed_ports_total.labels(first_port=str(first_port)).inc(reclaimed)
        self.reconcile_duration.labels(first_port=str(first_port)).observe(duration)
    
    def record_reservation_failure(self) -> None:
        self.reservation_failures_total.inc()
    
    def start_http_server(self, config: MetricsConfig) -> bool:
        """Start the Prometheus HTTP server."""
        if not config.enabled:
            logger.info("Metrics disabled in configuration")
            return False
        
        with self._lock:
            if self._http_server_port is not None:
                logger.warning(f"Metrics server already running on port {self._http_server_port}")
                return True
            
            try:
                start_http_server(config.port, addr=config.bind, registry=self.registry)
                self._http_server_port = config.port
                
                logger.info(f"Started Prometheus metrics server on {config.bind}:{config.port}")
                return True
                
            except OSError as e:
                logger.error(f"Failed to start metrics server: {e}")
                return False
    
    def is_running(self) -> bool:
        """Check if metrics server is running."""
        with self._lock:
            return self._http_server_port is not None


# Global metrics instance
metrics = PortBlockMetrics()


def get_metrics() -> PortBlockMetrics:
    """Get the global metrics instance."""
    return metrics
