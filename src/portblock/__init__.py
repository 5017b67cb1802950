from .allocation import Allocation, new, open_allocation
from .config import PortBlockConfig, default_config, load_config
from .errors import (
    PortBlockError,
    RangeExhaustedError,
    BlockTooLargeError,
    ReservationFailedError,
    InsufficientPortsError,
    TakeTimeoutError,
    EphemeralRangeError,
    UnsupportedOSError,
    QueryFailedError,
)

__all__ = [
    "Allocation",
    "new",
    "open_allocation",
    "PortBlockConfig",
    "default_config",
    "load_config",
    "PortBlockError",
    "RangeExhaustedError",
    "BlockTooLargeError",
    "ReservationFailedError",
    "InsufficientPortsError",
    "TakeTimeoutError",
    "EphemeralRangeError",
    "UnsupportedOSError",
    "QueryFailedError",
]
