"""
Exception taxonomy for port block allocation.

Everything raised by the allocator derives from PortBlockError so callers can
catch the whole family at once. Ephemeral range lookups get their own branch
because they happen before any port is touched.
"""

from __future__ import annotations

from typing import Optional


class PortBlockError(RuntimeError):
    """Base class for errors raised by portblock."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RangeExhaustedError(PortBlockError):
    """No usable block remains once the ephemeral range is cut out."""


class BlockTooLargeError(PortBlockError):
    """The configured blocks do not fit into the TCP port space."""


class ReservationFailedError(PortBlockError):
    """The anchor port of the chosen block could not be bound."""

    def __init__(self, port: int, reason: Optional[str] = None):
        message = f"Failed to reserve port block anchor {port}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.port = port


class InsufficientPortsError(PortBlockError):
    """More ports were requested than the pool currently holds."""

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Requested {requested} ports but only {available} are free"
        )
        self.requested = requested
        self.available = available


class TakeTimeoutError(PortBlockError):
    """The pool lock could not be acquired within the take timeout."""


class EphemeralRangeError(PortBlockError):
    """Base class for ephemeral port range lookup failures."""


class UnsupportedOSError(EphemeralRangeError):
    """No ephemeral range query strategy exists for this OS."""

    def __init__(self, os_name: str):
        super().__init__(f"Unsupported OS for ephemeral port range lookup: {os_name}")
        self.os_name = os_name


class QueryFailedError(EphemeralRangeError):
    """The host query for the ephemeral range failed or returned garbage."""


__all__ = [
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
