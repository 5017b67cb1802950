"""
Host ephemeral port range lookup.

The allocator only needs a (min, max) pair. Linux and macOS expose it through
sysctl; everything else fails explicitly instead of guessing.
"""

import re
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple

from ..errors import QueryFailedError, UnsupportedOSError
from ..logging_setup import get_logger


logger = get_logger(__name__)


LINUX_SYSCTL_KEY = "net.ipv4.ip_local_port_range"
LINUX_PROC_PATH = Path("/proc/sys/net/ipv4/ip_local_port_range")
DARWIN_SYSCTL_KEYS = ("net.inet.ip.portrange.first", "net.inet.ip.portrange.last")

_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s+(\d+)\s*$")


def parse_port_range(output: str) -> Tuple[int, int]:
    """Parse "<min> <max>" as printed by sysctl (tabs and newlines allowed)."""
    m = _RANGE_PATTERN.match(output)
    if m is None:
        raise QueryFailedError(f"Unexpected sysctl value {output!r}")
    return int(m.group(1)), int(m.group(2))


def current_os() -> str:
    """Return the normalized name of the running OS."""
    platform = sys.platform
    if platform.startswith("linux"):
        return "linux"
    return platform


class EphemeralRangeProvider(ABC):
    """Interface for looking up the host's ephemeral port range."""

    @abstractmethod
    def get_range(self) -> Tuple[int, int]:
        """Return the (min, max) ephemeral port range."""
        pass


class StaticEphemeralRange(EphemeralRangeProvider):
    """Provider returning a fixed range."""

    def __init__(self, min_port: int, max_port: int):
        self.min_port = min_port
        self.max_port = max_port

    def get_range(self) -> Tuple[int, int]:
        return self.min_port, self.max_port

    def __repr__(self) -> str:
        return f"StaticEphemeralRange({self.min_port}, {self.max_port})"


class SysctlEphemeralRangeProvider(EphemeralRangeProvider):
    """Provider querying the kernel through the sysctl command."""

    def __init__(self, os_name: Optional[str] = None, timeout: int = 5):
        self.os_name = (os_name or current_os()).lower()
        self.timeout = timeout

    def get_range(self) -> Tuple[int, int]:
        if self.os_name == "linux":
            return self._linux_range()
        if self.os_name == "darwin":
            return self._darwin_range()
        raise UnsupportedOSError(self.os_name)

    def _sysctl(self, *keys: str) -> str:
        cmd = ["sysctl", "-n", *keys]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            raise QueryFailedError(f"sysctl timed out after {self.timeout}s")
        except FileNotFoundError:
            raise
        except OSError as e:
            raise QueryFailedError(f"Failed to run sysctl: {e}")

        if result.returncode != 0:
            raw_error = (result.stderr or result.stdout or "").strip() or "sysctl failed"
            raise QueryFailedError(f"sysctl {' '.join(keys)} failed: {raw_error}")

        return result.stdout

    def _linux_range(self) -> Tuple[int, int]:
        try:
            output = self._sysctl(LINUX_SYSCTL_KEY)
        except FileNotFoundError:
            # Minimal containers often ship without procps
            logger.debug(f"sysctl not found, reading {LINUX_PROC_PATH}")
            try:
                output = LINUX_PROC_PATH.read_text()
            except OSError as e:
                raise QueryFailedError(f"Cannot read {LINUX_PROC_PATH}: {e}")
        return parse_port_range(output)

    def _darwin_range(self) -> Tuple[int, int]:
        try:
            output = self._sysctl(*DARWIN_SYSCTL_KEYS)
        except FileNotFoundError as e:
            raise QueryFailedError(f"sysctl not available: {e}")
        return parse_port_range(output)


def get_ephemeral_range_provider(os_override: Optional[str] = None) -> EphemeralRangeProvider:
    """Return the provider for the given OS (the running one by default)."""
    return SysctlEphemeralRangeProvider(os_name=os_override)
