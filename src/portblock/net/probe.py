import socket
from typing import Optional

from ..logging_setup import get_logger


logger = get_logger(__name__)


LOOPBACK = "127.0.0.1"


def _listen(port: int, host: str) -> socket.socket:
    """Bind a listening TCP socket, closing it again if anything fails."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(1)
    except OSError:
        sock.close()
        raise
    return sock


def is_port_in_use(port: int, host: str = LOOPBACK) -> bool:
    """Check whether something is already bound to the port.

    Any bind error counts as "in use", including permission errors on
    privileged ports, so the answer can be a false positive.
    """
    try:
        sock = _listen(port, host)
    except OSError as e:
        logger.debug(f"Port {port} unavailable: {e}", port=port)
        return True
    sock.close()
    return False


class PortReservation:
    """A listening socket held on one port to keep other allocators off it."""

    def __init__(self, port: int, sock: socket.socket, host: str = LOOPBACK):
        self.port = port
        self.host = host
        self._sock: Optional[socket.socket] = sock

    @classmethod
    def acquire(cls, port: int, host: str = LOOPBACK) -> "PortReservation":
        """Bind the port. Raises OSError if it is taken."""
        sock = _listen(port, host)
        logger.debug(f"Reserved port {port}", port=port)
        return cls(port, sock, host)

    @property
    def held(self) -> bool:
        return self._sock is not None

    def release(self) -> None:
        """Close the socket. Safe to call more than once."""
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()
            logger.debug(f"Released reservation on port {self.port}", port=self.port)

    def __enter__(self) -> "PortReservation":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "held" if self.held else "released"
        return f"PortReservation({self.host}:{self.port}, {state})"
