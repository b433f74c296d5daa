"""
Loopback port allocation for callback listeners.
Scans the configured range once, ascending, and keeps the first socket that binds.
"""
import logging
import os
import socket

from oauth_loopback.config import HOST, PORT_MAX, PORT_MIN
from oauth_loopback.errors import NoAvailablePortError

logger = logging.getLogger(__name__)


def _new_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    # Lets a port whose previous session left TIME_WAIT connections be reused.
    # Not on Windows, where SO_REUSEADDR would allow binding over a live listener.
    if os.name != "nt":
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    return sock


def allocate_port(
    port_min: int = PORT_MIN,
    port_max: int = PORT_MAX,
    host: str = HOST,
) -> tuple[int, socket.socket]:
    """
    Bind and listen on the first free port in port_min..port_max (inclusive).
    Returns (port, listening_socket); the caller owns the socket from here on.
    Raises NoAvailablePortError when no port in the range can be bound.
    """
    for port in range(port_min, port_max + 1):
        sock = _new_socket()
        try:
            sock.bind((host, port))
            sock.listen()
        except OSError:
            sock.close()
            continue
        logger.debug("Bound callback listener on %s:%d", host, port)
        return port, sock
    raise NoAvailablePortError(port_min, port_max)
