"""
Entry point for starting OAuth redirect-capture sessions.
start(): allocate a loopback port, issue a nonce, spawn the listener, return (port, nonce) without blocking.
"""
import logging
import threading

from oauth_loopback.audit import EVENT_NONCE_ISSUED, log_audit
from oauth_loopback.callback_server import CallbackServer, CallbackSession
from oauth_loopback.config import FLUSH_DELAY, HOST, MAX_ATTEMPTS, PORT_MAX, PORT_MIN, TIMEOUT_SECONDS
from oauth_loopback.events import EventSink
from oauth_loopback.nonce_registry import NonceRegistry
from oauth_loopback.ports import allocate_port

logger = logging.getLogger(__name__)


class SessionStarter:
    """
    Owns the nonce registry shared by its sessions and keeps track of live listeners,
    so the host can shut them all down explicitly (e.g. on application exit).
    """

    def __init__(
        self,
        sink: EventSink,
        registry: NonceRegistry | None = None,
        *,
        port_min: int = PORT_MIN,
        port_max: int = PORT_MAX,
        max_attempts: int = MAX_ATTEMPTS,
        flush_delay: float = FLUSH_DELAY,
        timeout_seconds: float = TIMEOUT_SECONDS,
    ) -> None:
        self.sink = sink
        self.registry = registry if registry is not None else NonceRegistry()
        self.port_min = port_min
        self.port_max = port_max
        self.max_attempts = max_attempts
        self.flush_delay = flush_delay
        self.timeout_seconds = timeout_seconds
        self._servers: list[CallbackServer] = []
        self._lock = threading.Lock()

    def start(self) -> tuple[int, str]:
        """
        Start one session. Returns (port, nonce) for the browser redirect page.
        Raises NoAvailablePortError if every port in the range is taken.
        """
        port, sock = allocate_port(self.port_min, self.port_max, HOST)
        nonce = self.registry.generate()
        self.registry.register(port, nonce)

        session = CallbackSession(port=port, nonce=nonce, remaining_attempts=self.max_attempts)
        try:
            server = CallbackServer(
                sock,
                session,
                self.registry,
                self.sink,
                flush_delay=self.flush_delay,
                timeout_seconds=self.timeout_seconds,
            )
            server.start()
        except Exception:
            self.registry.discard(port)
            sock.close()
            raise
        with self._lock:
            self._servers = [s for s in self._servers if s.is_running]
            self._servers.append(server)

        log_audit(EVENT_NONCE_ISSUED, port=port)
        logger.info("OAuth callback session listening on %s:%d", HOST, port)
        return port, nonce

    def active_servers(self) -> list[CallbackServer]:
        with self._lock:
            self._servers = [s for s in self._servers if s.is_running]
            return list(self._servers)

    def shutdown(self, timeout: float | None = None) -> None:
        """Close every live listener and wait for the worker threads to exit."""
        servers = self.active_servers()
        for server in servers:
            server.close()
        for server in servers:
            if not server.join(timeout):
                logger.warning("Callback listener on port %d did not exit within %s seconds", server.port, timeout)


def start_oauth_server(sink: EventSink, registry: NonceRegistry | None = None) -> tuple[int, str]:
    """One-shot helper with default settings; the returned listener runs until it retires on its own."""
    return SessionStarter(sink, registry).start()
