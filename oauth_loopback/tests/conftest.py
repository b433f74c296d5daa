"""
Pytest configuration for oauth_loopback. Pin settings through the environment before modules import config.
"""
import os
import socket

import pytest

# No post-success hold in tests; idle sessions still go away on their own
os.environ["OAUTH_CALLBACK_FLUSH_DELAY"] = "0"
os.environ["OAUTH_CALLBACK_TIMEOUT_SECONDS"] = "30"

from oauth_loopback.callback_server import CallbackServer, CallbackSession
from oauth_loopback.events import RecordingEventSink
from oauth_loopback.nonce_registry import NonceRegistry


def _free_port() -> int:
    """A port the OS reports free right now (bind to 0, read it back, release)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port():
    return _free_port()


@pytest.fixture
def registry():
    return NonceRegistry()


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def make_server(registry, sink):
    """
    Build a CallbackServer whose app is driven with TestClient (the worker thread is never started).
    The nonce is registered for the port, as SessionStarter.start() would do.
    """
    sockets = []

    def _make(port: int = 17900, nonce: str = "abc123", max_attempts: int = 10, event_sink=None) -> CallbackServer:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sockets.append(sock)
        registry.register(port, nonce)
        session = CallbackSession(port=port, nonce=nonce, remaining_attempts=max_attempts)
        return CallbackServer(
            sock,
            session,
            registry,
            event_sink if event_sink is not None else sink,
            flush_delay=0,
            timeout_seconds=0,
        )

    yield _make
    for sock in sockets:
        sock.close()
