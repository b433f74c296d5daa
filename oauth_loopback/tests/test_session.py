"""
End-to-end tests: SessionStarter against real loopback listeners, exercised with httpx.
"""
import socket

import httpx
import pytest

from oauth_loopback.config import PORT_MAX, PORT_MIN
from oauth_loopback.errors import NoAvailablePortError
from oauth_loopback.events import QueueEventSink, RecordingEventSink
from oauth_loopback.ports import allocate_port
from oauth_loopback.session import SessionStarter, start_oauth_server


@pytest.fixture
def starter(registry, sink, free_port):
    s = SessionStarter(sink, registry, port_min=free_port, port_max=free_port + 20, timeout_seconds=30)
    yield s
    s.shutdown(timeout=5)


def _url(port: int) -> str:
    return f"http://127.0.0.1:{port}/"


def _server_for(starter, port):
    return next(s for s in starter.active_servers() if s.port == port)


def test_start_returns_port_in_range_and_registers_nonce(starter, registry, free_port):
    port, nonce = starter.start()
    assert free_port <= port <= free_port + 20
    assert len(registry) == 1
    assert registry.expected(port) == nonce
    assert _server_for(starter, port).is_running


def test_full_callback_flow(starter, registry, sink):
    port, nonce = starter.start()
    server = _server_for(starter, port)

    pre = httpx.options(_url(port), headers={"Origin": "https://app.example"})
    assert pre.status_code == 204
    assert pre.headers["access-control-allow-origin"] == "*"

    r = httpx.post(_url(port), json={"code": "authcode1", "nonce": nonce, "state": "xyz"})
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert sink.events == [("oauth-callback", f"http://localhost:{port}?code=authcode1&state=xyz")]
    assert port not in registry

    assert server.join(timeout=5)
    assert server.session.closed_reason == "completed"
    # Listener released; the port can be bound again
    again, sock = allocate_port(port, port)
    sock.close()
    assert again == port


def test_wrong_nonce_keeps_session_open(starter, registry, sink):
    port, nonce = starter.start()
    r = httpx.post(_url(port), json={"code": "c", "nonce": "wrong", "state": "s"})
    assert r.status_code == 403
    assert r.json() == {"error": "Invalid nonce"}
    assert registry.expected(port) == nonce
    assert sink.events == []
    assert _server_for(starter, port).is_running


def test_listener_exits_after_max_attempts(starter, registry):
    port, _ = starter.start()
    server = _server_for(starter, port)
    for _ in range(10):
        assert httpx.options(_url(port)).status_code == 204
    assert server.join(timeout=5)
    assert server.session.closed_reason == "exhausted"
    assert port not in registry
    again, sock = allocate_port(port, port)
    sock.close()
    assert again == port


def test_concurrent_sessions_use_distinct_ports(starter, registry, sink):
    port_a, nonce_a = starter.start()
    port_b, nonce_b = starter.start()
    assert port_a != port_b
    assert len(registry) == 2

    r = httpx.post(_url(port_b), json={"code": "b", "nonce": nonce_b, "state": "sb"})
    assert r.status_code == 200
    # Nonces are bound to their own port
    r = httpx.post(_url(port_a), json={"code": "a", "nonce": nonce_b, "state": "sa"})
    assert r.status_code == 403
    assert registry.expected(port_a) == nonce_a
    assert sink.payloads("oauth-callback") == [f"http://localhost:{port_b}?code=b&state=sb"]


def test_start_fails_when_range_exhausted(registry, sink, free_port):
    held = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    held.bind(("127.0.0.1", free_port))
    held.listen()
    try:
        starter = SessionStarter(sink, registry, port_min=free_port, port_max=free_port)
        with pytest.raises(NoAvailablePortError):
            starter.start()
        assert len(registry) == 0
        assert starter.active_servers() == []
    finally:
        held.close()


def test_shutdown_closes_idle_sessions(registry, sink, free_port):
    starter = SessionStarter(sink, registry, port_min=free_port, port_max=free_port + 20)
    port, _ = starter.start()
    server = _server_for(starter, port)
    starter.shutdown(timeout=5)
    assert not server.is_running
    assert server.session.closed_reason == "cancelled"
    assert port not in registry
    assert starter.active_servers() == []


def test_idle_session_times_out(registry, free_port):
    starter = SessionStarter(
        RecordingEventSink(), registry, port_min=free_port, port_max=free_port + 20, timeout_seconds=0.2
    )
    port, _ = starter.start()
    server = _server_for(starter, port)
    assert server.join(timeout=5)
    assert server.session.closed_reason == "timeout"
    assert port not in registry


def test_start_oauth_server_with_queue_sink(registry):
    sink = QueueEventSink()
    port, nonce = start_oauth_server(sink, registry)
    assert PORT_MIN <= port <= PORT_MAX
    r = httpx.post(_url(port), json={"code": "q", "nonce": nonce, "state": "s"})
    assert r.status_code == 200
    assert sink.get(timeout=5) == ("oauth-callback", f"http://localhost:{port}?code=q&state=s")
    assert sink.get(timeout=0.05) is None
