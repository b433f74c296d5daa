"""
Callback listener for one OAuth session.
Serves a small FastAPI app with uvicorn on an already-bound loopback socket, from a dedicated thread.
OPTIONS: CORS preflight. POST: {code, nonce, state} from the redirect page; one success per session.
The listener retires after a validated POST, after max attempts, on idle timeout, or on close().
"""
import asyncio
import json
import logging
import socket
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import quote

import uvicorn
from fastapi import APIRouter, BackgroundTasks, FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from oauth_loopback.audit import (
    EVENT_CALLBACK_ACCEPTED,
    EVENT_NONCE_REJECTED,
    EVENT_REQUEST_REJECTED,
    EVENT_SESSION_CLOSED,
    get_client_ip,
    log_audit,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
)
from oauth_loopback.config import CALLBACK_EVENT, FLUSH_DELAY, TIMEOUT_SECONDS
from oauth_loopback.cors import ALLOWED_METHODS, error_response, json_response, preflight_response
from oauth_loopback.errors import (
    BodyReadError,
    CallbackRequestError,
    InvalidJsonError,
    MethodNotAllowedError,
    MissingFieldsError,
    NonceMismatchError,
)
from oauth_loopback.events import EventSink
from oauth_loopback.nonce_registry import NonceRegistry

logger = logging.getLogger(__name__)
router = APIRouter()

CLOSE_COMPLETED = "completed"
CLOSE_EXHAUSTED = "exhausted"
CLOSE_TIMEOUT = "timeout"
CLOSE_CANCELLED = "cancelled"
CLOSE_FAILED = "failed"

REQUIRED_FIELDS = ("code", "nonce", "state")


@dataclass
class CallbackSession:
    port: int
    nonce: str
    remaining_attempts: int
    completed: bool = False
    closed_reason: str | None = None


def build_callback_url(port: int, code: str, state: str) -> str:
    """URL handed to the UI, shaped like a provider redirect to http://localhost:{port}."""
    return f"http://localhost:{port}?code={quote(code, safe='')}&state={quote(state, safe='')}"


class CallbackServer:
    def __init__(
        self,
        sock: socket.socket,
        session: CallbackSession,
        registry: NonceRegistry,
        sink: EventSink,
        *,
        flush_delay: float = FLUSH_DELAY,
        timeout_seconds: float = TIMEOUT_SECONDS,
    ) -> None:
        self.session = session
        self._sock = sock
        self._registry = registry
        self._sink = sink
        self._flush_delay = flush_delay
        self._timeout_seconds = timeout_seconds
        # One request at a time, in arrival order
        self._request_lock = asyncio.Lock()
        self._state_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self.app = create_app(self)
        # log_config=None keeps the host application's logging setup untouched
        self._server = uvicorn.Server(
            uvicorn.Config(
                self.app,
                lifespan="off",
                log_config=None,
                log_level="warning",
                access_log=False,
            )
        )
        self._thread = threading.Thread(
            target=self._serve,
            name=f"oauth-callback-{session.port}",
            daemon=True,
        )

    @property
    def port(self) -> int:
        return self.session.port

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        """Spawn the worker thread; returns immediately."""
        if self._timeout_seconds > 0:
            self._timer = threading.Timer(self._timeout_seconds, self.close, kwargs={"reason": CLOSE_TIMEOUT})
            self._timer.daemon = True
            self._timer.start()
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker to exit. True if it has."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def close(self, reason: str = CLOSE_CANCELLED) -> None:
        """Stop the listener from any thread. The registry entry is dropped unless already consumed."""
        self._retire(reason)

    def _serve(self) -> None:
        try:
            self._server.run(sockets=[self._sock])
        except Exception:
            logger.exception("Callback listener on port %d stopped unexpectedly", self.port)
            self._retire(CLOSE_FAILED)
        finally:
            if self._timer is not None:
                self._timer.cancel()
            self._sock.close()
            logger.debug("Callback listener on port %d exited (%s)", self.port, self.session.closed_reason)

    def _retire(self, reason: str) -> None:
        with self._state_lock:
            if self.session.closed_reason is not None:
                return
            self.session.closed_reason = reason
        if not self.session.completed:
            self._registry.discard(self.port)
        self._server.should_exit = True
        log_audit(
            EVENT_SESSION_CLOSED,
            port=self.port,
            outcome=OUTCOME_SUCCESS if self.session.completed else OUTCOME_FAIL,
            detail=reason,
        )

    @asynccontextmanager
    async def attempt(self):
        """Serialize one request and charge it against the session's attempt budget."""
        async with self._request_lock:
            self.session.remaining_attempts = max(self.session.remaining_attempts - 1, 0)
            try:
                yield self.session
            finally:
                if self.session.remaining_attempts == 0 and not self.session.completed:
                    self._retire(CLOSE_EXHAUSTED)

    def accept(self, code: str, nonce: str, state: str, ip: str | None = None) -> str:
        """
        Consume the nonce and publish the callback URL. Raises NonceMismatchError if the nonce
        does not match (or was already consumed); the registry entry is then left as it was.
        """
        if not self._registry.validate_and_consume(self.port, nonce):
            raise NonceMismatchError()
        self.session.completed = True
        callback_url = build_callback_url(self.port, code, state)
        try:
            self._sink.emit(CALLBACK_EVENT, callback_url)
        except Exception:
            logger.exception("Event sink failed to deliver %s for port %d", CALLBACK_EVENT, self.port)
        log_audit(EVENT_CALLBACK_ACCEPTED, port=self.port, ip=ip)
        return callback_url

    async def finish_after_flush(self) -> None:
        """Runs after the success response is sent; gives the client time to read it."""
        if self._flush_delay > 0:
            await asyncio.sleep(self._flush_delay)
        self._retire(CLOSE_COMPLETED)


def _reject_constant(name: str):
    """NaN, Infinity and -Infinity are not JSON."""
    raise ValueError(f"Unsupported JSON constant {name}")


async def _read_json(request: Request):
    try:
        raw = await request.body()
        body = raw.decode("utf-8")
    except (ClientDisconnect, UnicodeDecodeError):
        raise BodyReadError()
    try:
        return json.loads(body, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        raise InvalidJsonError()


def _required_fields(payload) -> tuple[str, str, str]:
    """(code, nonce, state); each must be present and a string."""
    if not isinstance(payload, dict):
        raise MissingFieldsError()
    values = [payload.get(name) for name in REQUIRED_FIELDS]
    if not all(isinstance(v, str) for v in values):
        raise MissingFieldsError()
    code, nonce, state = values
    return code, nonce, state


@router.options("/{path:path}")
async def preflight(request: Request) -> Response:
    server: CallbackServer = request.app.state.callback_server
    async with server.attempt():
        return preflight_response()


@router.post("/{path:path}")
async def receive_callback(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Validate {code, nonce, state}; on success publish the callback URL and schedule shutdown."""
    server: CallbackServer = request.app.state.callback_server
    async with server.attempt():
        payload = await _read_json(request)
        code, nonce, state = _required_fields(payload)
        server.accept(code, nonce, state, ip=get_client_ip(request))
    background_tasks.add_task(server.finish_after_flush)
    return json_response({"success": True})


async def _request_error_handler(request: Request, exc: CallbackRequestError) -> Response:
    server: CallbackServer = request.app.state.callback_server
    event = EVENT_NONCE_REJECTED if isinstance(exc, NonceMismatchError) else EVENT_REQUEST_REJECTED
    log_audit(event, port=server.port, outcome=OUTCOME_FAIL, ip=get_client_ip(request), detail=exc.error)
    extra = {"Allow": ALLOWED_METHODS} if isinstance(exc, MethodNotAllowedError) else None
    return error_response(exc.error, exc.status_code, extra_headers=extra)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """
    The router raises 405 for any method without a route (everything but POST and OPTIONS).
    Such requests still use up an attempt and get the CORS error body.
    """
    if exc.status_code != 405:
        return await http_exception_handler(request, exc)
    server: CallbackServer = request.app.state.callback_server
    async with server.attempt():
        pass
    return await _request_error_handler(request, MethodNotAllowedError())


def create_app(server: CallbackServer) -> FastAPI:
    """Per-session app; catch-all routes, so the docs endpoints are disabled."""
    app = FastAPI(
        title="OAuth Loopback Callback",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.callback_server = server
    app.include_router(router)
    app.add_exception_handler(CallbackRequestError, _request_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    return app
