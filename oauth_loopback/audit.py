"""
Audit logging for callback sessions. Security-relevant events only.
Never log nonces, authorization codes, or state values.
"""
import logging

from fastapi import Request

EVENT_NONCE_ISSUED = "nonce_issued"
EVENT_CALLBACK_ACCEPTED = "callback_accepted"
EVENT_NONCE_REJECTED = "nonce_rejected"
EVENT_REQUEST_REJECTED = "request_rejected"
EVENT_SESSION_CLOSED = "session_closed"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

audit_logger = logging.getLogger("oauth_loopback.audit")


def get_client_ip(request: Request | None) -> str | None:
    """Peer address if available (request.client.host). Loopback only, so no forwarding headers."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    event_type: str,
    *,
    port: int,
    outcome: str = OUTCOME_SUCCESS,
    ip: str | None = None,
    detail: str | None = None,
) -> None:
    """Write one audit line. Failures are WARNING so they stand out at default levels."""
    level = logging.INFO if outcome == OUTCOME_SUCCESS else logging.WARNING
    audit_logger.log(
        level,
        "event=%s port=%d outcome=%s ip=%s detail=%s",
        event_type,
        port,
        outcome,
        ip or "-",
        detail or "-",
    )
