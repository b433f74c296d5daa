"""
Error taxonomy for the loopback callback server.
Request errors map to an HTTP status and a short JSON error string; the session stays open.
"""


class NoAvailablePortError(RuntimeError):
    """Every port in the configured range refused to bind. Fatal to starting a session."""

    def __init__(self, port_min: int, port_max: int):
        self.port_min = port_min
        self.port_max = port_max
        super().__init__(f"No available ports in range {port_min}-{port_max}")


class CallbackRequestError(Exception):
    """Client error reported to the remote peer; never fatal to the session."""

    status_code = 400
    error = "Bad request"

    def __init__(self, error: str | None = None):
        if error is not None:
            self.error = error
        super().__init__(self.error)


class BodyReadError(CallbackRequestError):
    error = "Failed to read body"


class InvalidJsonError(CallbackRequestError):
    error = "Invalid JSON"


class MissingFieldsError(CallbackRequestError):
    error = "Missing fields"


class NonceMismatchError(CallbackRequestError):
    """Presented nonce does not match (or was already consumed). Possible forgery."""

    status_code = 403
    error = "Invalid nonce"


class MethodNotAllowedError(CallbackRequestError):
    status_code = 405
    error = "Method not allowed"
