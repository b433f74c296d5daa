"""
CORS headers and JSON response builders for the callback listener.
The browser's redirect page posts from another origin, so every response carries the full set.
"""
from fastapi.responses import JSONResponse, Response

from oauth_loopback.config import PREFLIGHT_MAX_AGE

ALLOWED_METHODS = "POST, OPTIONS"


def cors_headers() -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": "Content-Type",
        "Content-Type": "application/json",
        "Connection": "close",
    }


def preflight_response() -> Response:
    """204 for OPTIONS; the only response that also sends Access-Control-Max-Age."""
    headers = cors_headers()
    headers["Access-Control-Max-Age"] = str(PREFLIGHT_MAX_AGE)
    return Response(status_code=204, headers=headers)


def json_response(content: dict, status_code: int = 200, extra_headers: dict[str, str] | None = None) -> JSONResponse:
    """Compact JSON body with CORS headers; Content-Length is set from the rendered body."""
    headers = cors_headers()
    if extra_headers:
        headers.update(extra_headers)
    return JSONResponse(content=content, status_code=status_code, headers=headers)


def error_response(error: str, status_code: int, extra_headers: dict[str, str] | None = None) -> JSONResponse:
    return json_response({"error": error}, status_code=status_code, extra_headers=extra_headers)
