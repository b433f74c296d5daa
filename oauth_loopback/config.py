"""
Loopback callback server configuration.
Defaults match the desktop app's registered redirect range; override via env.
"""
import os

# Loopback only; the listener must never be reachable from other hosts
HOST = os.environ.get("OAUTH_CALLBACK_HOST", "127.0.0.1")

# Inclusive port range scanned in ascending order for a free bind target
PORT_MIN = int(os.environ.get("OAUTH_CALLBACK_PORT_MIN", "17900"))
PORT_MAX = int(os.environ.get("OAUTH_CALLBACK_PORT_MAX", "17999"))

# Requests one session will process (OPTIONS preflight + POST + retries)
MAX_ATTEMPTS = int(os.environ.get("OAUTH_CALLBACK_MAX_ATTEMPTS", "10"))

# Seconds to keep the listener up after the success response so it is flushed
FLUSH_DELAY = float(os.environ.get("OAUTH_CALLBACK_FLUSH_DELAY", "0.5"))

# Idle session lifetime in seconds; 0 disables (listener lives until attempts run out)
TIMEOUT_SECONDS = float(os.environ.get("OAUTH_CALLBACK_TIMEOUT_SECONDS", "300"))

# Event name the application UI listens on
CALLBACK_EVENT = "oauth-callback"

# Preflight cache lifetime sent to browsers (one day)
PREFLIGHT_MAX_AGE = 86400
