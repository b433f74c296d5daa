"""
Registry of outstanding callback nonces (port -> nonce).
Shared by every session of one SessionStarter; each worker thread goes through the lock,
which is held only for the dict operation and never across I/O.
"""
import secrets
import threading


class NonceRegistry:
    def __init__(self) -> None:
        self._nonces: dict[int, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def generate() -> str:
        """Single-use anti-forgery token; 32 random bytes (256 bits) base64url encoded."""
        return secrets.token_urlsafe(32)

    def register(self, port: int, nonce: str) -> None:
        """Store the expected nonce for a port, replacing any stale entry."""
        with self._lock:
            self._nonces[port] = nonce

    def validate_and_consume(self, port: int, nonce: str) -> bool:
        """
        True and remove the entry if nonce matches the one stored for port (exact, case-sensitive).
        False otherwise; a mismatch leaves the entry in place so a legitimate retry can still succeed.
        """
        with self._lock:
            expected = self._nonces.get(port)
            if expected is None or not secrets.compare_digest(expected.encode(), nonce.encode()):
                return False
            del self._nonces[port]
            return True

    def discard(self, port: int) -> None:
        with self._lock:
            self._nonces.pop(port, None)

    def expected(self, port: int) -> str | None:
        with self._lock:
            return self._nonces.get(port)

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._nonces

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)
