"""
Event channel back to the application UI.
The server only needs emit(event, payload); QueueEventSink lets a host thread block on the result.
"""
import queue
import threading
from typing import Protocol


class EventSink(Protocol):
    def emit(self, event: str, payload: str) -> None:
        ...


class QueueEventSink:
    """Thread-safe sink: workers emit from their threads, the host consumes with get()."""

    def __init__(self) -> None:
        self._queue: queue.Queue[tuple[str, str]] = queue.Queue()

    def emit(self, event: str, payload: str) -> None:
        self._queue.put((event, payload))

    def get(self, timeout: float | None = None) -> tuple[str, str] | None:
        """Next (event, payload), or None if nothing arrived within timeout seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class RecordingEventSink:
    """Keeps every emission in order; handy for hosts that poll and for tests."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def emit(self, event: str, payload: str) -> None:
        with self._lock:
            self.events.append((event, payload))

    def payloads(self, event: str) -> list[str]:
        with self._lock:
            return [p for e, p in self.events if e == event]
