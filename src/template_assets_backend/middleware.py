import time
from threading import Lock
from typing import Dict, Tuple


class RateLimiter:
    """
    In-memory rate limiter using a fixed one-minute window.

    Tracks requests per API key; the import endpoints check it before doing
    any work. Expired windows are purged at most once per window, from
    :meth:`is_allowed` itself.
    """

    def __init__(self, requests_per_minute: int = 60, window: float = 60.0):
        self.rpm = requests_per_minute
        self.window = window
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}
        self._last_cleanup = time.time()
        self._lock = Lock()

    def is_allowed(self, identifier: str) -> bool:
        now = time.time()
        with self._lock:
            if now - self._last_cleanup > self.window:
                self._purge(now)

            count, start_time = self.requests.get(identifier, (0, now))

            if now - start_time > self.window:
                self.requests[identifier] = (1, now)
                return True

            if count >= self.rpm:
                return False

            self.requests[identifier] = (count + 1, start_time)
            return True

    def cleanup(self) -> None:
        """Drop identifiers whose window has expired."""
        with self._lock:
            self._purge(time.time())

    def _purge(self, now: float) -> None:
        expired = [k for k, v in self.requests.items() if now - v[1] > self.window]
        for k in expired:
            del self.requests[k]
        self._last_cleanup = now
