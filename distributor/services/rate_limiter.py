"""In-memory login rate limiter for the ingestion channel"""

import time
from dataclasses import dataclass
from typing import Callable, Dict

from distributor.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class _FailureWindow:
    count: int
    window_start: float


class LoginRateLimiter:
    """
    Fixed-window failure counter keyed by source address.

    A window opens at the first failure and lasts ``window_seconds``; failures
    inside it accumulate. Once ``max_attempts`` is reached the source is
    blocked until the window expires. Expiry is checked lazily on every read,
    ``sweep()`` only bounds memory.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: Dict[str, _FailureWindow] = {}

    def _expired(self, entry: _FailureWindow, now: float) -> bool:
        return now - entry.window_start > self.window_seconds

    def is_blocked(self, source: str) -> bool:
        entry = self._attempts.get(source)
        if entry is None:
            return False

        if self._expired(entry, self._clock()):
            del self._attempts[source]
            return False

        return entry.count >= self.max_attempts

    def record_failure(self, source: str):
        now = self._clock()
        entry = self._attempts.get(source)

        if entry is None or self._expired(entry, now):
            self._attempts[source] = _FailureWindow(count=1, window_start=now)
        else:
            entry.count += 1

        if self._attempts[source].count == self.max_attempts:
            logger.warning(f"Blocking logins from {source} after {self.max_attempts} failed attempts")

    def record_success(self, source: str):
        """A successful login forgives earlier failures"""
        self._attempts.pop(source, None)

    def sweep(self) -> int:
        """Remove expired entries, returns how many were dropped"""
        now = self._clock()
        expired = [source for source, entry in self._attempts.items() if self._expired(entry, now)]
        for source in expired:
            del self._attempts[source]
        return len(expired)

    def __len__(self) -> int:
        return len(self._attempts)
