"""
In-memory sliding-window rate limiter for authentication attempts.
Every attempt (successful or not) counts against the key for the window.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from pydantic import BaseModel

from app.config import get_settings


class ActiveLimit(BaseModel):
    """Snapshot of one key's usage inside the current window."""

    attempts: int
    remaining: int
    reset_in: float


class RateLimiter:
    """Limits attempts per key to ``max_attempts`` within ``time_window`` seconds."""

    def __init__(
        self,
        max_attempts: int | None = None,
        time_window: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.max_attempts = settings.max_login_attempts if max_attempts is None else max_attempts
        self.time_window = settings.login_timeout_seconds if time_window is None else time_window
        self._clock = clock
        self._attempts: dict[str, list[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _recent(self, timestamps: list[float], now: float) -> list[float]:
        return [t for t in timestamps if now - t < self.time_window]

    def _drop_expired(self, now: float) -> int:
        expired = [key for key, timestamps in self._attempts.items() if not self._recent(timestamps, now)]
        for key in expired:
            del self._attempts[key]
        self._last_sweep = now
        return len(expired)

    def attempt(self, key: str) -> bool:
        """Record an attempt for key. Returns False when the limit is reached."""
        with self._lock:
            now = self._clock()
            # Sweep expired keys at most once per window
            if now - self._last_sweep >= self.time_window:
                self._drop_expired(now)
            recent = self._recent(self._attempts.get(key, []), now)

            # Denied attempts are not recorded
            if len(recent) >= self.max_attempts:
                return False

            recent.append(now)
            self._attempts[key] = recent
            return True

    def get_remaining_time(self, key: str) -> float:
        """
        Seconds until the oldest stored attempt for key leaves the window.

        Uses the stored list as last written by ``attempt``, so expired
        entries that have not been pruned yet still count as the oldest.
        """
        with self._lock:
            timestamps = self._attempts.get(key, [])
            if not timestamps:
                return 0
            return self.time_window - (self._clock() - min(timestamps))

    def get_remaining_attempts(self, key: str) -> int:
        """Attempts left for key in the current window. Drops key once fully expired."""
        with self._lock:
            recent = self._recent(self._attempts.get(key, []), self._clock())
            if not recent:
                self._attempts.pop(key, None)
            return max(self.max_attempts - len(recent), 0)

    def reset(self, key: str) -> None:
        """Clear all attempts for key."""
        with self._lock:
            self._attempts.pop(key, None)

    def get_active_limits(self) -> dict[str, ActiveLimit]:
        """Usage for every key with at least one attempt inside the window.

        Keys whose attempts have all expired are removed.
        """
        with self._lock:
            now = self._clock()
            active: dict[str, ActiveLimit] = {}
            for key, timestamps in list(self._attempts.items()):
                recent = self._recent(timestamps, now)
                if not recent:
                    del self._attempts[key]
                    continue
                active[key] = ActiveLimit(
                    attempts=len(recent),
                    remaining=self.max_attempts - len(recent),
                    reset_in=self.time_window - (now - min(recent)),
                )
            return active

    def cleanup(self) -> int:
        """Remove keys whose attempts have all expired. Returns count removed."""
        with self._lock:
            return self._drop_expired(self._clock())
