"""
Database-backed rate limiter for Sanctuary endpoints.

Uses the `rate_limits` table for persistence across restarts.
Provides standard X-RateLimit-* headers on limited responses.
"""

import time
from typing import Callable, Dict, Tuple

from sanctuary.errors import RateLimitError


class RateLimiter:
    """Fixed-window request counter keyed by client or agent."""

    def __init__(self, db, max_requests: int = 10, window_seconds: int = 60,
                 enabled: bool = True, clock: Callable[[], float] = time.time):
        self.db = db
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.enabled = enabled
        self.clock = clock

    def _window_start(self, now: int) -> int:
        return now - (now % self.window_seconds)

    def is_allowed(self, key: str) -> Tuple[bool, int]:
        """
        Check if request is allowed for given key.

        Returns:
            Tuple of (allowed: bool, retry_after_seconds: int)
        """
        if not self.enabled:
            return True, 0

        now = int(self.clock())
        window_start = self._window_start(now)

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT count FROM rate_limits WHERE key = ? AND window_start = ?",
                (key, window_start)
            ).fetchone()
            current_count = row["count"] if row else 0

            if current_count >= self.max_requests:
                retry_after = self.window_seconds - (now - window_start)
                return False, max(1, retry_after)

            conn.execute(
                """INSERT INTO rate_limits (key, window_start, count) VALUES (?, ?, 1)
                   ON CONFLICT(key, window_start) DO UPDATE SET count = count + 1""",
                (key, window_start)
            )
            return True, 0

    def get_remaining(self, key: str) -> int:
        """Get remaining requests for key in current window."""
        if not self.enabled:
            return self.max_requests

        window_start = self._window_start(int(self.clock()))
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT count FROM rate_limits WHERE key = ? AND window_start = ?",
                (key, window_start)
            ).fetchone()
            current = row["count"] if row else 0
            return max(0, self.max_requests - current)

    def headers(self, key: str) -> Dict[str, str]:
        reset_at = self._window_start(int(self.clock())) + self.window_seconds
        return {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(self.get_remaining(key)),
            "X-RateLimit-Reset": str(reset_at),
        }

    def check(self, key: str) -> None:
        """Raise RateLimitError if the key is over its limit."""
        allowed, retry_after = self.is_allowed(key)
        if not allowed:
            raise RateLimitError(
                f"Rate limit exceeded. Try again in {retry_after} seconds.",
                retry_after=retry_after,
            )


def cleanup_rate_limits(db, now: int, max_window_seconds: int = 3600) -> int:
    """Drop windows older than twice the longest window. Returns rows removed."""
    cutoff = now - max_window_seconds * 2
    with db.connection() as conn:
        cursor = conn.execute("DELETE FROM rate_limits WHERE window_start < ?", (cutoff,))
        return cursor.rowcount
