"""Fixed-window rate limiting backed by Valkey.

Each (action, subject) pair gets one counter per window bucket, where the
bucket is floor(now / window). The counter expires with the window, so a
burst at the end of one window and the start of the next can reach twice
the limit. That is accepted for the auth flows this guards.
"""

import logging

from clients.valkey_client import ValkeyClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-action, per-subject attempt counters using Valkey."""

    KEY_PREFIX = "ratelimit:"

    def __init__(self, valkey: ValkeyClient):
        self._valkey = valkey

    def _key(self, action: str, subject: str, window_seconds: int) -> str:
        """Key for the current window bucket. Subject is normalized to lowercase."""
        bucket = int(now_utc().timestamp()) // window_seconds
        return f"{self.KEY_PREFIX}{action}:{subject.lower()}:{bucket}"

    def check(self, action: str, subject: str, limit: int, window_seconds: int) -> bool:
        """Record an attempt and report whether it is within the limit.

        Returns:
            True if the post-increment count is <= limit.
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        count = self._valkey.increment(
            self._key(action, subject, window_seconds),
            expire_seconds=window_seconds,
        )
        allowed = count <= limit
        if not allowed:
            logger.warning(f"Rate limit exceeded for {action} ({count}/{limit})")
        return allowed

    def remaining(self, action: str, subject: str, limit: int, window_seconds: int) -> int:
        """Attempts left in the current window, without recording one."""
        current = self._valkey.get(self._key(action, subject, window_seconds))
        if current is None:
            return limit
        return max(limit - int(current), 0)

    def reset(self, action: str, subject: str, window_seconds: int) -> None:
        """Clear the current window's counter (e.g. after a successful login)."""
        self._valkey.delete(self._key(action, subject, window_seconds))
