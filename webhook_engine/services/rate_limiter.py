"""
Rate Limiter Service (fixed window per webhook).

The window lives in the webhook's engine-owned state, so callers must hold
the subscription lock while calling is_allowed.
"""
import math
from datetime import datetime, timedelta

from webhook_engine.models.health import RateLimitWindow
from webhook_engine.models.subscription import RateLimitPolicy


RATE_LIMIT_EXCEEDED = "rate limit exceeded"


class RateLimiter:
    """Per-webhook fixed-window counter."""

    def is_allowed(
        self,
        policy: RateLimitPolicy,
        window: RateLimitWindow,
        now: datetime,
    ) -> tuple[bool, int]:
        """
        Count an accepted event against the window.

        Returns:
            (allowed: bool, retry_after: int seconds until the window resets)
        """
        if not policy.enabled:
            return True, 0

        if window.window_reset_at is None or now >= window.window_reset_at:
            window.current_count = 0
            window.window_reset_at = now + timedelta(seconds=policy.window_seconds)

        if window.current_count >= policy.max_requests:
            retry_after = math.ceil((window.window_reset_at - now).total_seconds())
            return False, max(retry_after, 1)

        window.current_count += 1
        return True, 0

    def remaining(self, policy: RateLimitPolicy, window: RateLimitWindow, now: datetime) -> int | None:
        """Events still allowed in the current window (None when unlimited)."""
        if not policy.enabled:
            return None
        if window.window_reset_at is None or now >= window.window_reset_at:
            return policy.max_requests
        return max(policy.max_requests - window.current_count, 0)


# Singleton instance
rate_limiter = RateLimiter()
