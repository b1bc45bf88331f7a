"""
Failure counters for login and password-reset requests.

Counters are shared through the key-value store so every worker sees the same
numbers. Only failures are counted; a successful login clears its counter.
Concurrent requests may overshoot the limit by a few attempts.
"""

import logging
import math

from blog_cms.core.exceptions import RateLimitedError
from blog_cms.core.kv_store import KeyValueStore
from blog_cms.core.logging_config import redact_email
from blog_cms.core.redis_keys import RateLimitScope, RedisKeys

logger = logging.getLogger("blog_cms.rate_limiter")

__all__ = ["RateLimiter", "RateLimitScope"]


_SCOPE_LABELS = {
    RateLimitScope.LOGIN: "login",
    RateLimitScope.FORGOT_PASSWORD_EMAIL: "password reset",
    RateLimitScope.FORGOT_PASSWORD_IP: "password reset",
}


def _display_identifier(identifier: str) -> str:
    return redact_email(identifier) if "@" in identifier else identifier


class RateLimiter:
    """
    Args:
        store: Shared key-value store
        keys: Key naming for the counters
        fixed_window: Window starts at the first failure and is not extended by
            later ones. With False every failure re-arms the full window.
    """

    def __init__(self, store: KeyValueStore, keys: RedisKeys, fixed_window: bool = True):
        self.store = store
        self.keys = keys
        self.fixed_window = fixed_window

    async def get_attempts(self, scope: RateLimitScope, identifier: str) -> int:
        value = await self.store.get(self.keys.rate_limit(scope, identifier))
        return int(value) if value else 0

    async def check_and_raise_if_exceeded(
        self,
        scope: RateLimitScope,
        identifier: str,
        max_attempts: int,
        window_seconds: int,
    ) -> None:
        """Raise RateLimitedError once the counter has reached max_attempts."""
        attempts = await self.get_attempts(scope, identifier)
        if attempts >= max_attempts:
            retry_after_minutes = math.ceil(window_seconds / 60)
            logger.warning(
                f"Rate limit hit for {scope.value} ({_display_identifier(identifier)}): "
                f"{attempts}/{max_attempts} attempts"
            )
            raise RateLimitedError(
                retry_after_minutes=retry_after_minutes,
                message=(
                    f"Too many {_SCOPE_LABELS[scope]} attempts. "
                    f"Please try again in {retry_after_minutes} minutes."
                ),
            )

    async def record_failure(self, scope: RateLimitScope, identifier: str, window_seconds: int) -> int:
        attempts = await self.store.incr(
            self.keys.rate_limit(scope, identifier),
            window_seconds,
            reset_ttl=not self.fixed_window,
        )
        logger.debug(f"{scope.value} failure recorded for {_display_identifier(identifier)}: {attempts}")
        return attempts

    async def clear(self, scope: RateLimitScope, identifier: str) -> None:
        await self.store.delete(self.keys.rate_limit(scope, identifier))
