"""
Access-token denylist for logout.

Entries live exactly as long as the token they block would have; once the
token expires on its own the entry is redundant and Redis drops it.
"""

import logging

from blog_cms.core.kv_store import KeyValueStore
from blog_cms.core.redis_keys import RedisKeys

logger = logging.getLogger("blog_cms.token_denylist")

REVOKED_MARKER = "revoked"


class TokenDenylist:
    def __init__(self, store: KeyValueStore, keys: RedisKeys):
        self.store = store
        self.keys = keys

    async def block(self, jti: str, ttl_seconds: int) -> bool:
        """
        Deny a token by jti until it would have expired.

        Args:
            jti: Token identifier
            ttl_seconds: Remaining lifetime of the token

        Returns:
            True if an entry was written, False for an already-expired token
        """
        if not jti or ttl_seconds <= 0:
            return False
        await self.store.set(self.keys.blocked_token(jti), REVOKED_MARKER, ttl_seconds)
        logger.debug(f"Token {jti[:8]}... denylisted for {ttl_seconds}s")
        return True

    async def is_blocked(self, jti: str) -> bool:
        if not jti:
            return False
        return await self.store.exists(self.keys.blocked_token(jti))
