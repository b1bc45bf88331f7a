"""
Server-side login sessions.

A session record lives at auth:sess:<sid> for the refresh lifetime and is the
authority for every token carrying that sid: delete it and both the access
and refresh tokens of that login stop working. Each user's sids are also
tracked in a set so all of them can be revoked at once.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from blog_cms.core.kv_store import KeyValueStore
from blog_cms.core.redis_keys import RedisKeys

logger = logging.getLogger("blog_cms.sessions")


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    created_at: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "userAgent": self.user_agent,
            "ipAddress": self.ip_address,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, session_id: str, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=session_id,
            user_id=str(data.get("userId", "")),
            created_at=data.get("createdAt", ""),
            user_agent=data.get("userAgent"),
            ip_address=data.get("ipAddress"),
        )


class SessionManager:
    def __init__(self, store: KeyValueStore, keys: RedisKeys, ttl_seconds: int):
        self.store = store
        self.keys = keys
        self.ttl_seconds = ttl_seconds

    async def create(
        self,
        user_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        """
        Start a session for a user.

        Args:
            user_id: Owner of the session
            user_agent: Client user agent, if known
            ip_address: Client address, if known

        Returns:
            The new session id
        """
        session_id = str(uuid.uuid4())
        record = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        await self.store.set_json(self.keys.session(session_id), record.to_dict(), self.ttl_seconds)

        index_key = self.keys.user_sessions(user_id)
        await self.store.sadd(index_key, session_id)
        await self.store.expire(index_key, self.ttl_seconds)

        logger.debug(f"Session {session_id} created for user {user_id}")
        return session_id

    async def validate(self, session_id: str) -> Optional[SessionRecord]:
        data = await self.store.get_json(self.keys.session(session_id))
        if not isinstance(data, dict) or not data.get("userId"):
            return None
        return SessionRecord.from_dict(session_id, data)

    async def exists(self, session_id: str) -> bool:
        return await self.store.exists(self.keys.session(session_id))

    async def touch(self, session_id: str, ttl_seconds: Optional[int] = None) -> bool:
        """Slide the session's expiry. False means the session is already gone."""
        ttl = ttl_seconds or self.ttl_seconds
        record = await self.validate(session_id)
        if record is None:
            return False
        if not await self.store.expire(self.keys.session(session_id), ttl):
            return False
        await self.store.expire(self.keys.user_sessions(record.user_id), ttl)
        return True

    async def delete(self, session_id: str) -> bool:
        """Remove a session. Deleting a missing session is not an error."""
        record = await self.validate(session_id)
        removed = await self.store.delete(self.keys.session(session_id)) > 0
        if record is not None:
            await self.store.srem(self.keys.user_sessions(record.user_id), session_id)
        elif removed:
            # Unreadable record, owner unknown: drop the id from every index
            for index_key in await self.store.scan_keys(self.keys.user_sessions("*")):
                await self.store.srem(index_key, session_id)
        if removed:
            logger.debug(f"Session {session_id} deleted")
        return removed

    async def list_for_user(self, user_id: str) -> List[SessionRecord]:
        """Live sessions of a user. Index entries whose session expired are pruned."""
        index_key = self.keys.user_sessions(user_id)
        records = []
        stale = []
        for session_id in sorted(await self.store.smembers(index_key)):
            record = await self.validate(session_id)
            if record is None:
                stale.append(session_id)
            else:
                records.append(record)

        if stale:
            await self.store.srem(index_key, *stale)
        return sorted(records, key=lambda r: r.created_at)

    async def revoke_all_for_user(self, user_id: str) -> int:
        index_key = self.keys.user_sessions(user_id)
        session_ids = await self.store.smembers(index_key)
        revoked = 0
        if session_ids:
            revoked = await self.store.delete(*(self.keys.session(sid) for sid in session_ids))
        await self.store.delete(index_key)
        logger.info(f"Revoked {revoked} session(s) for user {user_id}")
        return revoked
