"""
Session Store Adapter

Typed create/get/update/append/delete operations on conversation sessions
kept in Redis as JSON documents with a TTL. Every write replaces the whole
record (last writer wins) and refreshes the TTL.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from appointment.config import AppointmentConfig
from appointment.models import ConversationState, Session
from shared.errors import CollaboratorError, NotFoundError

logger = logging.getLogger(__name__)


class SessionNotFoundError(NotFoundError):
    """Session expired or never existed"""

    def __init__(self, session_id: str):
        super().__init__("Session not found or expired", {"session_id": session_id})
        self.session_id = session_id


class SessionStore:
    """Redis-backed session persistence"""

    def __init__(self, redis_client: redis.Redis, config: AppointmentConfig):
        self.redis = redis_client
        self.config = config

    def _key(self, session_id: str) -> str:
        return f"{self.config.session_prefix}{session_id}"

    async def _write(self, session: Session):
        try:
            await self.redis.setex(
                self._key(session.session_id),
                self.config.session_ttl,
                json.dumps(session.to_dict()),
            )
        except RedisError as e:
            logger.error(f"Failed to store session {session.session_id}: {e}")
            raise CollaboratorError("session_store", str(e)) from e

    async def _require(self, session_id: str) -> Session:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def create(self, session_id: str, seed: Optional[Dict[str, Any]] = None) -> Session:
        """Create and persist a session; ``seed`` overrides the defaults"""
        data = dict(seed or {})
        data["session_id"] = session_id
        session = Session.from_dict(data)
        await self._write(session)
        logger.info(f"Session created: {session_id}")
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        """Load a session, None when absent; refreshes the TTL when configured"""
        key = self._key(session_id)
        try:
            raw = await self.redis.get(key)
            if raw is None:
                return None
            if self.config.auto_extend_ttl:
                await self.redis.expire(key, self.config.session_ttl)
        except RedisError as e:
            logger.error(f"Failed to retrieve session {session_id}: {e}")
            raise CollaboratorError("session_store", str(e)) from e

        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt session payload for {session_id}: {e}")
            raise CollaboratorError("session_store", f"corrupt session {session_id}") from e

    async def save(self, session: Session) -> Session:
        """Replace the stored record with ``session``"""
        session.last_activity_at = datetime.now().isoformat()
        await self._write(session)
        return session

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Session:
        """
        Overwrite top-level session fields.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = await self._require(session_id)
        for name, value in fields.items():
            if name == "session_id" or not hasattr(session, name):
                raise ValueError(f"Unknown session field: {name}")
            if name == "conversation_state" and not isinstance(value, ConversationState):
                value = ConversationState(value)
            setattr(session, name, value)
        return await self.save(session)

    async def append_history(self, session_id: str, message: Dict[str, str]) -> Session:
        """
        Append a {role, content} message.

        The history is trimmed to ``max_history`` entries, oldest first, and
        each user message counts as a turn.
        """
        session = await self._require(session_id)
        self.add_message(session, message.get("role", "user"), message.get("content", ""))
        return await self.save(session)

    async def delete(self, session_id: str) -> bool:
        try:
            deleted = await self.redis.delete(self._key(session_id))
        except RedisError as e:
            logger.error(f"Failed to delete session {session_id}: {e}")
            raise CollaboratorError("session_store", str(e)) from e
        if deleted:
            logger.info(f"Session deleted: {session_id}")
        return bool(deleted)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def add_message(self, session: Session, role: str, content: str):
        """Append to an in-memory session without persisting it"""
        session.conversation_history.append({
            "role": role,
            "content": content,
            "timestamp": datetime.now().isoformat(),
        })
        overflow = len(session.conversation_history) - self.config.max_history
        if overflow > 0:
            del session.conversation_history[:overflow]
        if role == "user":
            session.turn_count += 1

    async def update_collected_data(self, session_id: str, data: Dict[str, Any]) -> Session:
        session = await self._require(session_id)
        session.collected_data.update({k: v for k, v in data.items() if v is not None})
        return await self.save(session)

    async def remove_collected_data(self, session_id: str, keys: Iterable[str]) -> Session:
        session = await self._require(session_id)
        for key in keys:
            session.collected_data.pop(key, None)
        return await self.save(session)

    async def exists(self, session_id: str) -> bool:
        try:
            return bool(await self.redis.exists(self._key(session_id)))
        except RedisError as e:
            raise CollaboratorError("session_store", str(e)) from e

    async def extend_ttl(self, session_id: str, seconds: Optional[int] = None) -> bool:
        try:
            return bool(await self.redis.expire(self._key(session_id), seconds or self.config.session_ttl))
        except RedisError as e:
            raise CollaboratorError("session_store", str(e)) from e

    async def ttl(self, session_id: str) -> int:
        try:
            return int(await self.redis.ttl(self._key(session_id)))
        except RedisError as e:
            raise CollaboratorError("session_store", str(e)) from e

    async def active_count(self) -> int:
        """Count live sessions with SCAN"""
        count = 0
        cursor = 0
        try:
            while True:
                cursor, keys = await self.redis.scan(cursor, match=f"{self.config.session_prefix}*", count=100)
                count += len(keys)
                if cursor == 0:
                    break
        except RedisError as e:
            raise CollaboratorError("session_store", str(e)) from e
        return count
