"""Redis-based conversation state storage."""

import asyncio
import logging
import weakref
from time import monotonic
from typing import Optional

from redis.exceptions import RedisError

from app.config import settings
from app.infra.redis import APP_PREFIX, get_redis
from .models import ConversationState

logger = logging.getLogger(__name__)

# Conversation key prefix (extends existing APP_PREFIX)
CONVERSATION_PREFIX = f"{APP_PREFIX}conversation:"


class ConversationStore:
    """
    Redis-based store for conversation state.

    Key pattern: askeve:v1:conversation:{conversation_id}

    Entries expire after the retention TTL, in Redis and in the in-memory
    fallback used while Redis is unavailable or failing.

    Callers that read, process and write a conversation must hold
    lock(conversation_id) for the whole sequence. Locks are per process
    and are dropped once nothing holds or waits on them.
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        """Initialize conversation store."""
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.conversation_ttl_seconds
        # conversation_id -> (expires_at monotonic, state)
        self._in_memory_fallback: dict[str, tuple[float, ConversationState]] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _key(self, conversation_id: str) -> str:
        """Generate Redis key."""
        return f"{CONVERSATION_PREFIX}{conversation_id}"

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """Get the lock serializing work on one conversation."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def get(self, conversation_id: str) -> Optional[ConversationState]:
        """
        Get conversation state by ID.

        Returns:
            ConversationState or None if not found (or expired)
        """
        redis = await get_redis()

        if redis:
            try:
                data = await redis.get(self._key(conversation_id))
            except RedisError as e:
                logger.error(f"Redis read failed for conversation {conversation_id}, using fallback: {e}")
            else:
                if data:
                    return ConversationState.from_json(data)
                return None

        # Fallback to in-memory
        self._purge_expired()
        entry = self._in_memory_fallback.get(conversation_id)
        return entry[1].copy() if entry else None

    async def get_or_create(
        self,
        conversation_id: Optional[str] = None,
        user_id: str = "",
        session_id: str = "",
    ) -> ConversationState:
        """
        Get existing conversation or start a new one in the initial state.

        New conversations are not saved until the first processed message.
        """
        if conversation_id:
            state = await self.get(conversation_id)
            if state:
                return state

        state = ConversationState(user_id=user_id, session_id=session_id)
        if conversation_id:
            state.conversation_id = conversation_id
        if not state.user_id:
            state.user_id = state.conversation_id
        if not state.session_id:
            state.session_id = state.conversation_id

        logger.debug(f"Conversation created: {state.conversation_id}")
        return state

    async def save(self, state: ConversationState) -> bool:
        """
        Save conversation state, refreshing its TTL.

        Returns:
            True if saved successfully
        """
        redis = await get_redis()

        if redis:
            try:
                await redis.setex(self._key(state.conversation_id), self._ttl, state.to_json())
            except RedisError as e:
                logger.error(
                    f"Redis write failed for conversation {state.conversation_id}, using fallback: {e}"
                )
            else:
                logger.debug(f"Conversation saved: {state.conversation_id}")
                return True
        else:
            logger.warning(
                f"Redis unavailable, using in-memory fallback for conversation {state.conversation_id}"
            )

        # Fallback to in-memory
        self._purge_expired()
        self._in_memory_fallback[state.conversation_id] = (
            monotonic() + self._ttl,
            state.copy(),
        )
        return True

    def _purge_expired(self) -> None:
        """Drop fallback entries past the retention TTL."""
        now = monotonic()
        expired = [cid for cid, (expires_at, _) in self._in_memory_fallback.items() if expires_at <= now]
        for conversation_id in expired:
            del self._in_memory_fallback[conversation_id]
        if expired:
            logger.debug(f"Purged {len(expired)} expired conversations from fallback")


# Singleton
_conversation_store: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    """Get singleton ConversationStore."""
    global _conversation_store
    if _conversation_store is None:
        _conversation_store = ConversationStore()
    return _conversation_store
