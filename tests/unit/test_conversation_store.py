"""Tests for conversation state storage."""

import gc

import pytest
from unittest.mock import AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from app.core.conversation.models import ConversationState
from app.core.conversation.state import Stage, Topic
from app.core.conversation.store import ConversationStore


class TestConversationStoreRedis:
    """Test storage with Redis available."""

    @pytest.fixture
    def mock_redis(self):
        """Mock Redis client."""
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=None)
        redis.setex = AsyncMock(return_value=True)
        return redis

    @pytest.fixture
    def store(self):
        """Store with a one hour TTL."""
        return ConversationStore(ttl_seconds=3600)

    @pytest.mark.asyncio
    async def test_save_sets_ttl(self, store, mock_redis):
        """Test saves go to the prefixed key with the TTL."""
        state = ConversationState(conversation_id="conv-1")

        with patch("app.core.conversation.store.get_redis", return_value=mock_redis):
            assert await store.save(state) is True

        key, ttl, data = mock_redis.setex.call_args.args
        assert key == "askeve:v1:conversation:conv-1"
        assert ttl == 3600
        assert ConversationState.from_json(data).conversation_id == "conv-1"

    @pytest.mark.asyncio
    async def test_get_existing(self, store, mock_redis):
        """Test stored state is deserialized."""
        stored = ConversationState(conversation_id="conv-1")
        stored.move_to(Topic.HEALTH_INFORMATION, Stage.INFORMATION_GATHERING)
        mock_redis.get = AsyncMock(return_value=stored.to_json())

        with patch("app.core.conversation.store.get_redis", return_value=mock_redis):
            state = await store.get("conv-1")

        assert state.current_topic == Topic.HEALTH_INFORMATION
        mock_redis.get.assert_called_once_with("askeve:v1:conversation:conv-1")

    @pytest.mark.asyncio
    async def test_get_missing(self, store, mock_redis):
        """Test missing or expired keys return None."""
        with patch("app.core.conversation.store.get_redis", return_value=mock_redis):
            assert await store.get("conv-unknown") is None


class TestConversationStoreFallback:
    """Test in-memory fallback without Redis."""

    @pytest.fixture
    def store(self):
        """Store with default TTL."""
        return ConversationStore()

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        """Test fallback roundtrip returns independent copies."""
        state = ConversationState(conversation_id="conv-1")

        with patch("app.core.conversation.store.get_redis", return_value=None):
            await store.save(state)
            loaded = await store.get("conv-1")
            loaded.message_count = 10
            again = await store.get("conv-1")

        assert loaded.conversation_id == "conv-1"
        assert again.message_count == 0

    @pytest.mark.asyncio
    async def test_get_or_create_new(self, store):
        """Test new conversations take the requested id and default user ids."""
        with patch("app.core.conversation.store.get_redis", return_value=None):
            state = await store.get_or_create("conv-new")

        assert state.conversation_id == "conv-new"
        assert state.user_id == "conv-new"
        assert state.session_id == "conv-new"
        assert "conv-new" not in store._in_memory_fallback

    @pytest.mark.asyncio
    async def test_get_or_create_generates_id(self, store):
        """Test an id is generated when none is given."""
        with patch("app.core.conversation.store.get_redis", return_value=None):
            state = await store.get_or_create(user_id="user-1")

        assert state.conversation_id
        assert state.user_id == "user-1"

    def test_lock_per_conversation(self, store):
        """Test one lock per conversation id."""
        assert store.lock("conv-1") is store.lock("conv-1")
        assert store.lock("conv-1") is not store.lock("conv-2")

    @pytest.mark.asyncio
    async def test_lock_dropped_when_released(self, store):
        """Test locks are not kept once nothing holds or waits on them."""
        async with store.lock("conv-1"):
            assert "conv-1" in store._locks
            assert store.lock("conv-1").locked()

        gc.collect()
        assert "conv-1" not in store._locks

    @pytest.mark.asyncio
    async def test_fallback_entries_expire(self):
        """Test fallback entries are purged after the retention TTL."""
        store = ConversationStore(ttl_seconds=60)

        with patch("app.core.conversation.store.get_redis", return_value=None), \
             patch("app.core.conversation.store.monotonic", return_value=1000.0):
            await store.save(ConversationState(conversation_id="conv-old"))

        with patch("app.core.conversation.store.get_redis", return_value=None), \
             patch("app.core.conversation.store.monotonic", return_value=1059.0):
            assert await store.get("conv-old") is not None

        with patch("app.core.conversation.store.get_redis", return_value=None), \
             patch("app.core.conversation.store.monotonic", return_value=1061.0):
            assert await store.get("conv-old") is None

        assert "conv-old" not in store._in_memory_fallback

    @pytest.mark.asyncio
    async def test_save_refreshes_fallback_ttl(self):
        """Test saving again extends the fallback expiry."""
        store = ConversationStore(ttl_seconds=60)
        state = ConversationState(conversation_id="conv-1")

        with patch("app.core.conversation.store.get_redis", return_value=None):
            with patch("app.core.conversation.store.monotonic", return_value=1000.0):
                await store.save(state)
            with patch("app.core.conversation.store.monotonic", return_value=1050.0):
                await store.save(state)
            with patch("app.core.conversation.store.monotonic", return_value=1100.0):
                assert await store.get("conv-1") is not None


class TestConversationStoreRedisFailures:
    """Test Redis errors after connecting fall back to memory."""

    @pytest.fixture
    def failing_redis(self):
        """Redis client whose commands fail."""
        redis = AsyncMock()
        redis.get = AsyncMock(side_effect=RedisTimeoutError("Timeout reading from socket"))
        redis.setex = AsyncMock(side_effect=RedisConnectionError("Connection reset by peer"))
        return redis

    @pytest.mark.asyncio
    async def test_save_and_get_fall_back(self, failing_redis):
        """Test a failing Redis still keeps the conversation in memory."""
        store = ConversationStore()
        state = ConversationState(conversation_id="conv-1")
        state.move_to(Topic.CRISIS_SUPPORT, Stage.CRISIS_RESPONSE)

        with patch("app.core.conversation.store.get_redis", return_value=failing_redis):
            assert await store.save(state) is True
            loaded = await store.get("conv-1")

        assert loaded.current_topic == Topic.CRISIS_SUPPORT
        failing_redis.setex.assert_called_once()
        failing_redis.get.assert_called_once()

    @pytest.mark.asyncio
    async def test_get_or_create_on_read_failure(self, failing_redis):
        """Test a read failure starts a conversation instead of raising."""
        store = ConversationStore()

        with patch("app.core.conversation.store.get_redis", return_value=failing_redis):
            state = await store.get_or_create("conv-new", user_id="user-1")

        assert state.conversation_id == "conv-new"
        assert state.current_topic == Topic.CONVERSATION_START
