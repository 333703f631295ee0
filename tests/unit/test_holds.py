"""Tests for tentative slot holds."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from callcatcher.core.scheduling.holds import (
    InMemorySlotHoldStore,
    RedisSlotHoldStore,
    get_slot_hold_store,
    reset_slot_hold_store,
)
from tests.conftest import FakeClock


class TestInMemorySlotHoldStore:
    """Test process-local holds."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return InMemorySlotHoldStore(clock=clock)

    @pytest.mark.asyncio
    async def test_single_owner(self, store):
        assert await store.acquire("slot-1", "call-a", 120)
        assert not await store.acquire("slot-1", "call-b", 120)
        assert await store.holder("slot-1") == "call-a"

    @pytest.mark.asyncio
    async def test_reacquire_refreshes(self, store, clock):
        await store.acquire("slot-1", "call-a", 120)
        clock.now += 100

        assert await store.acquire("slot-1", "call-a", 120)
        clock.now += 100

        assert await store.holder("slot-1") == "call-a"

    @pytest.mark.asyncio
    async def test_expired_hold_is_free(self, store, clock):
        await store.acquire("slot-1", "call-a", 120)
        clock.now += 121

        assert await store.holder("slot-1") is None
        assert await store.acquire("slot-1", "call-b", 120)

    @pytest.mark.asyncio
    async def test_release_only_by_owner(self, store):
        await store.acquire("slot-1", "call-a", 120)

        assert not await store.release("slot-1", "call-b")
        assert await store.release("slot-1", "call-a")
        assert await store.holder("slot-1") is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, store, clock):
        await store.acquire("slot-1", "call-a", 60)
        await store.acquire("slot-2", "call-b", 180)
        clock.now += 61

        assert await store.purge_expired() == 1
        assert list(store._holds) == ["slot-2"]
        assert await store.purge_expired() == 0


class TestRedisSlotHoldStore:
    """Test Redis holds."""

    @pytest.fixture
    def mock_redis(self):
        mock = MagicMock()
        mock.eval = AsyncMock(return_value=1)
        mock.get = AsyncMock(return_value="call-a")
        return mock

    @pytest.mark.asyncio
    async def test_acquire_uses_millisecond_ttl(self, mock_redis):
        store = RedisSlotHoldStore(mock_redis)

        assert await store.acquire("slot-1", "call-a", 120)

        args = mock_redis.eval.call_args.args
        assert args[1:] == (1, "callcatcher:v1:hold:slot-1", "call-a", 120000)

    @pytest.mark.asyncio
    async def test_acquire_denied(self, mock_redis):
        mock_redis.eval = AsyncMock(return_value=0)

        assert not await RedisSlotHoldStore(mock_redis).acquire("slot-1", "call-b", 120)

    @pytest.mark.asyncio
    async def test_acquire_fails_open(self, mock_redis):
        """A Redis outage never blocks a caller; the booking commit still guards."""
        mock_redis.eval = AsyncMock(side_effect=RedisConnectionError("down"))

        assert await RedisSlotHoldStore(mock_redis).acquire("slot-1", "call-a", 120)

    @pytest.mark.asyncio
    async def test_holder(self, mock_redis):
        assert await RedisSlotHoldStore(mock_redis).holder("slot-1") == "call-a"
        mock_redis.get.assert_awaited_once_with("callcatcher:v1:hold:slot-1")

    @pytest.mark.asyncio
    async def test_purge_is_left_to_key_expiry(self, mock_redis):
        assert await RedisSlotHoldStore(mock_redis).purge_expired() == 0
        mock_redis.eval.assert_not_called()


class TestGetSlotHoldStore:
    """Test backend selection."""

    @pytest.fixture(autouse=True)
    def reset(self):
        reset_slot_hold_store()
        yield
        reset_slot_hold_store()

    @pytest.mark.asyncio
    async def test_redis_unreachable_falls_back_to_memory(self):
        with patch("callcatcher.core.scheduling.holds.settings") as mock_settings, patch(
            "callcatcher.core.scheduling.holds.get_redis",
            AsyncMock(return_value=None),
        ):
            mock_settings.state_backend = "redis"
            store = await get_slot_hold_store()

        assert isinstance(store, InMemorySlotHoldStore)
        assert await get_slot_hold_store() is store
