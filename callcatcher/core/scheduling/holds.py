"""
Tentative slot holds.

While a caller is deciding on a proposed slot it is reserved for them for
a short TTL so a second caller is offered something else. Exactly one
owner per slot; holds expire on their own if a call drops.

Holds fail open: if Redis errors, the hold is treated as granted and the
booking manager's conditional update still prevents double booking.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from callcatcher.config import settings
from callcatcher.infra.redis import get_redis, namespaced

logger = logging.getLogger(__name__)


# Delete only if the caller still owns the hold
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Take a free hold or refresh our own
ACQUIRE_SCRIPT = """
local current = redis.call("get", KEYS[1])
if not current then
    redis.call("set", KEYS[1], ARGV[1], "PX", ARGV[2])
    return 1
elseif current == ARGV[1] then
    redis.call("pexpire", KEYS[1], ARGV[2])
    return 1
else
    return 0
end
"""


class SlotHoldStore(ABC):
    """Storage contract for tentative holds."""

    @abstractmethod
    async def acquire(self, slot_id: str, owner: str, ttl_seconds: Optional[int] = None) -> bool:
        """Hold a slot for owner. Re-acquiring an owned hold refreshes it."""

    @abstractmethod
    async def release(self, slot_id: str, owner: str) -> bool:
        """Release a hold if owner still has it."""

    @abstractmethod
    async def holder(self, slot_id: str) -> Optional[str]:
        """Current owner of a slot's hold."""

    async def purge_expired(self) -> int:
        """Drop lapsed holds. Backends whose keys expire on their own have nothing to do."""
        return 0


class InMemorySlotHoldStore(SlotHoldStore):
    """Process-local holds keyed by slot id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._holds: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _current(self, slot_id: str) -> Optional[str]:
        entry = self._holds.get(slot_id)
        if entry is None:
            return None
        owner, expires_at = entry
        if expires_at <= self._clock():
            del self._holds[slot_id]
            return None
        return owner

    async def acquire(self, slot_id: str, owner: str, ttl_seconds: Optional[int] = None) -> bool:
        ttl = ttl_seconds or settings.slot_hold_ttl_seconds
        async with self._lock:
            current = self._current(slot_id)
            if current is not None and current != owner:
                return False
            self._holds[slot_id] = (owner, self._clock() + ttl)
            return True

    async def release(self, slot_id: str, owner: str) -> bool:
        async with self._lock:
            if self._current(slot_id) == owner:
                del self._holds[slot_id]
                return True
            return False

    async def holder(self, slot_id: str) -> Optional[str]:
        async with self._lock:
            return self._current(slot_id)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            lapsed = [slot_id for slot_id, (_, expires_at) in self._holds.items() if expires_at <= now]
            for slot_id in lapsed:
                del self._holds[slot_id]
        if lapsed:
            logger.debug(f"Purged {len(lapsed)} lapsed hold(s)")
        return len(lapsed)


class RedisSlotHoldStore(SlotHoldStore):
    """Holds as Redis keys with a millisecond TTL."""

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    def _key(self, slot_id: str) -> str:
        """Generate hold key with namespace."""
        return namespaced("hold", str(slot_id))

    async def acquire(self, slot_id: str, owner: str, ttl_seconds: Optional[int] = None) -> bool:
        ttl_ms = (ttl_seconds or settings.slot_hold_ttl_seconds) * 1000
        try:
            result = await self.redis.eval(ACQUIRE_SCRIPT, 1, self._key(slot_id), owner, ttl_ms)
            return bool(result)
        except RedisError as e:
            logger.error(f"Hold acquire failed for slot {slot_id}: {e} - allowing")
            return True

    async def release(self, slot_id: str, owner: str) -> bool:
        try:
            result = await self.redis.eval(RELEASE_SCRIPT, 1, self._key(slot_id), owner)
            return bool(result)
        except RedisError as e:
            logger.error(f"Hold release failed for slot {slot_id}: {e}")
            return False

    async def holder(self, slot_id: str) -> Optional[str]:
        try:
            return await self.redis.get(self._key(slot_id))
        except RedisError as e:
            logger.error(f"Hold lookup failed for slot {slot_id}: {e}")
            return None


# Singleton
_store: Optional[SlotHoldStore] = None


async def get_slot_hold_store() -> SlotHoldStore:
    """Get the configured SlotHoldStore, falling back to memory."""
    global _store
    if _store is None:
        client = await get_redis() if settings.state_backend == "redis" else None
        if client is not None:
            _store = RedisSlotHoldStore(client)
        else:
            if settings.state_backend == "redis":
                logger.warning("Redis unavailable, using in-memory slot holds")
            _store = InMemorySlotHoldStore()
    return _store


def reset_slot_hold_store() -> None:
    """Forget the cached store (tests and shutdown)."""
    global _store
    _store = None
