"""
Pluggable call session storage.

Keys (Redis backend, with namespace):
- callcatcher:v1:call:{call_id}          -> CallSession JSON
- callcatcher:v1:calls                   -> set of live call ids
- callcatcher:v1:call:expired:{call_id}  -> tombstone for late callbacks
- callcatcher:v1:call:lock:{call_id}     -> per-call write lock

The in-memory backend keeps the same contract for a single process.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from callcatcher.config import settings
from callcatcher.core.errors import UpstreamUnavailable
from callcatcher.infra.redis import get_redis, namespaced
from .models import CallSession

logger = logging.getLogger(__name__)

CALL_PREFIX = namespaced("call", "")
CALL_INDEX_KEY = namespaced("calls")
EXPIRED_PREFIX = namespaced("call", "expired", "")
LOCK_PREFIX = namespaced("call", "lock", "")


class SessionStore(ABC):
    """Storage contract for call sessions."""

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallSession]:
        """Load a live session."""

    @abstractmethod
    async def save(self, session: CallSession) -> None:
        """Persist a session."""

    @abstractmethod
    async def delete(self, call_id: str) -> None:
        """Remove a session."""

    @abstractmethod
    async def list_ids(self) -> list[str]:
        """Ids of all stored sessions."""

    @abstractmethod
    async def mark_expired(self, call_id: str) -> None:
        """Remember that a call was retired so late events can be answered."""

    @abstractmethod
    async def is_expired(self, call_id: str) -> bool:
        """Check for a retirement tombstone."""

    @abstractmethod
    def lock(self, call_id: str):
        """Async context manager serialising writers for one call id."""


class InMemorySessionStore(SessionStore):
    """
    Process-local session storage.

    Per-call locks are dropped once nobody holds or waits on them, and
    tombstones are purged after the retention window, so both maps stay
    proportional to the calls in progress.
    """

    def __init__(
        self,
        retention_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sessions: dict[str, str] = {}
        self._expired: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._retention = retention_seconds or settings.session_retention_seconds
        self._clock = clock

    async def get(self, call_id: str) -> Optional[CallSession]:
        data = self._sessions.get(call_id)
        return CallSession.from_json(data) if data else None

    async def save(self, session: CallSession) -> None:
        self._sessions[session.call_id] = session.to_json()

    async def delete(self, call_id: str) -> None:
        self._sessions.pop(call_id, None)

    async def list_ids(self) -> list[str]:
        self._purge_tombstones()
        return list(self._sessions)

    async def mark_expired(self, call_id: str) -> None:
        self._purge_tombstones()
        self._expired[call_id] = self._clock() + self._retention

    async def is_expired(self, call_id: str) -> bool:
        deadline = self._expired.get(call_id)
        if deadline is None:
            return False
        if deadline < self._clock():
            del self._expired[call_id]
            return False
        return True

    def _purge_tombstones(self) -> None:
        now = self._clock()
        for call_id in [cid for cid, deadline in self._expired.items() if deadline < now]:
            del self._expired[call_id]

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[call_id] -= 1
            if not self._lock_users[call_id]:
                del self._lock_users[call_id]
                self._locks.pop(call_id, None)


class RedisSessionStore(SessionStore):
    """
    Redis-backed session storage shared by all instances.

    Session keys carry a TTL well past the inactivity timeout as a safety
    net; the expiry sweep does the real retirement and releases holds.
    """

    def __init__(self, redis_client: Redis):
        self.redis = redis_client
        self._ttl = settings.session_inactivity_timeout_seconds * 2
        self._retention = settings.session_retention_seconds
        self._lock_timeout = settings.call_lock_timeout_seconds

    def _key(self, call_id: str) -> str:
        """Generate session key with namespace."""
        return f"{CALL_PREFIX}{call_id}"

    async def get(self, call_id: str) -> Optional[CallSession]:
        try:
            data = await self.redis.get(self._key(call_id))
        except RedisError as e:
            logger.error(f"Failed to get session {call_id}: {e}")
            raise UpstreamUnavailable("Session store unavailable") from e
        return CallSession.from_json(data) if data else None

    async def save(self, session: CallSession) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.setex(self._key(session.call_id), self._ttl, session.to_json())
                pipe.sadd(CALL_INDEX_KEY, session.call_id)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to save session {session.call_id}: {e}")
            raise UpstreamUnavailable("Session store unavailable") from e

    async def delete(self, call_id: str) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._key(call_id))
                pipe.srem(CALL_INDEX_KEY, call_id)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to delete session {call_id}: {e}")

    async def list_ids(self) -> list[str]:
        try:
            return list(await self.redis.smembers(CALL_INDEX_KEY))
        except RedisError as e:
            logger.error(f"Failed to list sessions: {e}")
            return []

    async def mark_expired(self, call_id: str) -> None:
        try:
            await self.redis.setex(f"{EXPIRED_PREFIX}{call_id}", self._retention, "1")
        except RedisError as e:
            logger.error(f"Failed to mark session {call_id} expired: {e}")

    async def is_expired(self, call_id: str) -> bool:
        try:
            return bool(await self.redis.exists(f"{EXPIRED_PREFIX}{call_id}"))
        except RedisError as e:
            logger.error(f"Failed to check expiry for {call_id}: {e}")
            return False

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"{LOCK_PREFIX}{call_id}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise UpstreamUnavailable("Call lock unavailable") from e
        if not acquired:
            raise UpstreamUnavailable(f"Timed out waiting for call {call_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                logger.warning(f"Call lock for {call_id} expired before release: {e}")


# Singleton
_store: Optional[SessionStore] = None


async def get_session_store() -> SessionStore:
    """
    Get the configured SessionStore.

    Falls back to in-memory storage when Redis is selected but unreachable.
    """
    global _store
    if _store is None:
        client = await get_redis() if settings.state_backend == "redis" else None
        if client is not None:
            _store = RedisSessionStore(client)
        else:
            if settings.state_backend == "redis":
                logger.warning("Redis unavailable, using in-memory call session store")
            _store = InMemorySessionStore()
    return _store


def reset_session_store() -> None:
    """Forget the cached store (tests and shutdown)."""
    global _store
    _store = None
