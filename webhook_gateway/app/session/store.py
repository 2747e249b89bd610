"""
Session Store Adapters
======================

Server-side storage for session records, keyed by the opaque session id
carried in the session cookie.

Two implementations share one contract:
- MemorySessionStore: process-local dict, development only
- RedisSessionStore: redis.asyncio client, required in production

Records expire after SESSION_TTL_SECONDS (24 hours). Every write and
touch resets the expiry.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from redis import asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import Settings
from ..errors import StoreUnavailable

logger = logging.getLogger("webhook_gateway.session")

SESSION_TTL_SECONDS = 24 * 60 * 60
REDIS_KEY_PREFIX = "webhook_gateway:sess:"
REDIS_MAX_RECONNECT_ATTEMPTS = 10


class SessionStore(ABC):
    """Uniform get/set/destroy contract over a key/value store."""

    ttl_seconds = SESSION_TTL_SECONDS

    async def connect(self) -> None:
        """Open connections. No-op for stores that need none."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, session_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def destroy(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def touch(self, session_id: str) -> None:
        """Reset the expiry of an existing record."""

    @abstractmethod
    async def ping(self) -> bool:
        """Liveness check for the readiness probe. Never raises."""


# =============================================================================
# In-memory store
# =============================================================================

class MemorySessionStore(SessionStore):
    """Dict-backed store. Records are lost on restart and not shared between workers."""

    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(session_id)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= self._clock():
            self._data.pop(session_id, None)
            return None
        return json.loads(payload)

    async def set(self, session_id: str, data: Dict[str, Any]) -> None:
        # stored serialized so callers never share mutable state with the store
        self._data[session_id] = (json.dumps(data), self._clock() + self.ttl_seconds)

    async def destroy(self, session_id: str) -> None:
        self._data.pop(session_id, None)

    async def touch(self, session_id: str) -> None:
        entry = self._data.get(session_id)
        if entry is not None:
            self._data[session_id] = (entry[0], self._clock() + self.ttl_seconds)

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._data)


class FallbackMemorySessionStore(MemorySessionStore):
    """
    Memory store standing in for a configured Redis that was down at startup.

    Sessions work, but readiness keeps reporting the configured store as
    disconnected.
    """

    async def ping(self) -> bool:
        return False


# =============================================================================
# Redis store
# =============================================================================

class LinearCappedBackoff(AbstractBackoff):
    """Reconnect delay of min(100 ms * attempt, 3 s)."""

    def __init__(self, step: float = 0.1, cap: float = 3.0):
        self._step = step
        self._cap = cap

    def reset(self) -> None:
        pass

    def compute(self, failures: int) -> float:
        return min(self._step * failures, self._cap)


class RedisSessionStore(SessionStore):
    """
    Redis-backed store.

    Values are JSON documents under ``webhook_gateway:sess:<id>`` written
    with SETEX. Connection errors are retried by the client with
    LinearCappedBackoff for up to 10 attempts; whatever still fails is
    raised as StoreUnavailable.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        client: Optional[aioredis.Redis] = None,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        prefix: str = REDIS_KEY_PREFIX,
    ):
        if client is None:
            if not url:
                raise ValueError("RedisSessionStore needs a URL or a client")
            client = aioredis.Redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=5,
                retry=Retry(LinearCappedBackoff(), REDIS_MAX_RECONNECT_ATTEMPTS),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}{session_id}"

    async def connect(self) -> None:
        try:
            await self.client.ping()
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise StoreUnavailable("Unable to connect to the session store") from e
        logger.info("Redis session store connected")

    async def close(self) -> None:
        try:
            await self.client.aclose()
            logger.info("Redis client disconnected")
        except RedisError as e:
            logger.error(f"Error disconnecting Redis: {e}")

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(self._key(session_id))
        except RedisError as e:
            logger.error(f"Session read failed: {e}")
            raise StoreUnavailable() from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable session record")
            return None

    async def set(self, session_id: str, data: Dict[str, Any]) -> None:
        try:
            await self.client.setex(self._key(session_id), self.ttl_seconds, json.dumps(data))
        except RedisError as e:
            logger.error(f"Session write failed: {e}")
            raise StoreUnavailable() from e

    async def destroy(self, session_id: str) -> None:
        try:
            await self.client.delete(self._key(session_id))
        except RedisError as e:
            logger.error(f"Session delete failed: {e}")
            raise StoreUnavailable() from e

    async def touch(self, session_id: str) -> None:
        try:
            await self.client.expire(self._key(session_id), self.ttl_seconds)
        except RedisError as e:
            logger.error(f"Session touch failed: {e}")
            raise StoreUnavailable() from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False


# =============================================================================
# Factory
# =============================================================================

def build_session_store(settings: Settings) -> SessionStore:
    """Redis when REDIS_URL is configured, memory otherwise."""
    if settings.REDIS_URL:
        logger.info("Using Redis session store")
        return RedisSessionStore(settings.REDIS_URL)

    logger.info("Using in-memory session store (development only)")
    if settings.is_production:
        logger.warning("Memory store is not suitable for production!")
    return MemorySessionStore()


async def open_session_store(store: SessionStore, settings: Settings) -> SessionStore:
    """
    Connect the store at startup.

    A Redis connection failure aborts startup in production; in development
    it falls back to the memory store.
    """
    try:
        await store.connect()
    except StoreUnavailable:
        if settings.is_production:
            raise
        logger.warning("Falling back to memory store (development only)")
        await store.close()
        return FallbackMemorySessionStore()
    return store
