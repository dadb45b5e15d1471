"""
OAuth store: authorization states, one-time codes, rotated refresh tokens and
tracked bearer sessions.

Backends only provide four primitives over opaque string values. Typing,
serialization and TTL enforcement happen once, in OAuthStore, through the
state codec.
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple, Type

from redis.asyncio import Redis

from config import Config
from models import AuthorizationCode, AuthorizationState, RefreshTokenRecord, TokenInfo
from state_codec import ModelT, decode_entity, encode_entity

logger = logging.getLogger(__name__)

STATE_PREFIX = "oauth:state:"
CODE_PREFIX = "oauth:code:"
REFRESH_PREFIX = "oauth:refresh:"
TOKEN_PREFIX = "oauth:token:"


class OAuthStore(ABC):
    """Key/value store with TTLs and atomic take for OAuth flow entities"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    # Backend primitives
    @abstractmethod
    async def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def _get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def _delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def _take(self, key: str) -> Optional[str]:
        """Return the value and remove it in one atomic step"""
        ...

    async def close(self) -> None:
        pass

    async def _put(self, key: str, entity, created_at: float, ttl_seconds: int) -> None:
        expires_at = created_at + ttl_seconds
        # Backend TTL is only an eviction hint; the envelope expiry is authoritative
        backend_ttl = max(1, math.ceil(expires_at - self.clock()))
        await self._set(key, encode_entity(entity, expires_at), backend_ttl)

    def _decode(self, raw: Optional[str], model: Type[ModelT]) -> Optional[ModelT]:
        if raw is None:
            return None
        return decode_entity(raw, model, now=self.clock())

    # Authorization state
    async def put_state(self, key: str, state: AuthorizationState, ttl_seconds: int) -> None:
        await self._put(STATE_PREFIX + key, state, state.created_at, ttl_seconds)

    async def get_state(self, key: str) -> Optional[AuthorizationState]:
        """Read without deleting; the caller decides when the state is spent"""
        return self._decode(await self._get(STATE_PREFIX + key), AuthorizationState)

    async def delete_state(self, key: str) -> None:
        await self._delete(STATE_PREFIX + key)

    # Authorization codes
    async def put_code(self, key: str, code: AuthorizationCode, ttl_seconds: int) -> None:
        await self._put(CODE_PREFIX + key, code, code.created_at, ttl_seconds)

    async def get_and_delete_code(self, key: str) -> Optional[AuthorizationCode]:
        return self._decode(await self._take(CODE_PREFIX + key), AuthorizationCode)

    # Rotated refresh tokens
    async def put_refresh_token(self, key: str, record: RefreshTokenRecord, ttl_seconds: int) -> None:
        await self._put(REFRESH_PREFIX + key, record, record.issued_at, ttl_seconds)

    async def get_and_delete_refresh_token(self, key: str) -> Optional[RefreshTokenRecord]:
        return self._decode(await self._take(REFRESH_PREFIX + key), RefreshTokenRecord)

    # Tracked bearer sessions
    async def put_token(self, key: str, info: TokenInfo, ttl_seconds: int) -> None:
        await self._put(TOKEN_PREFIX + key, info, self.clock(), ttl_seconds)

    async def get_token(self, key: str) -> Optional[TokenInfo]:
        info = self._decode(await self._get(TOKEN_PREFIX + key), TokenInfo)
        if info and info.is_expired(self.clock()):
            await self._delete(TOKEN_PREFIX + key)
            return None
        return info

    async def delete_token(self, key: str) -> None:
        await self._delete(TOKEN_PREFIX + key)


class MemoryStore(OAuthStore):
    """
    In-process store for single-instance deployments and tests.

    Values never survive a restart and are not shared between workers.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._data: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    async def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._evict_expired()
            self._data[key] = (self.clock() + ttl_seconds, value)

    async def _get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
        return entry[1] if entry else None

    async def _delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def _take(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.pop(key, None)
            self._evict_expired()
        return entry[1] if entry else None

    def _evict_expired(self) -> None:
        now = self.clock()
        expired = [key for key, (evict_at, _) in self._data.items() if now >= evict_at]
        for key in expired:
            del self._data[key]

    def __len__(self) -> int:
        return len(self._data)


class RedisStore(OAuthStore):
    """Networked store for multi-instance and serverless deployments"""

    def __init__(self, client: Redis, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def _get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def _delete(self, key: str) -> None:
        await self.client.delete(key)

    async def _take(self, key: str) -> Optional[str]:
        # GETDEL is a single atomic command (Redis >= 6.2)
        return await self.client.getdel(key)

    async def close(self) -> None:
        await self.client.aclose()


def get_store(config: Config) -> OAuthStore:
    """Pick the store backend for this deployment"""
    if config.redis_url:
        logger.info("OAuth store: Redis")
        return RedisStore.from_url(config.redis_url)

    if config.is_production:
        logger.warning("REDIS_URL not set - using in-memory OAuth store, which is not safe across instances")
    else:
        logger.info("OAuth store: in-memory")
    return MemoryStore()
