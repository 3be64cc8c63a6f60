"""Key/value backends for precomputed dashboard payloads."""

from __future__ import annotations

import copy
import json
import time
from collections.abc import Callable
from threading import Lock
from typing import Any, Protocol

from cachetools import TTLCache
from redis import asyncio as redis_asyncio

from ..exceptions import ConfigurationError
from ..utils.config import GlobalSettings


class SharedCache(Protocol):
    """TTL-bounded JSON payload store shared by every request path."""

    async def get(self, key: str) -> dict[str, Any] | None:
        ...

    async def set(self, key: str, value: dict[str, Any]) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...


class MemoryCache:
    """Process-local TTL cache built on :class:`cachetools.TTLCache`."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 300,
        max_entries: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TTLCache[str, dict[str, Any]] = TTLCache(
            maxsize=max_entries, ttl=ttl_seconds, timer=timer
        )
        self._lock = Lock()

    async def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._entries.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in list(self._entries.keys()) if key.startswith(prefix)]
            for key in keys:
                self._entries.pop(key, None)
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


class RedisCache:
    """Shared cache for multi-instance deployments; values are stored as JSON with an expiry."""

    def __init__(
        self,
        client: redis_asyncio.Redis,
        *,
        ttl_seconds: int = 300,
        namespace: str = "opspulse:cache:",
    ) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: dict[str, Any]) -> None:
        await self._client.set(
            self._key(key), json.dumps(value, default=str), ex=self._ttl_seconds
        )

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key async for key in self._client.scan_iter(match=f"{self._key(prefix)}*")]
        if not keys:
            return 0
        return int(await self._client.delete(*keys))


def build_shared_cache(settings: GlobalSettings) -> SharedCache:
    """Return the cache backend selected by ``pulse_cache.backend``."""

    cache_settings = settings.pulse_cache
    if cache_settings.backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError("OPSPULSE_REDIS_URL is required for the redis cache backend")
        client = redis_asyncio.from_url(settings.redis_url, decode_responses=True)
        return RedisCache(client, ttl_seconds=cache_settings.ttl_seconds)
    return MemoryCache(
        ttl_seconds=cache_settings.ttl_seconds, max_entries=cache_settings.max_entries
    )
