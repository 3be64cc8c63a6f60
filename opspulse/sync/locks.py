"""Per-connection exclusivity guards for sync runs."""

from __future__ import annotations

import secrets
from threading import Lock
from typing import Protocol

from redis import asyncio as redis_asyncio

from ..exceptions import ConfigurationError
from ..utils.config import GlobalSettings
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "LockRegistry"})

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockRegistry(Protocol):
    """Tracks which connections currently have a sync in progress."""

    async def acquire(self, connection_id: str) -> bool:
        """Claim the connection; return False when it is already held."""
        ...

    async def release(self, connection_id: str) -> None:
        ...

    async def is_held(self, connection_id: str) -> bool:
        ...


class InProcessLockRegistry:
    """Thread-safe set of running connection ids for single-instance deployments."""

    def __init__(self) -> None:
        self._running: set[str] = set()
        self._lock = Lock()

    async def acquire(self, connection_id: str) -> bool:
        with self._lock:
            if connection_id in self._running:
                return False
            self._running.add(connection_id)
            return True

    async def release(self, connection_id: str) -> None:
        with self._lock:
            self._running.discard(connection_id)

    async def is_held(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._running

    def reset(self) -> None:
        """Forget every held connection (primarily used in testing)."""

        with self._lock:
            self._running.clear()


class RedisLockRegistry:
    """Distributed guard using ``SET NX PX`` with a per-holder token.

    The TTL bounds how long a crashed instance can pin a connection; release only
    deletes the key when the stored token still belongs to this process.
    """

    def __init__(
        self,
        client: redis_asyncio.Redis,
        *,
        ttl_seconds: int = 3600,
        prefix: str = "opspulse:sync-lock:",
    ) -> None:
        self._client = client
        self._ttl_ms = ttl_seconds * 1000
        self._prefix = prefix
        self._tokens: dict[str, str] = {}

    def _key(self, connection_id: str) -> str:
        return f"{self._prefix}{connection_id}"

    async def acquire(self, connection_id: str) -> bool:
        token = secrets.token_hex(16)
        acquired = await self._client.set(
            self._key(connection_id), token, nx=True, px=self._ttl_ms
        )
        if not acquired:
            return False
        self._tokens[connection_id] = token
        return True

    async def release(self, connection_id: str) -> None:
        token = self._tokens.pop(connection_id, None)
        if token is None:
            return
        released = await self._client.eval(_RELEASE_SCRIPT, 1, self._key(connection_id), token)
        if not released:
            logger.warning(
                "Sync lock expired before release",
                extra={"connection_id": connection_id, "status": "warning"},
            )

    async def is_held(self, connection_id: str) -> bool:
        return bool(await self._client.exists(self._key(connection_id)))


def build_lock_registry(settings: GlobalSettings) -> LockRegistry:
    """Return the lock registry selected by ``sync.lock_backend``."""

    if settings.sync.lock_backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError("OPSPULSE_REDIS_URL is required for the redis lock backend")
        client = redis_asyncio.from_url(settings.redis_url, decode_responses=True)
        return RedisLockRegistry(client, ttl_seconds=settings.sync.lock_ttl_seconds)
    return InProcessLockRegistry()
