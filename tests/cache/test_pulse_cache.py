"""Tests for pulse cache backends, coalescing, and warm-up."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from opspulse.cache.backends import MemoryCache, RedisCache, build_shared_cache
from opspulse.cache.pulse_cache import PulseCache, cache_key
from opspulse.exceptions import ConfigurationError
from opspulse.utils.config import GlobalSettings, PulseCacheSettings


class FakeTimer:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeRedis:
    """Minimal asyncio redis client covering the commands RedisCache issues."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiries: dict[str, int] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiries[key] = ex

    async def delete(self, *keys):
        return sum(1 for key in keys if self.values.pop(key, None) is not None)

    async def scan_iter(self, match):
        prefix = match.rstrip("*")
        for key in list(self.values):
            if key.startswith(prefix):
                yield key


def _pulse_cache(pulse_service, *, registry=None, settings=None, sleep=None):
    return PulseCache(
        MemoryCache(),
        pulse_service,
        registry or Mock(tenants_with_active_definitions=Mock(return_value=["tenant-a"])),
        settings or PulseCacheSettings(warmup_time_ranges=["7d"], warmup_initial_delay_seconds=1),
        sleep=sleep or RecordingSleep(),
    )


class TestMemoryCache:
    """Test suite for MemoryCache."""

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self):
        """Values disappear once the TTL elapses."""
        timer = FakeTimer()
        cache = MemoryCache(ttl_seconds=60, timer=timer)
        await cache.set("k", {"v": 1})

        timer.now = 59
        assert await cache.get("k") == {"v": 1}
        timer.now = 61
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_returned_values_are_copies(self):
        """Mutating a returned payload does not change the cached one."""
        cache = MemoryCache()
        await cache.set("k", {"metrics": [1]})

        value = await cache.get("k")
        value["metrics"].append(2)

        assert await cache.get("k") == {"metrics": [1]}

    @pytest.mark.asyncio
    async def test_delete_prefix(self):
        """Only keys with the prefix are removed."""
        cache = MemoryCache()
        await cache.set("org_pulse:a:1m", {})
        await cache.set("org_pulse:a:3m", {})
        await cache.set("org_pulse:b:1m", {})

        assert await cache.delete_prefix("org_pulse:a:") == 2
        assert await cache.get("org_pulse:b:1m") == {}


class TestRedisCache:
    """Test suite for RedisCache."""

    @pytest.mark.asyncio
    async def test_values_are_namespaced_json_with_expiry(self):
        client = FakeRedis()
        cache = RedisCache(client, ttl_seconds=120)

        await cache.set("org_pulse:a:1m", {"score": 90})

        assert json.loads(client.values["opspulse:cache:org_pulse:a:1m"]) == {"score": 90}
        assert client.expiries["opspulse:cache:org_pulse:a:1m"] == 120
        assert await cache.get("org_pulse:a:1m") == {"score": 90}
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_delete_prefix(self):
        client = FakeRedis()
        cache = RedisCache(client)
        await cache.set("org_pulse:a:1m", {})
        await cache.set("org_pulse:b:1m", {})

        assert await cache.delete_prefix("org_pulse:a:") == 1
        assert await cache.delete_prefix("org_pulse:zzz:") == 0
        assert list(client.values) == ["opspulse:cache:org_pulse:b:1m"]


class TestBuildSharedCache:
    """Test suite for backend selection."""

    def test_memory_backend_by_default(self):
        assert isinstance(build_shared_cache(GlobalSettings()), MemoryCache)

    def test_redis_backend_requires_url(self):
        settings = GlobalSettings(pulse_cache=PulseCacheSettings(backend="redis"), redis_url=None)

        with pytest.raises(ConfigurationError):
            build_shared_cache(settings)


class TestPulseCache:
    """Test suite for PulseCache."""

    def test_cache_key(self):
        assert cache_key("tenant-a", "3m") == "org_pulse:tenant-a:3m"

    @pytest.mark.asyncio
    async def test_miss_computes_and_hit_reuses(self):
        """The first request computes; later requests are served from the cache."""
        service = Mock(calculate=AsyncMock(return_value={"tenantId": "tenant-a"}))
        cache = _pulse_cache(service)

        first = await cache.get_or_compute("tenant-a", "1m")
        second = await cache.get_or_compute("tenant-a", "1m")

        assert first == second == {"tenantId": "tenant-a"}
        service.calculate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_computation(self):
        """Simultaneous misses for one key wait on a single calculation."""
        release = asyncio.Event()

        async def calculate(tenant_id, time_range):
            await release.wait()
            return {"tenantId": tenant_id, "timeRange": time_range.value}

        service = Mock(calculate=AsyncMock(side_effect=calculate))
        cache = _pulse_cache(service)

        waiters = asyncio.gather(
            cache.get_or_compute("tenant-a", "3m"), cache.get_or_compute("tenant-a", "3m")
        )
        await asyncio.sleep(0)
        release.set()
        results = await waiters

        assert results[0] == results[1] == {"tenantId": "tenant-a", "timeRange": "3m"}
        assert service.calculate.await_count == 1

    @pytest.mark.asyncio
    async def test_invalidate_drops_tenant_entries(self):
        """Invalidating without a range clears every range for the tenant only."""
        service = Mock(calculate=AsyncMock(return_value={}))
        cache = _pulse_cache(service)
        await cache.set("tenant-a", "1m", {"a": 1})
        await cache.set("tenant-a", "3m", {"a": 3})
        await cache.set("tenant-b", "1m", {"b": 1})

        assert await cache.invalidate("tenant-a") == 2
        assert await cache.get("tenant-a", "1m") is None
        assert await cache.get("tenant-b", "1m") == {"b": 1}

        await cache.invalidate("tenant-b", "1m")
        assert await cache.get("tenant-b", "1m") is None

    @pytest.mark.asyncio
    async def test_invalidate_discards_computation_already_running(self):
        """A pulse computed from pre-invalidation data is returned but never cached."""
        started = asyncio.Event()
        release = asyncio.Event()
        versions = iter(["before-sync", "after-sync"])

        async def calculate(tenant_id, time_range):
            version = next(versions)
            if version == "before-sync":
                started.set()
                await release.wait()
            return {"version": version}

        service = Mock(calculate=AsyncMock(side_effect=calculate))
        cache = _pulse_cache(service)

        in_flight = asyncio.create_task(cache.get_or_compute("tenant-a", "1m"))
        await started.wait()
        await cache.invalidate("tenant-a")
        release.set()

        assert await in_flight == {"version": "before-sync"}
        assert await cache.get("tenant-a", "1m") is None
        assert await cache.get_or_compute("tenant-a", "1m") == {"version": "after-sync"}
        assert await cache.get("tenant-a", "1m") == {"version": "after-sync"}
        assert service.calculate.await_count == 2

    @pytest.mark.asyncio
    async def test_warm_up_retries_failed_entries_with_backoff(self):
        """Failed entries are retried after a growing delay until they succeed."""
        service = Mock(calculate=AsyncMock(side_effect=[RuntimeError("db down"), {"ok": True}]))
        sleep = RecordingSleep()
        cache = _pulse_cache(service, sleep=sleep)

        result = await cache.warm_up()

        assert result == {"attempts": 2, "total": 1, "failed": 0}
        assert sleep.delays == [1.0]
        assert await cache.get("tenant-a", "7d") == {"ok": True}

    @pytest.mark.asyncio
    async def test_warm_up_gives_up_after_last_attempt(self):
        """Entries still failing after every attempt are left for lazy computation."""
        service = Mock(calculate=AsyncMock(side_effect=RuntimeError("db down")))
        sleep = RecordingSleep()
        cache = _pulse_cache(service, sleep=sleep)

        result = await cache.warm_up()

        assert result == {"attempts": 3, "total": 1, "failed": 1}
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_warm_up_skips_cached_entries(self):
        service = Mock(calculate=AsyncMock(return_value={}))
        cache = _pulse_cache(service)
        await cache.set("tenant-a", "7d", {"cached": True})

        result = await cache.warm_up()

        assert result["failed"] == 0
        service.calculate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_all_recomputes_cached_entries(self):
        """Periodic refresh replaces entries even when they are still cached."""
        service = Mock(calculate=AsyncMock(return_value={"fresh": True}))
        cache = _pulse_cache(service)
        await cache.set("tenant-a", "7d", {"fresh": False})

        assert await cache.refresh_all() == 1
        assert await cache.get("tenant-a", "7d") == {"fresh": True}

    @pytest.mark.asyncio
    async def test_stop_cancels_background_tasks(self):
        service = Mock(calculate=AsyncMock(return_value={}))
        cache = _pulse_cache(
            service,
            settings=PulseCacheSettings(refresh_interval_seconds=3600),
            sleep=asyncio.sleep,
        )
        refresh = cache.start_background_refresh()

        await cache.stop()

        assert refresh.cancelled()
