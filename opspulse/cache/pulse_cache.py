"""TTL cache of organizational pulse payloads with warm-up and periodic refresh."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from ..analytics.pulse import OrganizationalPulseService, TimeRange
from ..analytics.registry import MetricRegistry
from ..monitoring.metrics import record_cache_lookup, record_warmup_entry
from ..utils.config import PulseCacheSettings
from ..utils.logging import setup_logger
from .backends import SharedCache

logger = setup_logger(__name__, context={"component": "PulseCache"})

KEY_PREFIX = "org_pulse"


def cache_key(tenant_id: str, time_range: TimeRange | str) -> str:
    return f"{KEY_PREFIX}:{tenant_id}:{TimeRange(time_range).value}"


class PulseCache:
    """Serves pulse payloads from a shared TTL store and recomputes on miss.

    Concurrent misses for the same key share one computation. Backend failures are
    logged and treated as a miss so the dashboard keeps working without the cache.
    """

    def __init__(
        self,
        backend: SharedCache,
        pulse_service: OrganizationalPulseService,
        registry: MetricRegistry,
        settings: PulseCacheSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._pulse = pulse_service
        self._registry = registry
        self._settings = settings or PulseCacheSettings()
        self._sleep = sleep
        self._pending: dict[str, asyncio.Task[dict[str, Any]]] = {}
        # Bumped on every invalidation; results computed under an older value are not stored.
        self._generations: dict[str, int] = {}
        self._warmup_task: asyncio.Task[dict[str, int]] | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def time_ranges(self) -> list[TimeRange]:
        return [TimeRange(value) for value in self._settings.warmup_time_ranges]

    async def get(self, tenant_id: str, time_range: TimeRange | str) -> dict[str, Any] | None:
        key = cache_key(tenant_id, time_range)
        try:
            payload = await self._backend.get(key)
        except Exception as exc:  # pragma: no cover - backend specific
            record_cache_lookup("error")
            logger.warning(
                "Pulse cache read failed for %s: %s",
                key,
                exc,
                extra={"tenant_id": tenant_id, "status": "error"},
            )
            return None
        record_cache_lookup("hit" if payload is not None else "miss")
        return payload

    async def set(
        self, tenant_id: str, time_range: TimeRange | str, payload: dict[str, Any]
    ) -> None:
        key = cache_key(tenant_id, time_range)
        try:
            await self._backend.set(key, payload)
        except Exception as exc:  # pragma: no cover - backend specific
            logger.warning(
                "Pulse cache write failed for %s: %s",
                key,
                exc,
                extra={"tenant_id": tenant_id, "status": "error"},
            )

    async def invalidate(self, tenant_id: str, time_range: TimeRange | str | None = None) -> int:
        """Drop one cached range, or every range for the tenant when none is given.

        Computations already running for the tenant still answer their callers, but
        their results are not written back to the cache.
        """

        self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
        if time_range is not None:
            stale_keys = [cache_key(tenant_id, time_range)]
            await self._backend.delete(stale_keys[0])
            removed = 1
        else:
            prefix = f"{KEY_PREFIX}:{tenant_id}:"
            stale_keys = [key for key in self._pending if key.startswith(prefix)]
            removed = await self._backend.delete_prefix(prefix)
        for key in stale_keys:
            self._pending.pop(key, None)
        logger.info(
            "Invalidated %s pulse cache entr%s",
            removed,
            "y" if removed == 1 else "ies",
            extra={"tenant_id": tenant_id, "status": "success"},
        )
        return removed

    async def _compute_and_store(
        self, tenant_id: str, time_range: TimeRange
    ) -> dict[str, Any]:
        generation = self._generations.get(tenant_id, 0)
        payload = await self._pulse.calculate(tenant_id, time_range)
        if self._generations.get(tenant_id, 0) == generation:
            await self.set(tenant_id, time_range, payload)
        else:
            logger.info(
                "Discarded %s pulse computed before an invalidation",
                time_range.value,
                extra={"tenant_id": tenant_id, "status": "stale"},
            )
        return payload

    async def get_or_compute(
        self, tenant_id: str, time_range: TimeRange | str
    ) -> dict[str, Any]:
        time_range = TimeRange(time_range)
        cached = await self.get(tenant_id, time_range)
        if cached is not None:
            return cached

        key = cache_key(tenant_id, time_range)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(
                self._compute_and_store(tenant_id, time_range), name=f"pulse:{key}"
            )
            self._pending[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[dict[str, Any]]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _tenants(self) -> list[str]:
        return await asyncio.to_thread(self._registry.tenants_with_active_definitions)

    async def _prime(
        self, combinations: Iterable[tuple[str, TimeRange]], *, skip_cached: bool
    ) -> list[tuple[str, TimeRange]]:
        """Compute and store each combination; return the ones that failed."""

        failed: list[tuple[str, TimeRange]] = []
        for tenant_id, time_range in combinations:
            if skip_cached and await self.get(tenant_id, time_range) is not None:
                record_warmup_entry("cached")
                continue
            try:
                await self._compute_and_store(tenant_id, time_range)
            except Exception as exc:  # pragma: no cover - logged and retried
                failed.append((tenant_id, time_range))
                record_warmup_entry("failed")
                logger.warning(
                    "Pulse warm-up failed for range %s: %s",
                    time_range.value,
                    exc,
                    extra={"tenant_id": tenant_id, "status": "error"},
                )
            else:
                record_warmup_entry("warmed")
        return failed

    async def warm_up(self) -> dict[str, int]:
        """Prime every (tenant, range) combination with bounded, backed-off retries.

        Entries that still fail after the last attempt are left to warm lazily on the
        first real request.
        """

        started = time.perf_counter()
        attempts = self._settings.warmup_attempts
        delay = self._settings.warmup_initial_delay_seconds
        pending: list[tuple[str, TimeRange]] | None = None
        total = 0
        attempt = 0
        for attempt in range(1, attempts + 1):
            try:
                if pending is None:
                    tenants = await self._tenants()
                    pending = [(t, r) for t in tenants for r in self.time_ranges]
                    total = len(pending)
                pending = await self._prime(pending, skip_cached=True)
            except Exception as exc:  # pragma: no cover - logged and retried
                logger.warning(
                    "Pulse warm-up attempt %s/%s failed: %s",
                    attempt,
                    attempts,
                    exc,
                    extra={"status": "error"},
                )
            else:
                if not pending:
                    break
            if attempt < attempts:
                await self._sleep(delay)
                delay *= 2

        failed = 0 if pending is None else len(pending)
        if pending is None:
            status = "error"
        else:
            status = "success" if failed == 0 else "partial"
        logger.info(
            "Pulse warm-up finished after %s attempt(s): %s of %s entries ready",
            attempt,
            total - failed,
            total,
            extra={
                "status": status,
                "duration_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return {"attempts": attempt, "total": total, "failed": failed}

    async def refresh_all(self) -> int:
        """Recompute every known (tenant, range) combination regardless of cache state."""

        tenants = await self._tenants()
        combinations = [(t, r) for t in tenants for r in self.time_ranges]
        failed = await self._prime(combinations, skip_cached=False)
        return len(combinations) - len(failed)

    async def _refresh_forever(self) -> None:
        interval = self._settings.refresh_interval_seconds
        while True:
            await self._sleep(interval)
            try:
                refreshed = await self.refresh_all()
            except Exception as exc:  # pragma: no cover - loop must survive
                logger.error(
                    "Pulse cache refresh failed: %s", exc, extra={"status": "error"}
                )
            else:
                logger.info(
                    "Refreshed %s pulse cache entries", refreshed, extra={"status": "success"}
                )

    def start_warm_up(self) -> asyncio.Task[dict[str, int]]:
        if self._warmup_task is None or self._warmup_task.done():
            self._warmup_task = asyncio.create_task(self.warm_up(), name="pulse-cache-warmup")
        return self._warmup_task

    def start_background_refresh(self) -> asyncio.Task[None]:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(
                self._refresh_forever(), name="pulse-cache-refresh"
            )
        return self._refresh_task

    async def stop(self) -> None:
        tasks = [
            task
            for task in (self._warmup_task, self._refresh_task, *self._pending.values())
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._warmup_task = None
        self._refresh_task = None
