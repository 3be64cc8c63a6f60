"""Periodic driver that launches syncs for connections whose interval has elapsed."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterable
from datetime import datetime

from ..exceptions import AuthenticationError, ConcurrencyConflictError
from ..models.base import utcnow
from ..models.connection import Connection
from ..models.sync_history import SyncType
from ..utils.logging import setup_logger
from .orchestrator import SyncOrchestrator
from .stores import CredentialStore

logger = setup_logger(__name__, context={"component": "ScheduledSyncDriver"})


def minutes_since_last_success(connection: Connection, now: datetime) -> float | None:
    if connection.last_successful_sync_at is None:
        return None
    return (now - connection.last_successful_sync_at).total_seconds() / 60


def is_due(connection: Connection, now: datetime) -> bool:
    """Return True when the connection should be synced on this tick."""

    if not connection.is_active or connection.requires_reauth:
        return False
    elapsed = minutes_since_last_success(connection, now)
    return elapsed is None or elapsed >= connection.sync_interval_minutes


class ScheduledSyncDriver:
    """Scans active connections every tick and starts due syncs as background tasks.

    A tick never awaits a sync; slow connections only occupy their own task.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        orchestrator: SyncOrchestrator,
        *,
        tick_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credentials = credential_store
        self._orchestrator = orchestrator
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[object]] = {}
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> dict[str, asyncio.Task[object]]:
        return dict(self._in_flight)

    def due_connections(self, connections: Iterable[Connection], now: datetime) -> list[Connection]:
        return [
            connection
            for connection in connections
            if connection.id not in self._in_flight and is_due(connection, now)
        ]

    async def tick(self) -> list[asyncio.Task[object]]:
        """Launch a sync for every due connection and return the created tasks."""

        connections = await asyncio.to_thread(self._credentials.list_active)
        launched: list[asyncio.Task[object]] = []
        for connection in self.due_connections(connections, self._clock()):
            task: asyncio.Task[object] = asyncio.create_task(
                self._orchestrator.run(connection.id, connection.tenant_id, SyncType.INCREMENTAL),
                name=f"sync:{connection.id}",
            )
            self._in_flight[connection.id] = task
            task.add_done_callback(self._make_callback(connection))
            launched.append(task)

        if launched:
            logger.info(
                "Launched %s scheduled sync(s)",
                len(launched),
                extra={"status": "scheduled"},
            )
        return launched

    def _make_callback(self, connection: Connection) -> Callable[[asyncio.Task[object]], None]:
        def _done(task: asyncio.Task[object]) -> None:
            self._in_flight.pop(connection.id, None)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is None:
                return
            context = {
                "tenant_id": connection.tenant_id,
                "connection_id": connection.id,
                "vendor": connection.vendor,
                "sync_type": SyncType.INCREMENTAL.value,
            }
            if isinstance(exc, ConcurrencyConflictError):
                logger.info(
                    "Scheduled sync skipped: %s", exc, extra={**context, "status": "conflict"}
                )
            elif isinstance(exc, AuthenticationError):
                logger.warning(
                    "Scheduled sync requires reconnect: %s",
                    exc,
                    extra={**context, "status": "reconnect_required"},
                )
            else:
                logger.error(
                    "Scheduled sync failed: %s", exc, extra={**context, "status": "error"}
                )

        return _done

    async def run_forever(self) -> None:
        logger.info(
            "Scheduled sync driver started (tick every %ss)",
            self._tick_seconds,
            extra={"status": "started"},
        )
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover
                logger.exception(
                    "Scheduled sync tick failed: %s", exc, extra={"status": "error"}
                )
            await asyncio.sleep(self._tick_seconds)

    def start(self) -> asyncio.Task[None]:
        if not self.running:
            self._loop_task = asyncio.create_task(self.run_forever(), name="sync-driver")
        assert self._loop_task is not None
        return self._loop_task

    async def stop(self) -> None:
        """Cancel the tick loop and any syncs it launched."""

        tasks = [task for task in (self._loop_task, *self._in_flight.values()) if task]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._loop_task = None
        self._in_flight.clear()
