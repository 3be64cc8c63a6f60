"""Runs one full or incremental sync for a single connection."""

from __future__ import annotations

import asyncio
import time
import traceback
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..auth.token_refresher import TokenRefresher
from ..connectors import ConnectorRegistry
from ..exceptions import (
    AuthenticationError,
    ConcurrencyConflictError,
    DataIntegrityError,
    SyncCancelledError,
    SyncTimeoutError,
)
from ..models.base import utcnow
from ..models.connection import Connection
from ..models.repository import CanonicalRecordCreate
from ..models.sync_history import SyncHistoryRecord, SyncStatus, SyncType
from ..monitoring.metrics import (
    ACTIVE_SYNCS,
    record_skipped,
    record_sync_conflict,
    record_sync_run,
    record_upserts,
)
from ..utils.logging import log_sync_attempt, setup_logger
from .locks import LockRegistry
from .stores import CanonicalStore, CredentialStore, SyncHistoryStore

logger = setup_logger(__name__, context={"component": "SyncOrchestrator"})

EntityStats = dict[str, dict[str, int]]


def _empty_stats() -> dict[str, int]:
    return {"processed": 0, "created": 0, "updated": 0, "skipped": 0}


class SyncOrchestrator:
    """Fetch, normalize, upsert, and record history for one connection at a time.

    A connection's ``last_successful_sync_at`` checkpoint only advances after a
    run completes, so a failed run is retried from the same cursor.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        history_store: SyncHistoryStore,
        canonical_store: CanonicalStore,
        token_refresher: TokenRefresher,
        connectors: ConnectorRegistry,
        lock_registry: LockRegistry,
        *,
        run_timeout_seconds: float = 1800.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credentials = credential_store
        self._history = history_store
        self._canonical = canonical_store
        self._refresher = token_refresher
        self._connectors = connectors
        self._locks = lock_registry
        self._run_timeout = run_timeout_seconds
        self._clock = clock

    async def run(
        self,
        connection_id: str,
        tenant_id: str,
        mode: SyncType | str = SyncType.INCREMENTAL,
    ) -> SyncHistoryRecord:
        """
        Execute a sync run and return its terminal history record.

        Raises:
            ConnectionNotFoundError: If the connection does not belong to the tenant
            ConcurrencyConflictError: If a run for the connection is already in progress
            AuthenticationError: If no valid credential can be obtained
            TransientNetworkError: If a vendor call fails or the run times out
        """
        sync_type = SyncType(mode)
        connection = await asyncio.to_thread(self._credentials.get, tenant_id, connection_id)
        vendor = connection.vendor

        if not await self._locks.acquire(connection_id):
            record_sync_conflict(vendor)
            logger.warning(
                "Rejected sync request; a run is already in progress",
                extra={
                    "tenant_id": tenant_id,
                    "connection_id": connection_id,
                    "vendor": vendor,
                    "sync_type": sync_type.value,
                    "status": "conflict",
                },
            )
            raise ConcurrencyConflictError(connection_id)

        ACTIVE_SYNCS.labels(vendor=vendor).inc()
        started = time.perf_counter()
        status = SyncStatus.FAILED
        entity_stats: EntityStats = {}
        history: SyncHistoryRecord | None = None
        try:
            # Re-read under the guard so the cursor reflects the latest completed run.
            connection = await asyncio.to_thread(self._credentials.get, tenant_id, connection_id)
            cursor = (
                connection.last_successful_sync_at
                if sync_type is SyncType.INCREMENTAL
                else None
            )
            started_at = self._clock()
            history = await asyncio.to_thread(
                self._history.start,
                tenant_id=tenant_id,
                connection_id=connection_id,
                sync_type=sync_type,
                cursor=cursor,
            )
            await asyncio.to_thread(self._credentials.mark_sync_started, connection_id, started_at)

            try:
                access_token = await self._refresher.ensure_valid(connection)
                checkpoint = await asyncio.wait_for(
                    self._sync_resources(
                        connection, access_token, cursor, started_at, entity_stats
                    ),
                    timeout=self._run_timeout,
                )
            except TimeoutError as exc:
                raise SyncTimeoutError(
                    f"Sync for connection '{connection_id}' exceeded "
                    f"{self._run_timeout:g}s and was cancelled"
                ) from exc

        except Exception as exc:
            if history is not None:
                history = await self._record_failure(connection, history, exc, entity_stats)
            raise
        except asyncio.CancelledError:
            if history is not None:
                cancelled = SyncCancelledError(
                    f"Sync for connection '{connection_id}' was cancelled before it finished"
                )
                # Shielded so a repeated cancel cannot leave the run in progress.
                history = await asyncio.shield(
                    self._record_failure(connection, history, cancelled, entity_stats)
                )
            raise
        else:
            history = await asyncio.to_thread(
                self._history.complete, tenant_id, history.id, entity_stats=entity_stats
            )
            await asyncio.to_thread(
                self._credentials.record_sync_success,
                connection_id,
                checkpoint=checkpoint,
                records_synced=history.records_created + history.records_updated,
            )
            status = SyncStatus.COMPLETED
            return history
        finally:
            await self._locks.release(connection_id)
            ACTIVE_SYNCS.labels(vendor=vendor).dec()
            duration = time.perf_counter() - started
            record_sync_run(vendor, sync_type.value, status.value, duration)
            log_sync_attempt(
                logger,
                tenant_id=tenant_id,
                connection_id=connection_id,
                vendor=vendor,
                sync_type=sync_type.value,
                duration_ms=int(duration * 1000),
                status=status.value,
                entity_stats=entity_stats,
            )

    async def _sync_resources(
        self,
        connection: Connection,
        access_token: str,
        cursor: datetime | None,
        started_at: datetime,
        entity_stats: EntityStats,
    ) -> datetime:
        """Sync every resource and return the checkpoint the next run should start from.

        That is ``started_at`` unless a resource stopped at the client's record cap. A
        capped resource from a client that pages in update order resumes from the
        newest record stored. Other capped resources keep the previous checkpoint.
        """

        resume_points: list[datetime] = []
        async with self._connectors.create(connection, access_token) as client:
            for resource in client.resources():
                stats = entity_stats.setdefault(resource, _empty_stats())
                newest: datetime | None = None
                async for page in client.fetch_pages(resource, updated_after=cursor):
                    batch: list[CanonicalRecordCreate] = []
                    for raw in page:
                        stats["processed"] += 1
                        try:
                            batch.append(client.normalize(resource, raw))
                        except DataIntegrityError as exc:
                            stats["skipped"] += 1
                            record_skipped(resource)
                            logger.warning(
                                "Skipping malformed %s record: %s",
                                resource,
                                exc,
                                extra={
                                    "tenant_id": connection.tenant_id,
                                    "connection_id": connection.id,
                                    "vendor": connection.vendor,
                                    "status": "skipped",
                                },
                            )
                    if not batch:
                        continue
                    created, updated = await asyncio.to_thread(
                        self._canonical.upsert_many,
                        tenant_id=connection.tenant_id,
                        connection_id=connection.id,
                        source=connection.vendor,
                        records=batch,
                    )
                    stats["created"] += created
                    stats["updated"] += updated
                    record_upserts(resource, created, updated)
                    for record in batch:
                        updated_at = record.source_updated_at
                        if updated_at is not None and (newest is None or updated_at > newest):
                            newest = updated_at

                if resource in client.truncated:
                    if client.ordered_by_update and newest is not None:
                        resume_points.append(newest)
                    else:
                        # A capped backfill with no prior checkpoint keeps the run start.
                        resume_points.append(cursor if cursor is not None else started_at)

        return min([started_at, *resume_points])

    async def _record_failure(
        self,
        connection: Connection,
        history: SyncHistoryRecord,
        exc: Exception,
        entity_stats: EntityStats,
    ) -> SyncHistoryRecord:
        error_details: dict[str, Any] = {
            "type": exc.__class__.__name__,
            "stack": "".join(traceback.format_exception(exc)),
        }
        requires_reauth = isinstance(exc, AuthenticationError)
        if requires_reauth:
            error_details["action"] = "reconnect_required"

        failed = await asyncio.to_thread(
            self._history.fail,
            connection.tenant_id,
            history.id,
            error_message=str(exc),
            error_details=error_details,
            entity_stats=entity_stats,
        )
        await asyncio.to_thread(
            self._credentials.record_sync_failure,
            connection.id,
            error=f"{exc.__class__.__name__}: {exc}",
            requires_reauth=requires_reauth,
        )
        return failed
