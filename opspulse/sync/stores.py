"""Session-managed stores used by the sync engine.

Methods are blocking; async callers run them through ``asyncio.to_thread``.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from ..exceptions import ConnectionNotFoundError
from ..models.base import session_scope, utcnow
from ..models.connection import Connection
from ..models.repository import (
    CanonicalRecordCreate,
    CanonicalRecordRepository,
    ConnectionRepository,
    SyncHistoryRepository,
)
from ..models.sync_history import SyncHistoryRecord, SyncStatus, SyncType
from ..utils.config import get_settings


def _load(session: Any, connection_id: str) -> Connection:
    connection = session.get(Connection, connection_id)
    if connection is None:
        raise ConnectionNotFoundError(f"Connection '{connection_id}' not found")
    return connection


class CredentialStore:
    """Persists per-tenant connection records: tokens, expiry, sync settings, counters."""

    def get(self, tenant_id: str, connection_id: str) -> Connection:
        with session_scope() as session:
            return ConnectionRepository(session).get(tenant_id, connection_id)

    def list_active(self) -> list[Connection]:
        with session_scope() as session:
            return ConnectionRepository(session).list_active()

    def create(
        self,
        *,
        tenant_id: str,
        vendor: str,
        instance_url: str,
        name: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        sync_interval_minutes: int | None = None,
        resource_filters: list[str] | None = None,
        query_filters: dict[str, Any] | None = None,
        oauth_metadata: dict[str, Any] | None = None,
    ) -> Connection:
        interval = sync_interval_minutes or get_settings().sync.default_interval_minutes
        with session_scope() as session:
            return ConnectionRepository(session).add(
                Connection(
                    tenant_id=tenant_id,
                    vendor=vendor,
                    instance_url=instance_url.rstrip("/"),
                    name=name or instance_url,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=token_expires_at,
                    sync_interval_minutes=interval,
                    resource_filters=resource_filters,
                    query_filters=query_filters,
                    oauth_metadata=oauth_metadata,
                )
            )

    def upsert_from_oauth(
        self,
        *,
        tenant_id: str,
        vendor: str,
        instance_url: str,
        name: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        oauth_metadata: dict[str, Any],
    ) -> Connection:
        """Create or refresh the connection identified by (tenant, vendor, instance)."""

        instance_url = instance_url.rstrip("/")
        with session_scope() as session:
            repository = ConnectionRepository(session)
            connection = repository.find_by_instance(tenant_id, vendor, instance_url)
            if connection is None:
                connection = repository.add(
                    Connection(
                        tenant_id=tenant_id,
                        vendor=vendor,
                        instance_url=instance_url,
                        name=name,
                        sync_interval_minutes=get_settings().sync.default_interval_minutes,
                    )
                )
            connection.name = name
            connection.access_token = access_token
            connection.refresh_token = refresh_token
            connection.token_expires_at = token_expires_at
            connection.oauth_metadata = oauth_metadata
            connection.is_active = True
            connection.requires_reauth = False
            connection.failed_sync_attempts = 0
            connection.last_sync_error = None
            session.flush()
            return connection

    def update_credentials(
        self,
        connection_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> Connection:
        with session_scope() as session:
            connection = _load(session, connection_id)
            connection.access_token = access_token
            if refresh_token:
                connection.refresh_token = refresh_token
            connection.token_expires_at = token_expires_at
            session.flush()
            return connection

    def mark_sync_started(self, connection_id: str, started_at: datetime) -> None:
        with session_scope() as session:
            _load(session, connection_id).last_sync_at = started_at

    def record_sync_success(
        self, connection_id: str, *, checkpoint: datetime, records_synced: int
    ) -> Connection:
        with session_scope() as session:
            connection = _load(session, connection_id)
            connection.last_successful_sync_at = checkpoint
            connection.failed_sync_attempts = 0
            connection.last_sync_error = None
            connection.total_records_synced = (connection.total_records_synced or 0) + (
                records_synced
            )
            session.flush()
            return connection

    def record_sync_failure(
        self, connection_id: str, *, error: str, requires_reauth: bool = False
    ) -> Connection:
        with session_scope() as session:
            connection = _load(session, connection_id)
            connection.failed_sync_attempts = (connection.failed_sync_attempts or 0) + 1
            connection.last_sync_error = error
            if requires_reauth:
                connection.requires_reauth = True
            session.flush()
            return connection

    def deactivate(self, tenant_id: str, connection_id: str) -> Connection:
        with session_scope() as session:
            connection = ConnectionRepository(session).get(tenant_id, connection_id)
            connection.is_active = False
            session.flush()
            return connection


def _apply_stats(record: SyncHistoryRecord, entity_stats: dict[str, dict[str, int]]) -> None:
    record.entity_stats = entity_stats
    for counter in ("processed", "created", "updated", "skipped"):
        setattr(record, f"records_{counter}", sum(s[counter] for s in entity_stats.values()))


class SyncHistoryStore:
    """Persists the lifecycle of :class:`SyncHistoryRecord` rows."""

    def start(
        self,
        *,
        tenant_id: str,
        connection_id: str,
        sync_type: SyncType,
        cursor: datetime | None,
    ) -> SyncHistoryRecord:
        with session_scope() as session:
            return SyncHistoryRepository(session).create(
                tenant_id=tenant_id,
                connection_id=connection_id,
                sync_type=sync_type.value,
                status=SyncStatus.IN_PROGRESS,
                cursor=cursor,
            )

    def complete(
        self, tenant_id: str, history_id: str, *, entity_stats: dict[str, dict[str, int]]
    ) -> SyncHistoryRecord:
        with session_scope() as session:
            record = SyncHistoryRepository(session).get(tenant_id, history_id)
            record.status = SyncStatus.COMPLETED.value
            record.completed_at = utcnow()
            _apply_stats(record, entity_stats)
            session.flush()
            return record

    def fail(
        self,
        tenant_id: str,
        history_id: str,
        *,
        error_message: str,
        error_details: dict[str, Any],
        entity_stats: dict[str, dict[str, int]] | None = None,
    ) -> SyncHistoryRecord:
        with session_scope() as session:
            record = SyncHistoryRepository(session).get(tenant_id, history_id)
            record.status = SyncStatus.FAILED.value
            record.completed_at = utcnow()
            record.error_message = error_message
            record.error_details = error_details
            if entity_stats:
                _apply_stats(record, entity_stats)
            session.flush()
            return record

    def list_history(
        self, tenant_id: str, connection_id: str, limit: int = 10
    ) -> list[SyncHistoryRecord]:
        with session_scope() as session:
            ConnectionRepository(session).get(tenant_id, connection_id)
            return SyncHistoryRepository(session).list_for_connection(
                tenant_id, connection_id, limit
            )


class CanonicalStore:
    """Upserts and reads canonical records."""

    def upsert_many(
        self,
        *,
        tenant_id: str,
        connection_id: str,
        source: str,
        records: Sequence[CanonicalRecordCreate],
    ) -> tuple[int, int]:
        with session_scope() as session:
            return CanonicalRecordRepository(session).upsert_many(
                tenant_id=tenant_id,
                connection_id=connection_id,
                source=source,
                records=records,
            )

    def fetch_documents(
        self,
        *,
        tenant_id: str,
        source: str,
        start: datetime,
        end: datetime,
        entity_types: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        with session_scope() as session:
            rows = CanonicalRecordRepository(session).fetch(
                tenant_id=tenant_id,
                source=source,
                start=start,
                end=end,
                entity_types=entity_types,
            )
            return [row.as_document() for row in rows]

    def count(self, tenant_id: str, connection_id: str | None = None) -> int:
        with session_scope() as session:
            return CanonicalRecordRepository(session).count(tenant_id, connection_id)
