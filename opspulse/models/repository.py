"""Repository helpers for persistence models.

Tenant-facing queries always take the tenant id as a mandatory filter; only the
scheduler and cache warm-up scan across tenants.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..exceptions import (
    ConnectionNotFoundError,
    ImpactNotFoundError,
    MetricNotFoundError,
    NotFoundError,
)
from .base import utcnow
from .business_impact import BusinessImpactRecord
from .canonical import CanonicalRecord
from .connection import Connection
from .metric import MetricDefinition, MetricValue
from .sync_history import SyncHistoryRecord, SyncStatus


@dataclass(slots=True)
class CanonicalRecordCreate:
    """Normalized vendor record ready to be upserted by natural key."""

    entity_type: str
    external_id: str
    occurred_at: datetime
    source_updated_at: datetime | None = None
    actor_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


class ConnectionRepository:
    """Data access helpers for :class:`Connection`."""

    def __init__(self, session: Session):
        self._session = session

    def get(self, tenant_id: str, connection_id: str) -> Connection:
        stmt = select(Connection).where(
            Connection.tenant_id == tenant_id, Connection.id == connection_id
        )
        connection = self._session.scalars(stmt).first()
        if connection is None:
            raise ConnectionNotFoundError(
                f"Connection '{connection_id}' not found for tenant '{tenant_id}'"
            )
        return connection

    def find_by_instance(self, tenant_id: str, vendor: str, instance_url: str) -> Connection | None:
        stmt = select(Connection).where(
            Connection.tenant_id == tenant_id,
            Connection.vendor == vendor,
            Connection.instance_url == instance_url,
        )
        return self._session.scalars(stmt).first()

    def list_active(self) -> list[Connection]:
        stmt = select(Connection).where(Connection.is_active.is_(True)).order_by(Connection.id)
        return list(self._session.scalars(stmt))

    def add(self, connection: Connection) -> Connection:
        self._session.add(connection)
        self._session.flush()
        return connection


class SyncHistoryRepository:
    """Data access helpers for :class:`SyncHistoryRecord`."""

    def __init__(self, session: Session):
        self._session = session

    def create(
        self,
        *,
        tenant_id: str,
        connection_id: str,
        sync_type: str,
        status: SyncStatus = SyncStatus.IN_PROGRESS,
        cursor: datetime | None = None,
    ) -> SyncHistoryRecord:
        record = SyncHistoryRecord(
            tenant_id=tenant_id,
            connection_id=connection_id,
            sync_type=sync_type,
            status=status.value,
            started_at=utcnow(),
            cursor=cursor,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get(self, tenant_id: str, history_id: str) -> SyncHistoryRecord:
        stmt = select(SyncHistoryRecord).where(
            SyncHistoryRecord.tenant_id == tenant_id, SyncHistoryRecord.id == history_id
        )
        record = self._session.scalars(stmt).first()
        if record is None:
            raise NotFoundError(f"Sync history record '{history_id}' not found")
        return record

    def list_for_connection(
        self, tenant_id: str, connection_id: str, limit: int = 10
    ) -> list[SyncHistoryRecord]:
        stmt = (
            select(SyncHistoryRecord)
            .where(
                SyncHistoryRecord.tenant_id == tenant_id,
                SyncHistoryRecord.connection_id == connection_id,
            )
            .order_by(SyncHistoryRecord.started_at.desc())
            .limit(limit)
        )
        return list(self._session.scalars(stmt))


class CanonicalRecordRepository:
    """Data access helpers for :class:`CanonicalRecord`."""

    def __init__(self, session: Session):
        self._session = session

    def upsert_many(
        self,
        *,
        tenant_id: str,
        connection_id: str,
        source: str,
        records: Sequence[CanonicalRecordCreate],
    ) -> tuple[int, int]:
        """Insert or update records by natural key and return ``(created, updated)``."""

        if not records:
            return 0, 0

        synced_at = utcnow()
        existing: dict[tuple[str, str], CanonicalRecord] = {}
        for entity_type in {record.entity_type for record in records}:
            external_ids = [r.external_id for r in records if r.entity_type == entity_type]
            stmt = select(CanonicalRecord).where(
                CanonicalRecord.tenant_id == tenant_id,
                CanonicalRecord.connection_id == connection_id,
                CanonicalRecord.entity_type == entity_type,
                CanonicalRecord.external_id.in_(external_ids),
            )
            for row in self._session.scalars(stmt):
                existing[(row.entity_type, row.external_id)] = row

        created = 0
        updated = 0
        for record in records:
            key = (record.entity_type, record.external_id)
            row = existing.get(key)
            if row is None:
                row = CanonicalRecord(
                    tenant_id=tenant_id,
                    connection_id=connection_id,
                    source=source,
                    entity_type=record.entity_type,
                    external_id=record.external_id,
                )
                self._session.add(row)
                existing[key] = row
                created += 1
            else:
                updated += 1
            row.occurred_at = record.occurred_at
            row.source_updated_at = record.source_updated_at
            row.actor_id = record.actor_id
            row.fields = dict(record.fields)
            row.last_synced_at = synced_at

        self._session.flush()
        return created, updated

    def fetch(
        self,
        *,
        tenant_id: str,
        source: str,
        start: datetime,
        end: datetime,
        entity_types: Iterable[str] | None = None,
    ) -> list[CanonicalRecord]:
        stmt = select(CanonicalRecord).where(
            CanonicalRecord.tenant_id == tenant_id,
            CanonicalRecord.source == source,
            CanonicalRecord.occurred_at >= start,
            CanonicalRecord.occurred_at < end,
        )
        if entity_types:
            stmt = stmt.where(CanonicalRecord.entity_type.in_(list(entity_types)))
        return list(self._session.scalars(stmt.order_by(CanonicalRecord.occurred_at)))

    def get_by_external_id(
        self, tenant_id: str, source: str, external_id: str
    ) -> CanonicalRecord | None:
        stmt = select(CanonicalRecord).where(
            CanonicalRecord.tenant_id == tenant_id,
            CanonicalRecord.source == source,
            CanonicalRecord.external_id == external_id,
        )
        return self._session.scalars(stmt).first()

    def count(self, tenant_id: str, connection_id: str | None = None) -> int:
        stmt = select(func.count(CanonicalRecord.id)).where(CanonicalRecord.tenant_id == tenant_id)
        if connection_id is not None:
            stmt = stmt.where(CanonicalRecord.connection_id == connection_id)
        return int(self._session.scalar(stmt) or 0)


class MetricRepository:
    """Data access helpers for :class:`MetricDefinition` and :class:`MetricValue`."""

    def __init__(self, session: Session):
        self._session = session

    def get_definition(self, tenant_id: str, metric_key: str) -> MetricDefinition:
        stmt = select(MetricDefinition).where(
            MetricDefinition.tenant_id == tenant_id, MetricDefinition.metric_key == metric_key
        )
        definition = self._session.scalars(stmt).first()
        if definition is None:
            raise MetricNotFoundError(f"Metric '{metric_key}' not found for tenant '{tenant_id}'")
        return definition

    def existing_keys(self, tenant_id: str) -> set[str]:
        stmt = select(MetricDefinition.metric_key).where(MetricDefinition.tenant_id == tenant_id)
        return set(self._session.scalars(stmt))

    def list_definitions(
        self, tenant_id: str, *, category: str | None = None, active_only: bool = True
    ) -> list[MetricDefinition]:
        stmt = select(MetricDefinition).where(MetricDefinition.tenant_id == tenant_id)
        if category is not None:
            stmt = stmt.where(MetricDefinition.category == category)
        if active_only:
            stmt = stmt.where(MetricDefinition.is_active.is_(True))
        return list(
            self._session.scalars(
                stmt.order_by(MetricDefinition.category, MetricDefinition.metric_key)
            )
        )

    def tenants_with_active_definitions(self) -> list[str]:
        stmt = (
            select(MetricDefinition.tenant_id)
            .where(MetricDefinition.is_active.is_(True))
            .distinct()
            .order_by(MetricDefinition.tenant_id)
        )
        return list(self._session.scalars(stmt))

    def add_definition(self, definition: MetricDefinition) -> MetricDefinition:
        self._session.add(definition)
        self._session.flush()
        return definition

    def delete_definition(self, definition: MetricDefinition) -> None:
        self._session.delete(definition)
        self._session.flush()

    def upsert_value(
        self,
        *,
        tenant_id: str,
        metric_id: str,
        period_start: datetime,
        period_end: datetime,
        granularity: str,
        values: dict[str, Any],
    ) -> MetricValue:
        """Overwrite the value stored for (tenant, metric, period, granularity)."""

        stmt = select(MetricValue).where(
            MetricValue.tenant_id == tenant_id,
            MetricValue.metric_id == metric_id,
            MetricValue.period_start == period_start,
            MetricValue.period_end == period_end,
            MetricValue.granularity == granularity,
        )
        row = self._session.scalars(stmt).first()
        if row is None:
            row = MetricValue(
                tenant_id=tenant_id,
                metric_id=metric_id,
                period_start=period_start,
                period_end=period_end,
                granularity=granularity,
            )
            self._session.add(row)
        for key, value in values.items():
            setattr(row, key, value)
        row.calculated_at = utcnow()
        self._session.flush()
        return row

    def list_values(
        self, tenant_id: str, metric_id: str, start: datetime, end: datetime
    ) -> list[MetricValue]:
        stmt = (
            select(MetricValue)
            .where(
                MetricValue.tenant_id == tenant_id,
                MetricValue.metric_id == metric_id,
                MetricValue.period_start >= start,
                MetricValue.period_end <= end,
            )
            .order_by(MetricValue.period_start)
        )
        return list(self._session.scalars(stmt))


class BusinessImpactRepository:
    """Data access helpers for :class:`BusinessImpactRecord`."""

    def __init__(self, session: Session):
        self._session = session

    def get(self, tenant_id: str, impact_id: str) -> BusinessImpactRecord:
        stmt = select(BusinessImpactRecord).where(
            BusinessImpactRecord.tenant_id == tenant_id, BusinessImpactRecord.id == impact_id
        )
        record = self._session.scalars(stmt).first()
        if record is None:
            raise ImpactNotFoundError(
                f"Business impact '{impact_id}' not found for tenant '{tenant_id}'"
            )
        return record

    def add(self, record: BusinessImpactRecord) -> BusinessImpactRecord:
        self._session.add(record)
        self._session.flush()
        return record

    def list_impacts(
        self,
        tenant_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        severity: str | None = None,
        source_type: str | None = None,
    ) -> list[BusinessImpactRecord]:
        stmt = select(BusinessImpactRecord).where(BusinessImpactRecord.tenant_id == tenant_id)
        if start is not None:
            stmt = stmt.where(BusinessImpactRecord.impact_date >= start)
        if end is not None:
            stmt = stmt.where(BusinessImpactRecord.impact_date < end)
        if severity is not None:
            stmt = stmt.where(BusinessImpactRecord.severity == severity)
        if source_type is not None:
            stmt = stmt.where(BusinessImpactRecord.source_type == source_type)
        stmt = stmt.order_by(BusinessImpactRecord.estimated_revenue_loss.desc())
        return list(self._session.scalars(stmt))
