"""SQLAlchemy model for normalized (canonical) records synced from vendors."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow


class CanonicalRecord(Base):
    """Source-tagged representation of an incident, change, issue, or message.

    ``entity_type`` partitions the table the way one table per source would; the
    natural key is unique within (tenant, connection, entity type).
    """

    __tablename__ = "canonical_records"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "connection_id",
            "entity_type",
            "external_id",
            name="uq_canonical_natural_key",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_synced_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    def as_document(self) -> dict[str, Any]:
        """Flatten the record into a dict suitable for field-path extraction."""

        document: dict[str, Any] = dict(self.fields or {})
        document.update(
            {
                "id": self.id,
                "externalId": self.external_id,
                "source": self.source,
                "entityType": self.entity_type,
                "occurredAt": self.occurred_at,
                "updatedAt": self.source_updated_at,
                "actorId": self.actor_id,
                "connectionId": self.connection_id,
            }
        )
        return document

    def __repr__(self) -> str:
        return (
            f"<CanonicalRecord {self.source}/{self.entity_type} external_id={self.external_id} "
            f"tenant={self.tenant_id}>"
        )
