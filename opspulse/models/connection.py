"""SQLAlchemy model for tenant connections to external systems."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow


class Connection(Base):
    """A tenant's authenticated link to one external system instance."""

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", "vendor", "instance_url", name="uq_connection_instance"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vendor: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    instance_url: Mapped[str] = mapped_column(String(512), nullable=False)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    oauth_metadata: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    resource_filters: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    query_filters: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_successful_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failed_sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_records_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requires_reauth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Connection id={self.id} tenant={self.tenant_id} vendor={self.vendor} "
            f"active={self.is_active}>"
        )
