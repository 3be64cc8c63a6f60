"""SQLAlchemy model for business impact estimates."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow

SEVERITIES = ("low", "medium", "high", "critical")


class BusinessImpactRecord(Base):
    """Revenue/cost impact attributed to an incident or issue."""

    __tablename__ = "business_impacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    impact_type: Mapped[str] = mapped_column(String(32), nullable=False, default="incident")
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="low")
    estimated_revenue_loss: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    actual_revenue_loss: Mapped[float | None] = mapped_column(Float, nullable=True)
    customers_affected: Mapped[int | None] = mapped_column(Integer, nullable=True)
    users_affected: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    impact_date: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)
    resolved_date: Mapped[datetime | None] = mapped_column(nullable=True)
    revenue_mapping: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    loss_estimation: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    validated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    validation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @property
    def hours_lost(self) -> float:
        return (self.duration_minutes or 0) / 60

    def __repr__(self) -> str:
        return (
            f"<BusinessImpactRecord id={self.id} source={self.source_type}/{self.source_id} "
            f"severity={self.severity} loss={self.estimated_revenue_loss}>"
        )
