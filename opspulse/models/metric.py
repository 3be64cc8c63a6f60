"""SQLAlchemy models for metric definitions and computed values."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Float, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow


class MetricDefinition(Base):
    """Named, reusable recipe for computing one analytic value."""

    __tablename__ = "metric_definitions"
    __table_args__ = (UniqueConstraint("tenant_id", "metric_key", name="uq_metric_key"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metric_key: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    data_type: Mapped[str] = mapped_column(String(32), nullable=False, default="number")
    aggregation_type: Mapped[str] = mapped_column(String(16), nullable=False)
    source_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    calculation: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    thresholds: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    display_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def custom_strategy(self) -> str | None:
        value = (self.calculation or {}).get("custom_strategy")
        return str(value) if value else None

    @property
    def field_path(self) -> str | None:
        fields = (self.calculation or {}).get("source_fields") or []
        return str(fields[0]) if fields else None

    def __repr__(self) -> str:
        return f"<MetricDefinition key={self.metric_key} tenant={self.tenant_id}>"


class MetricValue(Base):
    """One computed instance of a metric for a tenant, period, and granularity."""

    __tablename__ = "metric_values"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "metric_id",
            "period_start",
            "period_end",
            "granularity",
            name="uq_metric_value_period",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metric_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("metric_definitions.id", ondelete="CASCADE"), nullable=False
    )
    value: Mapped[float] = mapped_column(Float, nullable=False)
    period_start: Mapped[datetime] = mapped_column(nullable=False, index=True)
    period_end: Mapped[datetime] = mapped_column(nullable=False)
    granularity: Mapped[str] = mapped_column(String(16), nullable=False)
    breakdown: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    calculation_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    comparison_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    calculated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<MetricValue metric={self.metric_id} value={self.value} "
            f"period={self.period_start:%Y-%m-%d}..{self.period_end:%Y-%m-%d}>"
        )
