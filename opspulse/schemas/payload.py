"""Pydantic request and response schemas for the HTTP surface."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ConnectionResponse(BaseModel):
    """Connection state visible to operators; credentials are never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    vendor: str
    name: str
    instance_url: str
    is_active: bool
    requires_reauth: bool = Field(..., description="True when the operator must reconnect")
    sync_interval_minutes: int
    last_sync_at: datetime | None = None
    last_successful_sync_at: datetime | None = Field(
        None, description="Checkpoint used as the lower bound of incremental fetches"
    )
    failed_sync_attempts: int = 0
    last_sync_error: str | None = None
    total_records_synced: int = 0


class AuthorizationResponse(BaseModel):
    authorization_url: str = Field(..., description="Vendor consent page to redirect to")


class SyncHistoryResponse(BaseModel):
    """One sync run and its per-entity counters."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    connection_id: str
    sync_type: str = Field(..., description="'full' or 'incremental'")
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    cursor: datetime | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    entity_stats: dict[str, Any] | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None


class MetricDefinitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    metric_key: str
    name: str
    description: str | None = None
    category: str
    data_type: str
    aggregation_type: str
    source_types: list[str]
    calculation: dict[str, Any]
    thresholds: dict[str, Any] | None = None
    display_config: dict[str, Any] | None = None
    is_active: bool
    is_custom: bool


class MetricDefinitionCreate(BaseModel):
    """Request schema for tenant-defined metrics."""

    model_config = ConfigDict(extra="forbid")

    metric_key: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1)
    description: str | None = None
    category: str = "custom"
    data_type: str = "number"
    aggregation_type: str = Field(..., description="count, sum, avg, min, max or median")
    source_types: list[str] = Field(default_factory=list)
    calculation: dict[str, Any] = Field(
        default_factory=dict,
        description="entity_type, source_fields, filters, breakdown_by or custom_strategy",
    )
    thresholds: dict[str, Any] | None = None
    display_config: dict[str, Any] | None = None


class MetricDefinitionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str | None = None
    category: str | None = None
    aggregation_type: str | None = None
    source_types: list[str] | None = None
    calculation: dict[str, Any] | None = None
    thresholds: dict[str, Any] | None = None
    display_config: dict[str, Any] | None = None
    is_active: bool | None = None


class MetricCalculationRequest(BaseModel):
    """Explicit period to calculate and store a metric for."""

    period_start: datetime
    period_end: datetime
    granularity: str = Field("daily", description="daily, weekly, monthly, ...")
    filters: dict[str, Any] = Field(default_factory=dict)


class MetricValueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    metric_id: str
    value: float
    period_start: datetime
    period_end: datetime
    granularity: str
    breakdown: dict[str, Any] | None = None
    confidence: float
    calculation_metadata: dict[str, Any] | None = None
    comparison_data: dict[str, Any] | None = None
    calculated_at: datetime


class BusinessImpactCreate(BaseModel):
    """Request schema for mapping a synced incident or issue to revenue impact."""

    source_type: str = Field(..., description="'servicenow' or 'jira'")
    source_id: str = Field(..., description="Natural external id of the source record")
    revenue_per_hour: float | None = Field(None, ge=0)
    duration_minutes: int | None = Field(None, ge=0)
    customers_affected: int | None = Field(None, ge=0)
    affected_services: list[str] = Field(default_factory=list)
    recurring_impact: bool = False


class EstimateRequest(BaseModel):
    include_opportunity_cost: bool = True
    include_reputation_impact: bool = True


class BusinessImpactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_type: str
    source_id: str
    impact_type: str
    severity: str
    estimated_revenue_loss: float
    actual_revenue_loss: float | None = None
    customers_affected: int | None = None
    duration_minutes: int | None = None
    impact_date: datetime
    resolved_date: datetime | None = None
    revenue_mapping: dict[str, Any] | None = None
    loss_estimation: dict[str, Any] | None = None
    details: dict[str, Any] | None = None
    is_validated: bool = False
