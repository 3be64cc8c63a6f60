"""Schemas package initialization."""
from .payload import (
    AuthorizationResponse,
    BusinessImpactCreate,
    BusinessImpactResponse,
    ConnectionResponse,
    EstimateRequest,
    MetricCalculationRequest,
    MetricDefinitionCreate,
    MetricDefinitionResponse,
    MetricDefinitionUpdate,
    MetricValueResponse,
    SyncHistoryResponse,
)

__all__ = [
    "AuthorizationResponse",
    "BusinessImpactCreate",
    "BusinessImpactResponse",
    "ConnectionResponse",
    "EstimateRequest",
    "MetricCalculationRequest",
    "MetricDefinitionCreate",
    "MetricDefinitionResponse",
    "MetricDefinitionUpdate",
    "MetricValueResponse",
    "SyncHistoryResponse",
]
