"""Metric definitions, aggregation, business impact, and the organizational pulse."""

from .aggregation import (
    AggregationType,
    CalculationContext,
    MetricAggregationEngine,
    MetricResult,
    compute_trend,
    confidence_for_sample_size,
    determine_status,
)
from .impact import BusinessImpactEstimator
from .pulse import OrganizationalPulseService, TimeRange
from .registry import DEFAULT_METRICS, MetricRegistry
from .strategies import CustomStrategy, resolve_strategy

__all__ = [
    "AggregationType",
    "BusinessImpactEstimator",
    "CalculationContext",
    "CustomStrategy",
    "DEFAULT_METRICS",
    "MetricAggregationEngine",
    "MetricRegistry",
    "MetricResult",
    "OrganizationalPulseService",
    "TimeRange",
    "compute_trend",
    "confidence_for_sample_size",
    "determine_status",
    "resolve_strategy",
]
