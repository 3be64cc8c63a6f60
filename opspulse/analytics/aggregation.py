"""Metric aggregation over canonical records."""

from __future__ import annotations

import asyncio
import enum
import time
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from ..exceptions import ConfigurationError, UnknownStrategyError
from ..models.base import session_scope
from ..models.metric import MetricDefinition, MetricValue
from ..models.repository import MetricRepository
from ..monitoring.metrics import observe_metric_calculation
from ..sync.stores import CanonicalStore
from ..utils.logging import setup_logger
from .strategies import CustomStrategy, StrategySpec, resolve_all

logger = setup_logger(__name__, context={"component": "MetricAggregationEngine"})

TREND_THRESHOLD_PERCENT = 5.0
STATUS_TIERS = ("excellent", "good", "warning", "critical")


class AggregationType(str, enum.Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    MEDIAN = "median"


@dataclass(slots=True)
class CalculationContext:
    """Tenant and half-open period ``[period_start, period_end)`` for one calculation."""

    tenant_id: str
    period_start: datetime
    period_end: datetime
    granularity: str = "daily"
    filters: dict[str, Any] = field(default_factory=dict)

    def previous_period(self) -> CalculationContext:
        length = self.period_end - self.period_start
        return replace(
            self,
            period_start=self.period_start - length,
            period_end=self.period_start,
            filters=dict(self.filters),
        )


@dataclass(slots=True)
class MetricResult:
    value: float
    data_points: int
    confidence: float
    sources: list[str]
    breakdown: dict[str, float] | None = None
    comparison: dict[str, Any] | None = None

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "dataPoints": self.data_points,
            "confidence": self.confidence,
            "sources": list(self.sources),
        }

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"value": self.value, "metadata": self.metadata}
        if self.breakdown is not None:
            payload["breakdown"] = self.breakdown
        if self.comparison is not None:
            payload["comparison"] = self.comparison
        return payload


def confidence_for_sample_size(data_points: int) -> float:
    if data_points >= 100:
        return 1.0
    if data_points >= 50:
        return 0.9
    if data_points >= 25:
        return 0.75
    if data_points >= 10:
        return 0.6
    if data_points >= 5:
        return 0.4
    return 0.2


def extract_field(document: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path through nested mappings; missing segments yield None."""

    value: Any = document
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return None
    return value


def as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def matches_filters(document: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    """Scalar filters require equality; list filters require membership."""

    for path, expected in filters.items():
        actual = extract_field(document, path)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def aggregate(values: Sequence[float], aggregation: AggregationType) -> float:
    """Apply a numeric aggregation; an empty input aggregates to 0."""

    if aggregation is AggregationType.COUNT:
        return float(len(values))
    if not values:
        return 0.0
    if aggregation is AggregationType.SUM:
        return float(sum(values))
    if aggregation is AggregationType.AVG:
        return sum(values) / len(values)
    if aggregation is AggregationType.MIN:
        return min(values)
    if aggregation is AggregationType.MAX:
        return max(values)
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def determine_status(value: float, thresholds: Mapping[str, Any] | None) -> str:
    """Return the first tier whose ``{min, max}`` range contains ``value``.

    No thresholds means "good"; a value outside every tier is "critical".
    """

    if not thresholds:
        return "good"
    for tier in STATUS_TIERS:
        bounds = thresholds.get(tier)
        if not bounds:
            continue
        low, high = bounds.get("min"), bounds.get("max")
        if (low is None or value >= low) and (high is None or value <= high):
            return tier
    return "critical"


def compute_trend(current: float, previous: float) -> tuple[float, str]:
    if not previous:
        return 0.0, "stable"
    change = (current - previous) / abs(previous) * 100
    if abs(change) <= TREND_THRESHOLD_PERCENT:
        return round(change, 2), "stable"
    return round(change, 2), "up" if change > 0 else "down"


def _entity_types(calculation: Mapping[str, Any]) -> list[str] | None:
    value = calculation.get("entity_type")
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


class MetricAggregationEngine:
    """Computes metric values for a period from canonical records."""

    def __init__(self, canonical_store: CanonicalStore) -> None:
        self._canonical = canonical_store
        self._strategies: dict[CustomStrategy, StrategySpec] = resolve_all()

    async def _fetch(
        self,
        tenant_id: str,
        sources: Iterable[str],
        start: datetime,
        end: datetime,
        entity_types: Sequence[str] | None,
    ) -> list[dict[str, Any]]:
        batches = await asyncio.gather(
            *(
                asyncio.to_thread(
                    self._canonical.fetch_documents,
                    tenant_id=tenant_id,
                    source=source,
                    start=start,
                    end=end,
                    entity_types=entity_types,
                )
                for source in sources
            )
        )
        return [document for batch in batches for document in batch]

    async def calculate(
        self, definition: MetricDefinition, context: CalculationContext
    ) -> MetricResult:
        """Compute ``definition`` for the context period without storing it."""

        started = time.perf_counter()
        if definition.custom_strategy:
            result = await self._calculate_custom(definition, context)
        else:
            result = await self._calculate_standard(definition, context)
        duration = time.perf_counter() - started
        observe_metric_calculation(definition.metric_key, duration)
        logger.debug(
            "Calculated %s = %s from %s data points",
            definition.metric_key,
            result.value,
            result.data_points,
            extra={"tenant_id": context.tenant_id, "duration_ms": int(duration * 1000)},
        )
        return result

    async def _calculate_standard(
        self, definition: MetricDefinition, context: CalculationContext
    ) -> MetricResult:
        try:
            aggregation = AggregationType(definition.aggregation_type)
        except ValueError:
            raise ConfigurationError(
                f"Metric '{definition.metric_key}' has unknown aggregation "
                f"'{definition.aggregation_type}'"
            ) from None

        calculation = definition.calculation or {}
        sources = list(definition.source_types or [])
        documents = await self._fetch(
            context.tenant_id,
            sources,
            context.period_start,
            context.period_end,
            _entity_types(calculation),
        )
        filters = {**(calculation.get("filters") or {}), **context.filters}
        documents = [doc for doc in documents if matches_filters(doc, filters)]

        value, data_points = self._reduce(definition, aggregation, documents)
        breakdown = None
        breakdown_field = calculation.get("breakdown_by")
        if breakdown_field:
            groups: dict[str, list[dict[str, Any]]] = defaultdict(list)
            for doc in documents:
                key = extract_field(doc, breakdown_field)
                groups["unknown" if key is None else str(key)].append(doc)
            breakdown = {
                key: self._reduce(definition, aggregation, group)[0]
                for key, group in sorted(groups.items())
            }

        return MetricResult(
            value=value,
            data_points=data_points,
            confidence=confidence_for_sample_size(data_points),
            sources=sources,
            breakdown=breakdown,
        )

    def _reduce(
        self,
        definition: MetricDefinition,
        aggregation: AggregationType,
        documents: Sequence[Mapping[str, Any]],
    ) -> tuple[float, int]:
        if aggregation is AggregationType.COUNT:
            return float(len(documents)), len(documents)
        field_path = definition.field_path
        if not field_path:
            raise ConfigurationError(
                f"Metric '{definition.metric_key}' needs a source field for "
                f"'{aggregation.value}' aggregation"
            )
        values = [
            number
            for number in (as_number(extract_field(doc, field_path)) for doc in documents)
            if number is not None
        ]
        return aggregate(values, aggregation), len(values)

    async def _calculate_custom(
        self, definition: MetricDefinition, context: CalculationContext
    ) -> MetricResult:
        try:
            spec = self._strategies[CustomStrategy(definition.custom_strategy)]
        except ValueError:
            raise UnknownStrategyError(
                f"Metric '{definition.metric_key}' references unknown strategy "
                f"'{definition.custom_strategy}'"
            ) from None
        documents = await self._fetch(
            context.tenant_id,
            spec.sources,
            context.period_start,
            context.period_end,
            spec.entity_types,
        )
        value = spec.compute(documents, context.period_start, context.period_end)
        return MetricResult(
            value=value,
            data_points=len(documents),
            confidence=confidence_for_sample_size(len(documents)),
            sources=list(spec.sources),
        )

    async def calculate_with_trend(
        self, definition: MetricDefinition, context: CalculationContext
    ) -> MetricResult:
        """Compute the metric and compare it with the preceding equal-length period."""

        previous_context = context.previous_period()
        current, previous = await asyncio.gather(
            self.calculate(definition, context),
            self.calculate(definition, previous_context),
        )
        change_percent, trend = compute_trend(current.value, previous.value)
        current.comparison = {
            "previous_period": {
                "start": previous_context.period_start.isoformat(),
                "end": previous_context.period_end.isoformat(),
                "value": previous.value,
            },
            "change_percent": change_percent,
            "trend": trend,
        }
        return current

    async def calculate_and_store(
        self, definition: MetricDefinition, context: CalculationContext
    ) -> MetricValue:
        """Compute with trend and overwrite the stored value for the period."""

        result = await self.calculate_with_trend(definition, context)
        return await asyncio.to_thread(self._store_value, definition, context, result)

    def _store_value(
        self, definition: MetricDefinition, context: CalculationContext, result: MetricResult
    ) -> MetricValue:
        with session_scope() as session:
            return MetricRepository(session).upsert_value(
                tenant_id=context.tenant_id,
                metric_id=definition.id,
                period_start=context.period_start,
                period_end=context.period_end,
                granularity=context.granularity,
                values={
                    "value": result.value,
                    "breakdown": result.breakdown,
                    "confidence": result.confidence,
                    "calculation_metadata": result.metadata,
                    "comparison_data": result.comparison,
                },
            )

    async def get_values(
        self, tenant_id: str, metric_key: str, start: datetime, end: datetime
    ) -> list[MetricValue]:
        """Stored values for the metric whose periods fall inside ``[start, end]``."""

        return await asyncio.to_thread(self._load_values, tenant_id, metric_key, start, end)

    def _load_values(
        self, tenant_id: str, metric_key: str, start: datetime, end: datetime
    ) -> list[MetricValue]:
        with session_scope() as session:
            repository = MetricRepository(session)
            definition = repository.get_definition(tenant_id, metric_key)
            return repository.list_values(tenant_id, definition.id, start, end)
