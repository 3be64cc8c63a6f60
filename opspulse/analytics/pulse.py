"""Organizational pulse dashboard payload built from metrics and business impacts."""

from __future__ import annotations

import asyncio
import enum
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from ..exceptions import OpsPulseError
from ..models.base import utcnow
from ..models.business_impact import SEVERITIES, BusinessImpactRecord
from ..models.metric import MetricDefinition
from ..utils.logging import setup_logger
from .aggregation import CalculationContext, MetricAggregationEngine, determine_status
from .impact import BusinessImpactEstimator
from .registry import DEFAULT_CATEGORY, MetricRegistry

logger = setup_logger(__name__, context={"component": "OrganizationalPulse"})

STATUS_SCORES = {"excellent": 100, "good": 75, "warning": 50, "critical": 25}

STRATEGIC_AREAS: dict[str, tuple[str, ...]] = {
    "incident_management": ("incident_resolution_time", "mttr", "incident_volume"),
    "team_productivity": ("team_velocity", "issue_throughput", "cycle_time"),
    "communication": ("response_time", "collaboration_index", "team_engagement"),
    "engagement": ("team_engagement",),
}

AREA_TITLES = {
    "incident_management": "Incident Response & Resolution",
    "team_productivity": "Delivery & Output Velocity",
    "communication": "Collaboration & Engagement",
    "engagement": "Team Morale & Participation",
}


class TimeRange(str, enum.Enum):
    LAST_7_DAYS = "7d"
    LAST_14_DAYS = "14d"
    LAST_MONTH = "1m"
    LAST_3_MONTHS = "3m"
    LAST_6_MONTHS = "6m"
    LAST_YEAR = "1y"

    @property
    def days(self) -> int:
        return {"7d": 7, "14d": 14, "1m": 30, "3m": 90, "6m": 180, "1y": 365}[self.value]

    @property
    def months_shown(self) -> int | None:
        return {"1m": 1, "3m": 3, "6m": 6, "1y": 12}.get(self.value)

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        return now - timedelta(days=self.days), now


def health_status(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= 75:
        return "good"
    if score >= 50:
        return "warning"
    return "critical"


def alignment_status(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "warning"
    return "critical"


def summarize_health(metrics: Sequence[dict[str, Any]]) -> dict[str, Any]:
    counts = {status: 0 for status in STATUS_SCORES}
    for metric in metrics:
        counts[metric["status"]] = counts.get(metric["status"], 0) + 1
    total = len(metrics)
    score = (
        sum(STATUS_SCORES[status] * count for status, count in counts.items()) / total
        if total
        else 0.0
    )
    return {
        "score": round(score),
        "status": health_status(score),
        "totalMetrics": total,
        "excellentCount": counts["excellent"],
        "goodCount": counts["good"],
        "warningCount": counts["warning"],
        "criticalCount": counts["critical"],
    }


def strategic_alignment(metrics: Sequence[dict[str, Any]]) -> dict[str, Any]:
    categories: dict[str, Any] = {}
    total = 0.0
    for area, keys in STRATEGIC_AREAS.items():
        members = [metric for metric in metrics if metric["key"] in keys]
        if not members:
            continue
        score = sum(STATUS_SCORES[metric["status"]] for metric in members) / len(members)
        categories[area] = {
            "title": AREA_TITLES[area],
            "score": round(score),
            "status": alignment_status(round(score)),
            "metrics": [metric["key"] for metric in members],
        }
        total += score
    overall = round(total / len(categories)) if categories else 0
    return {"overall": overall, "categories": categories}


def _month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month(value: datetime) -> datetime:
    return (value.replace(day=28) + timedelta(days=4)).replace(day=1)


def escalations_by_month(
    impacts: Sequence[BusinessImpactRecord],
    start: datetime,
    end: datetime,
    months_shown: int | None = None,
) -> list[dict[str, Any]]:
    """Impact counts, hours lost, and severity counts per calendar month, newest first."""

    months: list[dict[str, Any]] = []
    cursor = _month_start(start)
    while cursor <= end:
        upper = _next_month(cursor)
        bucket = [impact for impact in impacts if cursor <= impact.impact_date < upper]
        months.append(
            {
                "month": cursor.strftime("%Y-%m"),
                "count": len(bucket),
                "totalHoursLost": round(sum(impact.hours_lost for impact in bucket), 1),
                "bySeverity": {
                    severity: sum(1 for impact in bucket if impact.severity == severity)
                    for severity in SEVERITIES
                },
            }
        )
        cursor = upper
    months.reverse()
    return months[:months_shown] if months_shown else months


class OrganizationalPulseService:
    """Computes the dashboard payload for one tenant and time range."""

    def __init__(
        self,
        registry: MetricRegistry,
        engine: MetricAggregationEngine,
        estimator: BusinessImpactEstimator,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._engine = engine
        self._estimator = estimator
        self._clock = clock

    async def _metric_summary(
        self, definition: MetricDefinition, context: CalculationContext
    ) -> dict[str, Any] | None:
        try:
            result = await self._engine.calculate_with_trend(definition, context)
        except OpsPulseError as exc:
            logger.warning(
                "Skipping metric %s in pulse: %s",
                definition.metric_key,
                exc,
                extra={"tenant_id": context.tenant_id, "status": "warning"},
            )
            return None
        comparison = result.comparison or {}
        return {
            "key": definition.metric_key,
            "name": definition.name,
            "value": result.value,
            "unit": (definition.display_config or {}).get("unit"),
            "trend": comparison.get("trend", "stable"),
            "changePercent": comparison.get("change_percent", 0.0),
            "status": determine_status(result.value, definition.thresholds),
            "confidence": result.confidence,
            "breakdown": result.breakdown,
        }

    async def calculate(self, tenant_id: str, time_range: TimeRange | str) -> dict[str, Any]:
        time_range = TimeRange(time_range)
        started = time.perf_counter()
        start, end = time_range.window(self._clock())
        context = CalculationContext(tenant_id=tenant_id, period_start=start, period_end=end)

        definitions = await asyncio.to_thread(
            self._registry.list_definitions, tenant_id, DEFAULT_CATEGORY
        )
        summaries, impacts = await asyncio.gather(
            asyncio.gather(*(self._metric_summary(d, context) for d in definitions)),
            asyncio.to_thread(self._estimator.list_impacts, tenant_id, start=start, end=end),
        )
        metrics = [summary for summary in summaries if summary is not None]

        payload = {
            "tenantId": tenant_id,
            "timeRange": time_range.value,
            "overallHealth": summarize_health(metrics),
            "strategicAlignment": strategic_alignment(metrics),
            "businessEscalations": {
                "chartData": escalations_by_month(impacts, start, end, time_range.months_shown),
                "totalCount": len(impacts),
                "totalHoursLost": round(sum(impact.hours_lost for impact in impacts), 1),
            },
            "metrics": metrics,
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "generatedAt": self._clock().isoformat(),
        }
        logger.info(
            "Calculated organizational pulse: %s metrics, %s impacts",
            len(metrics),
            len(impacts),
            extra={
                "tenant_id": tenant_id,
                "duration_ms": int((time.perf_counter() - started) * 1000),
                "status": "success",
            },
        )
        return payload
