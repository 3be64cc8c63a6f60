"""Tests for the organizational pulse payload."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from opspulse.analytics.aggregation import MetricAggregationEngine
from opspulse.analytics.impact import BusinessImpactEstimator
from opspulse.analytics.pulse import (
    OrganizationalPulseService,
    TimeRange,
    escalations_by_month,
    strategic_alignment,
    summarize_health,
)
from opspulse.analytics.registry import DEFAULT_METRICS, MetricRegistry
from opspulse.models.business_impact import BusinessImpactRecord
from opspulse.models.repository import CanonicalRecordCreate
from opspulse.sync.stores import CanonicalStore

INCIDENT_OPENED = datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc)


def _impact(impact_date: datetime, severity: str = "high", minutes: int = 60):
    return BusinessImpactRecord(
        tenant_id="tenant-a",
        source_type="servicenow",
        source_id=f"inc-{impact_date.isoformat()}",
        severity=severity,
        duration_minutes=minutes,
        impact_date=impact_date,
    )


def _metric(key: str, status: str) -> dict:
    return {"key": key, "status": status}


class TestTimeRange:
    """Test suite for dashboard time ranges."""

    def test_window_ends_now(self, fixed_now):
        """Windows cover the named number of days up to the clock."""
        start, end = TimeRange("7d").window(fixed_now)

        assert end == fixed_now
        assert end - start == timedelta(days=7)
        assert TimeRange.LAST_YEAR.days == 365

    def test_months_shown(self):
        """Short ranges show every month; longer ranges cap the chart."""
        assert TimeRange("14d").months_shown is None
        assert TimeRange("3m").months_shown == 3
        assert TimeRange("1y").months_shown == 12

    def test_unknown_range_is_rejected(self):
        with pytest.raises(ValueError):
            TimeRange("2w")


class TestPulseSummaries:
    """Test suite for the pure pulse summaries."""

    def test_summarize_health(self):
        """The score averages per-status points over every metric."""
        summary = summarize_health(
            [_metric("a", "excellent"), _metric("b", "excellent"), _metric("c", "good")]
        )

        assert summary["score"] == 92
        assert summary["status"] == "excellent"
        assert summary["totalMetrics"] == 3
        assert summary["excellentCount"] == 2
        assert summary["goodCount"] == 1
        assert summary["criticalCount"] == 0

    def test_summarize_health_without_metrics(self):
        """An empty dashboard scores zero."""
        summary = summarize_health([])

        assert summary["score"] == 0
        assert summary["status"] == "critical"
        assert summary["totalMetrics"] == 0

    def test_strategic_alignment_groups_metrics_by_area(self):
        """Areas without metrics are omitted; shared metrics count in each area."""
        alignment = strategic_alignment(
            [
                _metric("incident_resolution_time", "excellent"),
                _metric("mttr", "good"),
                _metric("team_engagement", "critical"),
            ]
        )

        categories = alignment["categories"]
        assert set(categories) == {"incident_management", "communication", "engagement"}
        assert categories["incident_management"]["score"] == 88
        assert categories["incident_management"]["status"] == "good"
        assert categories["incident_management"]["metrics"] == [
            "incident_resolution_time",
            "mttr",
        ]
        assert categories["engagement"]["status"] == "critical"
        assert alignment["overall"] == 46

    def test_strategic_alignment_without_metrics(self):
        assert strategic_alignment([]) == {"overall": 0, "categories": {}}

    def test_escalations_by_month_newest_first(self):
        """Impacts are bucketed per calendar month and the chart is capped."""
        impacts = [
            _impact(datetime(2026, 1, 20, tzinfo=timezone.utc), "critical", 90),
            _impact(datetime(2026, 2, 3, tzinfo=timezone.utc), "low", 30),
            _impact(datetime(2026, 2, 27, tzinfo=timezone.utc), "low", 30),
        ]
        start = datetime(2025, 12, 15, tzinfo=timezone.utc)
        end = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)

        chart = escalations_by_month(impacts, start, end)
        capped = escalations_by_month(impacts, start, end, months_shown=2)

        assert [month["month"] for month in chart] == ["2026-03", "2026-02", "2026-01", "2025-12"]
        assert chart[1]["count"] == 2
        assert chart[1]["totalHoursLost"] == 1.0
        assert chart[1]["bySeverity"]["low"] == 2
        assert chart[2]["bySeverity"]["critical"] == 1
        assert [month["month"] for month in capped] == ["2026-03", "2026-02"]


class TestOrganizationalPulseService:
    """Test suite for OrganizationalPulseService."""

    @pytest.fixture
    def registry(self) -> MetricRegistry:
        registry = MetricRegistry()
        registry.initialize_defaults("tenant-a")
        return registry

    @pytest.fixture
    def estimator(self, make_connection) -> BusinessImpactEstimator:
        connection = make_connection()
        CanonicalStore().upsert_many(
            tenant_id="tenant-a",
            connection_id=connection.id,
            source="servicenow",
            records=[
                CanonicalRecordCreate(
                    entity_type="incident",
                    external_id="inc-1",
                    occurred_at=INCIDENT_OPENED,
                    fields={"state": "Resolved", "durationMinutes": 90.0},
                )
            ],
        )
        estimator = BusinessImpactEstimator()
        estimator.record_from_source("tenant-a", "servicenow", "inc-1")
        return estimator

    def _service(self, registry, estimator, now) -> OrganizationalPulseService:
        return OrganizationalPulseService(
            registry,
            MetricAggregationEngine(CanonicalStore()),
            estimator,
            clock=lambda: now,
        )

    @pytest.mark.asyncio
    async def test_calculate_builds_dashboard_payload(self, registry, estimator, fixed_now):
        """Every default metric is summarized alongside the escalation chart."""
        payload = await self._service(registry, estimator, fixed_now).calculate(
            "tenant-a", "3m"
        )

        assert payload["tenantId"] == "tenant-a"
        assert payload["timeRange"] == "3m"
        assert payload["generatedAt"] == fixed_now.isoformat()
        assert payload["period"]["end"] == fixed_now.isoformat()
        assert len(payload["metrics"]) == len(DEFAULT_METRICS)
        assert payload["overallHealth"]["totalMetrics"] == len(DEFAULT_METRICS)

        resolution = next(
            metric for metric in payload["metrics"] if metric["key"] == "incident_resolution_time"
        )
        assert resolution["value"] == 90.0
        assert resolution["status"] == "excellent"

        escalations = payload["businessEscalations"]
        assert escalations["totalCount"] == 1
        assert escalations["totalHoursLost"] == 1.5
        assert [month["month"] for month in escalations["chartData"]] == [
            "2026-03",
            "2026-02",
            "2026-01",
        ]
        assert escalations["chartData"][1]["count"] == 1

    @pytest.mark.asyncio
    async def test_failing_metric_is_skipped(self, registry, estimator, fixed_now):
        """A metric that cannot be calculated is left out instead of failing the dashboard."""
        registry.update("tenant-a", "team_velocity", {"calculation": {"entity_type": "issue"}})

        payload = await self._service(registry, estimator, fixed_now).calculate(
            "tenant-a", TimeRange.LAST_3_MONTHS
        )

        keys = {metric["key"] for metric in payload["metrics"]}
        assert "team_velocity" not in keys
        assert len(keys) == len(DEFAULT_METRICS) - 1

    @pytest.mark.asyncio
    async def test_impacts_outside_window_are_excluded(self, registry, estimator, fixed_now):
        """A short range ignores impacts older than its window."""
        payload = await self._service(registry, estimator, fixed_now).calculate(
            "tenant-a", "7d"
        )

        assert payload["businessEscalations"]["totalCount"] == 0
        assert payload["businessEscalations"]["chartData"][0]["month"] == "2026-03"
