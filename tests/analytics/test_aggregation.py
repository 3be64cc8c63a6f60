"""Tests for metric aggregation over canonical records."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from opspulse.analytics.aggregation import (
    AggregationType,
    CalculationContext,
    MetricAggregationEngine,
    aggregate,
    compute_trend,
    confidence_for_sample_size,
    determine_status,
    matches_filters,
)
from opspulse.analytics.registry import MetricRegistry
from opspulse.analytics.strategies import (
    CustomStrategy,
    collaboration_index,
    engagement_score,
    resolve_strategy,
)
from opspulse.exceptions import ConfigurationError, UnknownStrategyError
from opspulse.models.metric import MetricDefinition
from opspulse.models.repository import CanonicalRecordCreate
from opspulse.sync.stores import CanonicalStore

PERIOD_START = datetime(2026, 2, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _incident(external_id: str, day: int, **fields) -> CanonicalRecordCreate:
    return CanonicalRecordCreate(
        entity_type="incident",
        external_id=external_id,
        occurred_at=PERIOD_START + timedelta(days=day),
        fields=fields,
    )


def _message(external_id: str, actor: str, day: int = 1) -> CanonicalRecordCreate:
    return CanonicalRecordCreate(
        entity_type="message",
        external_id=external_id,
        occurred_at=PERIOD_START + timedelta(days=day),
        actor_id=actor,
        fields={"channelId": "C1"},
    )


def _seed(connection, source: str, records: list[CanonicalRecordCreate]) -> None:
    CanonicalStore().upsert_many(
        tenant_id=connection.tenant_id,
        connection_id=connection.id,
        source=source,
        records=records,
    )


@pytest.fixture
def context() -> CalculationContext:
    return CalculationContext(
        tenant_id="tenant-a", period_start=PERIOD_START, period_end=PERIOD_END
    )


@pytest.fixture
def engine() -> MetricAggregationEngine:
    return MetricAggregationEngine(CanonicalStore())


@pytest.fixture
def registry() -> MetricRegistry:
    registry = MetricRegistry()
    registry.initialize_defaults("tenant-a")
    return registry


class TestAggregationFunctions:
    """Test suite for the pure aggregation helpers."""

    def test_aggregations(self):
        """Each aggregation reduces the values as named."""
        values = [30.0, 60.0, 90.0]

        assert aggregate(values, AggregationType.AVG) == 60.0
        assert aggregate(values, AggregationType.SUM) == 180.0
        assert aggregate(values, AggregationType.MIN) == 30.0
        assert aggregate(values, AggregationType.MAX) == 90.0
        assert aggregate(values, AggregationType.COUNT) == 3.0
        assert aggregate(values, AggregationType.MEDIAN) == 60.0
        assert aggregate([4.0, 1.0, 3.0, 2.0], AggregationType.MEDIAN) == 2.5

    def test_empty_input_aggregates_to_zero(self):
        """No data points never raises."""
        for aggregation in AggregationType:
            assert aggregate([], aggregation) == 0.0

    def test_confidence_grows_with_sample_size(self):
        """Confidence is non-decreasing in the number of data points."""
        sizes = [0, 4, 5, 9, 10, 24, 25, 49, 50, 99, 100, 1000]
        confidences = [confidence_for_sample_size(size) for size in sizes]

        assert confidences == sorted(confidences)
        assert confidence_for_sample_size(0) == 0.2
        assert confidence_for_sample_size(100) == 1.0

    def test_determine_status_uses_first_matching_tier(self):
        """Tiers are checked from excellent to critical."""
        thresholds = {
            "excellent": {"max": 240},
            "good": {"max": 480},
            "warning": {"max": 1440},
            "critical": {"min": 1440},
        }

        assert determine_status(100, thresholds) == "excellent"
        assert determine_status(240, thresholds) == "excellent"
        assert determine_status(300, thresholds) == "good"
        assert determine_status(1000, thresholds) == "warning"
        assert determine_status(5000, thresholds) == "critical"

    def test_determine_status_defaults(self):
        """Missing thresholds mean good; values outside every tier are critical."""
        assert determine_status(42, None) == "good"
        assert determine_status(5, {"excellent": {"min": 10}}) == "critical"

    @pytest.mark.parametrize(
        ("current", "previous", "expected"),
        [
            (105, 100, (5.0, "stable")),
            (95, 100, (-5.0, "stable")),
            (110, 100, (10.0, "up")),
            (80, 100, (-20.0, "down")),
            (50, 0, (0.0, "stable")),
        ],
    )
    def test_compute_trend(self, current, previous, expected):
        """Changes within five percent are stable; a zero baseline is stable."""
        assert compute_trend(current, previous) == expected

    def test_matches_filters(self):
        """Scalar filters match by equality and list filters by membership."""
        document = {"state": "Resolved", "priority": "1 - Critical", "nested": {"team": "ops"}}

        assert matches_filters(document, {"state": ["Resolved", "Closed"]}) is True
        assert matches_filters(document, {"nested.team": "ops"}) is True
        assert matches_filters(document, {"state": "New"}) is False
        assert matches_filters(document, {"missing": "x"}) is False


class TestStrategies:
    """Test suite for named custom strategies."""

    def test_collaboration_index(self):
        """Unique authors divided by total messages."""
        documents = [{"actorId": "u1"}, {"actorId": "u1"}, {"actorId": "u2"}, {"actorId": None}]

        assert collaboration_index(documents, PERIOD_START, PERIOD_END) == 0.5
        assert collaboration_index([], PERIOD_START, PERIOD_END) == 0.0

    def test_engagement_score_is_capped(self):
        """Engagement is activity relative to the expected daily volume, at most 1."""
        day_end = PERIOD_START + timedelta(days=1)

        assert engagement_score([{}] * 50, PERIOD_START, day_end) == 0.5
        assert engagement_score([{}] * 500, PERIOD_START, day_end) == 1.0

    def test_resolve_unknown_strategy(self):
        """Unknown keys list the available strategies."""
        assert resolve_strategy(CustomStrategy.ENGAGEMENT_SCORE).sources == (
            "slack",
            "teams",
            "jira",
        )
        with pytest.raises(UnknownStrategyError, match="collaboration_index"):
            resolve_strategy("sentiment")


class TestMetricAggregationEngine:
    """Test suite for MetricAggregationEngine."""

    @pytest.mark.asyncio
    async def test_average_resolution_time(self, make_connection, engine, registry, context):
        """Only resolved incidents inside the period contribute to the average."""
        connection = make_connection()
        _seed(
            connection,
            "servicenow",
            [
                _incident("i1", 1, state="Resolved", durationMinutes=30),
                _incident("i2", 2, state="Closed", durationMinutes=60),
                _incident("i3", 3, state="Resolved", durationMinutes=90),
                _incident("i4", 4, state="New", durationMinutes=None),
                _incident("i5", 28, state="Resolved", durationMinutes=999),
            ],
        )

        result = await engine.calculate(
            registry.get("tenant-a", "incident_resolution_time"), context
        )

        assert result.value == 60.0
        assert result.data_points == 3
        assert result.confidence == confidence_for_sample_size(3)
        assert result.sources == ["servicenow"]

    @pytest.mark.asyncio
    async def test_count_uses_all_matching_documents(
        self, make_connection, engine, registry, context
    ):
        """Count aggregations count documents regardless of field values."""
        connection = make_connection()
        _seed(connection, "servicenow", [_incident(f"i{n}", n, state="New") for n in range(4)])

        result = await engine.calculate(registry.get("tenant-a", "incident_volume"), context)

        assert result.value == 4.0
        assert result.data_points == 4

    @pytest.mark.asyncio
    async def test_other_tenants_data_is_ignored(self, make_connection, engine, registry, context):
        """Calculations only read the requesting tenant's records."""
        _seed(make_connection(), "servicenow", [_incident("i1", 1, state="New")])
        other = make_connection(tenant_id="tenant-b")
        _seed(other, "servicenow", [_incident(f"b{n}", n, state="New") for n in range(5)])

        result = await engine.calculate(registry.get("tenant-a", "incident_volume"), context)

        assert result.value == 1.0

    @pytest.mark.asyncio
    async def test_breakdown_by_field(self, make_connection, engine, context):
        """breakdown_by groups documents and aggregates each group separately."""
        _seed(
            make_connection(),
            "servicenow",
            [
                _incident("i1", 1, priority="1 - Critical", durationMinutes=10),
                _incident("i2", 2, priority="1 - Critical", durationMinutes=30),
                _incident("i3", 3, priority="3 - Moderate", durationMinutes=60),
                _incident("i4", 4, durationMinutes=5),
            ],
        )
        definition = MetricDefinition(
            tenant_id="tenant-a",
            metric_key="duration_by_priority",
            name="Duration by priority",
            category="custom",
            aggregation_type="avg",
            source_types=["servicenow"],
            calculation={
                "entity_type": "incident",
                "source_fields": ["durationMinutes"],
                "breakdown_by": "priority",
            },
        )

        result = await engine.calculate(definition, context)

        assert result.breakdown == {"1 - Critical": 20.0, "3 - Moderate": 60.0, "unknown": 5.0}

    @pytest.mark.asyncio
    async def test_collaboration_index_strategy(self, make_connection, engine, registry, context):
        """Custom strategies read their own sources and entity types."""
        slack = make_connection(vendor="slack", instance_url="https://acme.slack.com")
        _seed(
            slack,
            "slack",
            [
                _message("m1", "u1"),
                _message("m2", "u1"),
                _message("m3", "u2"),
                _message("m4", "u2"),
            ],
        )

        result = await engine.calculate(registry.get("tenant-a", "collaboration_index"), context)

        assert result.value == 0.5
        assert result.data_points == 4

    @pytest.mark.asyncio
    async def test_unknown_strategy_raises(self, engine, context):
        """A stored definition naming a removed strategy fails loudly."""
        definition = MetricDefinition(
            tenant_id="tenant-a",
            metric_key="sentiment",
            name="Sentiment",
            category="custom",
            aggregation_type="avg",
            source_types=["slack"],
            calculation={"custom_strategy": "sentiment"},
        )

        with pytest.raises(UnknownStrategyError):
            await engine.calculate(definition, context)

    @pytest.mark.asyncio
    async def test_numeric_aggregation_requires_field(self, engine, context):
        """Non-count aggregations need a source field."""
        definition = MetricDefinition(
            tenant_id="tenant-a",
            metric_key="broken",
            name="Broken",
            category="custom",
            aggregation_type="sum",
            source_types=["jira"],
            calculation={"entity_type": "issue"},
        )

        with pytest.raises(ConfigurationError):
            await engine.calculate(definition, context)

    @pytest.mark.asyncio
    async def test_calculate_and_store_overwrites_period(
        self, make_connection, engine, registry, context
    ):
        """Recalculating a period replaces its stored value and records the trend."""
        connection = make_connection()
        _seed(connection, "servicenow", [_incident("i1", 1, state="New")])
        previous_start = PERIOD_START - (PERIOD_END - PERIOD_START)
        _seed(
            connection,
            "servicenow",
            [
                CanonicalRecordCreate(
                    entity_type="incident",
                    external_id=f"old{n}",
                    occurred_at=previous_start + timedelta(days=n),
                    fields={"state": "New"},
                )
                for n in range(2)
            ],
        )
        definition = registry.get("tenant-a", "incident_volume")

        first = await engine.calculate_and_store(definition, context)
        _seed(connection, "servicenow", [_incident("i2", 2, state="New")])
        second = await engine.calculate_and_store(definition, context)

        assert first.value == 1.0
        assert second.id == first.id
        assert second.value == 2.0
        assert second.comparison_data["previous_period"]["value"] == 2.0
        assert second.comparison_data["trend"] == "stable"
        assert second.calculation_metadata["dataPoints"] == 2

        values = await engine.get_values(
            "tenant-a", "incident_volume", PERIOD_START, PERIOD_END
        )
        assert [value.value for value in values] == [2.0]

    def test_previous_period_has_equal_length(self, context):
        """The comparison window ends where the current one starts."""
        previous = context.previous_period()

        assert previous.period_end == context.period_start
        assert previous.period_end - previous.period_start == (
            context.period_end - context.period_start
        )
