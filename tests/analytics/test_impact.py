"""Tests for the business impact estimator."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from opspulse.analytics.impact import BusinessImpactEstimator
from opspulse.exceptions import ImpactNotFoundError
from opspulse.models.business_impact import BusinessImpactRecord
from opspulse.models.repository import CanonicalRecordCreate
from opspulse.sync.stores import CanonicalStore
from opspulse.utils.config import ImpactCostModel

OPENED = datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc)
RESOLVED = datetime(2026, 2, 10, 10, 30, tzinfo=timezone.utc)


def _impact(**overrides) -> BusinessImpactRecord:
    values = {
        "tenant_id": "tenant-a",
        "source_type": "servicenow",
        "source_id": "inc-1",
        "severity": "critical",
        "duration_minutes": 120,
        "customers_affected": 200,
        "impact_date": OPENED,
        "resolved_date": RESOLVED,
        "revenue_mapping": {"revenuePerHour": 1000},
    }
    values.update(overrides)
    return BusinessImpactRecord(**values)


@pytest.fixture
def estimator() -> BusinessImpactEstimator:
    return BusinessImpactEstimator()


@pytest.fixture
def seeded_incident(make_connection) -> None:
    connection = make_connection()
    CanonicalStore().upsert_many(
        tenant_id="tenant-a",
        connection_id=connection.id,
        source="servicenow",
        records=[
            CanonicalRecordCreate(
                entity_type="incident",
                external_id="inc-1",
                occurred_at=OPENED,
                fields={
                    "priority": "1 - Critical",
                    "durationMinutes": 90.0,
                    "resolvedAt": RESOLVED.isoformat(),
                },
            )
        ],
    )


class TestCostModel:
    """Test suite for the individual cost components."""

    def test_comprehensive_estimate(self, estimator):
        """All four components are combined into the estimated loss."""
        impact = estimator.apply_estimate(_impact())

        assert impact.loss_estimation["directCosts"] == 1600.0
        assert impact.loss_estimation["indirectCosts"] == 20000.0
        assert impact.loss_estimation["opportunityCost"] == 750.0
        assert impact.loss_estimation["reputationImpact"] == 20000.0
        assert impact.loss_estimation["confidence"] == 1.0
        assert impact.estimated_revenue_loss == 42350.0

    def test_optional_components_can_be_excluded(self, estimator):
        """Opportunity and reputation costs are opt-out."""
        impact = estimator.apply_estimate(
            _impact(), include_opportunity_cost=False, include_reputation_impact=False
        )

        assert impact.loss_estimation["opportunityCost"] == 0.0
        assert impact.loss_estimation["reputationImpact"] == 0.0
        assert impact.estimated_revenue_loss == 21600.0

    def test_reputation_requires_customer_threshold(self, estimator):
        """Small customer counts carry no reputation cost."""
        assert estimator.reputation_impact(_impact(customers_affected=99)) == 0.0
        assert estimator.opportunity_cost(_impact(severity="low")) == 0.0

    def test_each_missing_input_lowers_confidence(self, estimator):
        """Confidence strictly decreases as inputs go missing."""
        complete = estimator.confidence(_impact())
        no_duration = estimator.confidence(_impact(duration_minutes=None))
        no_customers = estimator.confidence(
            _impact(duration_minutes=None, customers_affected=None)
        )
        no_resolution = estimator.confidence(
            _impact(duration_minutes=None, customers_affected=None, resolved_date=None)
        )
        nothing = estimator.confidence(
            _impact(
                duration_minutes=None,
                customers_affected=None,
                resolved_date=None,
                revenue_mapping=None,
            )
        )

        assert complete > no_duration > no_customers > no_resolution > nothing
        assert nothing == pytest.approx(0.3)

    def test_confidence_is_floored_at_zero(self):
        """Heavy penalties never produce a negative confidence."""
        estimator = BusinessImpactEstimator(
            ImpactCostModel(
                missing_duration_penalty=0.5,
                missing_customers_penalty=0.5,
                missing_resolution_penalty=0.5,
            )
        )

        assert estimator.confidence(
            _impact(duration_minutes=None, customers_affected=None, resolved_date=None)
        ) == 0.0

    @pytest.mark.parametrize(
        ("loss", "severity"),
        [(150_000, "critical"), (60_000, "high"), (20_000, "medium"), (10_000, "low")],
    )
    def test_severity_for_loss(self, estimator, loss, severity):
        """Loss thresholds are exclusive lower bounds."""
        assert estimator.severity_for_loss(loss) == severity


class TestImpactPersistence:
    """Test suite for recording and estimating stored impacts."""

    def test_record_from_synced_incident(self, estimator, seeded_incident):
        """Impacts inherit timing and details from the synced source record."""
        impact = estimator.record_from_source(
            "tenant-a",
            "servicenow",
            "inc-1",
            revenue_per_hour=40_000,
            customers_affected=10,
            affected_services=["checkout"],
            recurring_impact=True,
        )

        assert impact.impact_type == "incident"
        assert impact.impact_date == OPENED
        assert impact.resolved_date == RESOLVED
        assert impact.duration_minutes == 90
        assert impact.revenue_mapping["oneTimeRevenueLoss"] == 60_000.0
        assert impact.revenue_mapping["recurringRevenueImpact"] == 100.0
        assert impact.estimated_revenue_loss == 60_100.0
        assert impact.severity == "high"
        assert impact.details == {"priority": "1 - Critical"}

    def test_record_for_unknown_source_defaults(self, estimator):
        """Without a synced record the impact carries no duration and a low severity."""
        impact = estimator.record_from_source("tenant-a", "jira", "OPS-404")

        assert impact.impact_type == "bug"
        assert impact.duration_minutes is None
        assert impact.severity == "low"
        assert impact.estimated_revenue_loss == 0.0

    def test_estimate_persists_breakdown(self, estimator, seeded_incident):
        """Estimating a stored impact writes the loss breakdown back."""
        impact = estimator.record_from_source(
            "tenant-a", "servicenow", "inc-1", customers_affected=10
        )

        estimator.estimate("tenant-a", impact.id)
        stored = estimator.get("tenant-a", impact.id)

        assert stored.loss_estimation["calculationMethod"] == "comprehensive_estimation"
        assert stored.loss_estimation["indirectCosts"] == 10 * 50 * 0.5
        assert stored.estimated_revenue_loss == pytest.approx(150.0 + 500 * 0.5)

    def test_impacts_are_tenant_scoped(self, estimator):
        """Another tenant's impact cannot be read or estimated."""
        impact = estimator.record_from_source("tenant-a", "jira", "OPS-1")

        with pytest.raises(ImpactNotFoundError):
            estimator.get("tenant-b", impact.id)
        with pytest.raises(ImpactNotFoundError):
            estimator.estimate("tenant-b", impact.id)

    def test_summarize(self, estimator, seeded_incident):
        """Summaries total estimated loss by type and severity."""
        estimator.record_from_source(
            "tenant-a", "servicenow", "inc-1", revenue_per_hour=40_000
        )
        estimator.record_from_source("tenant-a", "jira", "OPS-1")

        summary = estimator.summarize("tenant-a")

        assert summary["count"] == 2
        assert summary["total"] == 60_000.0
        assert summary["byType"] == {"incident": 60_000.0, "bug": 0.0}
        assert summary["bySeverity"]["high"] == 60_000.0
        assert summary["hoursLost"] == 1.5
