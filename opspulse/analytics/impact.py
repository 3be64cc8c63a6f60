"""Heuristic revenue and cost model for business impact records."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any

from ..models.base import session_scope, utcnow
from ..models.business_impact import SEVERITIES, BusinessImpactRecord
from ..models.repository import BusinessImpactRepository, CanonicalRecordRepository
from ..utils.config import ImpactCostModel
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "BusinessImpactEstimator"})

IMPACT_TYPES = {"servicenow": "incident", "jira": "bug"}


class BusinessImpactEstimator:
    """Combines direct, indirect, opportunity, and reputation costs into a loss estimate.

    Every constant comes from :class:`ImpactCostModel` so deployments can tune the
    model without code changes.
    """

    def __init__(self, cost_model: ImpactCostModel | None = None) -> None:
        self.model = cost_model or ImpactCostModel()

    def direct_costs(self, impact: BusinessImpactRecord) -> float:
        if not impact.duration_minutes:
            return 0.0
        multiplier = self.model.direct_multipliers.for_severity(impact.severity)
        return impact.hours_lost * self.model.engineer_hourly_cost * multiplier

    def indirect_costs(self, impact: BusinessImpactRecord) -> float:
        if not impact.customers_affected:
            return 0.0
        multiplier = self.model.indirect_multipliers.for_severity(impact.severity)
        return impact.customers_affected * self.model.support_cost_per_customer * multiplier

    def opportunity_cost(self, impact: BusinessImpactRecord) -> float:
        if not impact.duration_minutes:
            return 0.0
        model = self.model
        if impact.severity == "critical":
            return (
                impact.hours_lost
                * model.critical_blocked_team_size
                * model.opportunity_hourly_rate
                * model.critical_opportunity_factor
            )
        if impact.severity == "high":
            return (
                impact.hours_lost
                * model.high_blocked_team_size
                * model.opportunity_hourly_rate
                * model.high_opportunity_factor
            )
        return 0.0

    def reputation_impact(self, impact: BusinessImpactRecord) -> float:
        customers = impact.customers_affected or 0
        if customers < self.model.reputation_customer_threshold:
            return 0.0
        churn = self.model.churn_risk.for_severity(impact.severity)
        return customers * self.model.customer_lifetime_value * churn

    def confidence(self, impact: BusinessImpactRecord) -> float:
        """Start at 1.0 and subtract a penalty for each missing input, floored at 0."""

        model = self.model
        confidence = 1.0
        if not impact.duration_minutes:
            confidence -= model.missing_duration_penalty
        if not impact.customers_affected:
            confidence -= model.missing_customers_penalty
        if impact.resolved_date is None:
            confidence -= model.missing_resolution_penalty
        if not impact.revenue_mapping:
            confidence -= model.missing_revenue_mapping_penalty
        return max(0.0, round(confidence, 4))

    def severity_for_loss(self, loss: float) -> str:
        for severity in ("critical", "high", "medium"):
            if loss > self.model.severity_thresholds.get(severity, float("inf")):
                return severity
        return "low"

    def apply_estimate(
        self,
        impact: BusinessImpactRecord,
        *,
        include_opportunity_cost: bool = True,
        include_reputation_impact: bool = True,
    ) -> BusinessImpactRecord:
        """Populate ``loss_estimation`` and ``estimated_revenue_loss`` on ``impact``."""

        direct = self.direct_costs(impact)
        indirect = self.indirect_costs(impact)
        opportunity = self.opportunity_cost(impact) if include_opportunity_cost else 0.0
        reputation = self.reputation_impact(impact) if include_reputation_impact else 0.0
        total = direct + indirect + opportunity + reputation
        impact.loss_estimation = {
            "directCosts": round(direct, 2),
            "indirectCosts": round(indirect, 2),
            "opportunityCost": round(opportunity, 2),
            "reputationImpact": round(reputation, 2),
            "calculationMethod": "comprehensive_estimation",
            "confidence": self.confidence(impact),
        }
        impact.estimated_revenue_loss = round(total, 2)
        return impact

    def estimate(
        self,
        tenant_id: str,
        impact_id: str,
        *,
        include_opportunity_cost: bool = True,
        include_reputation_impact: bool = True,
    ) -> BusinessImpactRecord:
        with session_scope() as session:
            impact = BusinessImpactRepository(session).get(tenant_id, impact_id)
            self.apply_estimate(
                impact,
                include_opportunity_cost=include_opportunity_cost,
                include_reputation_impact=include_reputation_impact,
            )
            session.flush()
        logger.info(
            "Estimated business impact %s at %.2f",
            impact.id,
            impact.estimated_revenue_loss,
            extra={"tenant_id": tenant_id, "status": "success"},
        )
        return impact

    def record_from_source(
        self,
        tenant_id: str,
        source_type: str,
        source_id: str,
        *,
        revenue_per_hour: float | None = None,
        duration_minutes: int | None = None,
        customers_affected: int | None = None,
        affected_services: list[str] | None = None,
        recurring_impact: bool = False,
    ) -> BusinessImpactRecord:
        """Create an impact record for a synced incident or issue and map its revenue loss."""

        with session_scope() as session:
            impact_date: datetime = utcnow()
            resolved_date: datetime | None = None
            details: dict[str, Any] = {}
            source = CanonicalRecordRepository(session).get_by_external_id(
                tenant_id, source_type, source_id
            )
            if source is not None:
                impact_date = source.occurred_at
                fields = source.fields or {}
                resolved = fields.get("resolvedAt")
                resolved_date = datetime.fromisoformat(resolved) if resolved else None
                details = {
                    key: fields.get(key)
                    for key in ("priority", "category", "issueType", "assignedTo", "assignee")
                    if fields.get(key) is not None
                }
            if duration_minutes is None and source is not None:
                derived = (source.fields or {}).get("durationMinutes")
                duration_minutes = int(derived) if derived is not None else None

            one_time_loss = 0.0
            if revenue_per_hour and duration_minutes:
                one_time_loss = revenue_per_hour * duration_minutes / 60
            recurring_loss = 0.0
            if recurring_impact and customers_affected:
                recurring_loss = (
                    customers_affected
                    * self.model.recurring_customer_value
                    * self.model.recurring_loss_factor
                )
            loss = one_time_loss + recurring_loss

            impact = BusinessImpactRepository(session).add(
                BusinessImpactRecord(
                    tenant_id=tenant_id,
                    source_type=source_type,
                    source_id=source_id,
                    impact_type=IMPACT_TYPES.get(source_type, "incident"),
                    severity=self.severity_for_loss(loss),
                    estimated_revenue_loss=round(loss, 2),
                    customers_affected=customers_affected,
                    duration_minutes=duration_minutes,
                    impact_date=impact_date,
                    resolved_date=resolved_date,
                    revenue_mapping={
                        "affectedServices": affected_services or [],
                        "revenuePerHour": revenue_per_hour,
                        "oneTimeRevenueLoss": round(one_time_loss, 2),
                        "recurringRevenueImpact": round(recurring_loss, 2),
                        "methodology": "duration_based_calculation",
                    },
                    details=details,
                )
            )
        return impact

    def get(self, tenant_id: str, impact_id: str) -> BusinessImpactRecord:
        with session_scope() as session:
            return BusinessImpactRepository(session).get(tenant_id, impact_id)

    def list_impacts(
        self,
        tenant_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        severity: str | None = None,
        source_type: str | None = None,
    ) -> list[BusinessImpactRecord]:
        with session_scope() as session:
            return BusinessImpactRepository(session).list_impacts(
                tenant_id, start=start, end=end, severity=severity, source_type=source_type
            )

    def summarize(
        self, tenant_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, Any]:
        impacts = self.list_impacts(tenant_id, start=start, end=end)
        by_type: dict[str, float] = defaultdict(float)
        by_severity: dict[str, float] = {severity: 0.0 for severity in SEVERITIES}
        for impact in impacts:
            by_type[impact.impact_type] += impact.estimated_revenue_loss or 0.0
            by_severity[impact.severity] = (
                by_severity.get(impact.severity, 0.0) + (impact.estimated_revenue_loss or 0.0)
            )
        estimated = sum(impact.estimated_revenue_loss or 0.0 for impact in impacts)
        actual = sum(impact.actual_revenue_loss or 0.0 for impact in impacts)
        return {
            "total": round(estimated, 2),
            "estimated": round(estimated, 2),
            "actual": round(actual, 2),
            "count": len(impacts),
            "hoursLost": round(sum(impact.hours_lost for impact in impacts), 1),
            "byType": dict(by_type),
            "bySeverity": by_severity,
        }

