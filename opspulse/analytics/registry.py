"""Tenant-scoped metric definitions, including the default org-health set."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from ..exceptions import InvalidMetricDefinitionError, MetricAlreadyExistsError
from ..models.base import session_scope
from ..models.metric import MetricDefinition
from ..models.repository import MetricRepository
from ..utils.logging import setup_logger
from .aggregation import AggregationType
from .strategies import CustomStrategy, resolve_strategy

logger = setup_logger(__name__, context={"component": "MetricRegistry"})

DEFAULT_CATEGORY = "org_health"

DEFAULT_METRICS: tuple[dict[str, Any], ...] = (
    {
        "metric_key": "incident_resolution_time",
        "name": "Average Incident Resolution Time",
        "description": "Average time to resolve incidents from creation to closure",
        "data_type": "duration",
        "aggregation_type": "avg",
        "source_types": ["servicenow"],
        "calculation": {
            "entity_type": "incident",
            "source_fields": ["durationMinutes"],
            "filters": {"state": ["Resolved", "Closed"]},
        },
        "thresholds": {
            "excellent": {"max": 240},
            "good": {"max": 480},
            "warning": {"max": 1440},
            "critical": {"min": 1440},
        },
        "display_config": {"unit": "minutes", "decimalPlaces": 0, "chartType": "line"},
    },
    {
        "metric_key": "incident_volume",
        "name": "Incident Volume",
        "description": "Total number of incidents created in period",
        "data_type": "count",
        "aggregation_type": "count",
        "source_types": ["servicenow"],
        "calculation": {"entity_type": "incident", "source_fields": ["externalId"]},
        "thresholds": {
            "excellent": {"max": 10},
            "good": {"max": 25},
            "warning": {"max": 50},
            "critical": {"min": 50},
        },
        "display_config": {"unit": "incidents", "decimalPlaces": 0, "chartType": "bar"},
    },
    {
        "metric_key": "mttr",
        "name": "Mean Time To Repair (MTTR)",
        "description": "Average time to repair critical and high priority incidents",
        "data_type": "duration",
        "aggregation_type": "avg",
        "source_types": ["servicenow"],
        "calculation": {
            "entity_type": "incident",
            "source_fields": ["durationMinutes"],
            "filters": {"priority": ["1 - Critical", "2 - High"]},
        },
        "thresholds": {
            "excellent": {"max": 60},
            "good": {"max": 120},
            "warning": {"max": 240},
            "critical": {"min": 240},
        },
        "display_config": {"unit": "minutes", "decimalPlaces": 0, "chartType": "gauge"},
    },
    {
        "metric_key": "team_velocity",
        "name": "Team Velocity",
        "description": "Story points completed in period",
        "data_type": "number",
        "aggregation_type": "sum",
        "source_types": ["jira"],
        "calculation": {
            "entity_type": "issue",
            "source_fields": ["storyPoints"],
            "filters": {"status": "Done"},
        },
        "thresholds": {
            "excellent": {"min": 40},
            "good": {"min": 30},
            "warning": {"min": 20},
            "critical": {"max": 20},
        },
        "display_config": {"unit": "points", "decimalPlaces": 0, "chartType": "line"},
    },
    {
        "metric_key": "issue_throughput",
        "name": "Issue Throughput",
        "description": "Number of issues completed in period",
        "data_type": "count",
        "aggregation_type": "count",
        "source_types": ["jira"],
        "calculation": {
            "entity_type": "issue",
            "source_fields": ["status"],
            "filters": {"status": ["Done", "Closed", "Resolved"]},
        },
        "thresholds": {
            "excellent": {"min": 50},
            "good": {"min": 30},
            "warning": {"min": 15},
            "critical": {"max": 15},
        },
        "display_config": {"unit": "issues", "decimalPlaces": 0, "chartType": "bar"},
    },
    {
        "metric_key": "cycle_time",
        "name": "Cycle Time",
        "description": "Average hours from issue creation to resolution",
        "data_type": "duration",
        "aggregation_type": "avg",
        "source_types": ["jira"],
        "calculation": {"entity_type": "issue", "source_fields": ["cycleTimeHours"]},
        "thresholds": {
            "excellent": {"max": 72},
            "good": {"max": 120},
            "warning": {"max": 240},
            "critical": {"min": 240},
        },
        "display_config": {"unit": "hours", "decimalPlaces": 1, "chartType": "line"},
    },
    {
        "metric_key": "response_time",
        "name": "Average Response Time",
        "description": "Average time to first thread reply in channels",
        "data_type": "duration",
        "aggregation_type": "avg",
        "source_types": ["slack", "teams"],
        "calculation": {"entity_type": "message", "source_fields": ["responseTimeMinutes"]},
        "thresholds": {
            "excellent": {"max": 30},
            "good": {"max": 60},
            "warning": {"max": 240},
            "critical": {"min": 240},
        },
        "display_config": {"unit": "minutes", "decimalPlaces": 0, "chartType": "line"},
    },
    {
        "metric_key": "collaboration_index",
        "name": "Collaboration Index",
        "description": "Unique participants relative to message volume",
        "data_type": "number",
        "aggregation_type": "avg",
        "source_types": ["slack", "teams"],
        "calculation": {
            "entity_type": "message",
            "source_fields": ["actorId"],
            "custom_strategy": CustomStrategy.COLLABORATION_INDEX.value,
        },
        "thresholds": {
            "excellent": {"min": 0.7},
            "good": {"min": 0.5},
            "warning": {"min": 0.3},
            "critical": {"max": 0.3},
        },
        "display_config": {"unit": "score", "decimalPlaces": 2, "chartType": "gauge"},
    },
    {
        "metric_key": "team_engagement",
        "name": "Team Engagement Score",
        "description": "Activity across messages and issues relative to the expected level",
        "data_type": "number",
        "aggregation_type": "avg",
        "source_types": ["slack", "teams", "jira"],
        "calculation": {
            "source_fields": ["actorId"],
            "custom_strategy": CustomStrategy.ENGAGEMENT_SCORE.value,
        },
        "thresholds": {
            "excellent": {"min": 0.8},
            "good": {"min": 0.6},
            "warning": {"min": 0.4},
            "critical": {"max": 0.4},
        },
        "display_config": {"unit": "score", "decimalPlaces": 2, "chartType": "gauge"},
    },
)

MUTABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "category",
        "data_type",
        "aggregation_type",
        "source_types",
        "calculation",
        "thresholds",
        "display_config",
        "is_active",
    }
)


def validate_definition_fields(fields: Mapping[str, Any]) -> None:
    """Reject unknown aggregation types and custom strategy keys before they are stored."""

    aggregation = fields.get("aggregation_type")
    if aggregation is not None:
        try:
            AggregationType(aggregation)
        except ValueError:
            raise InvalidMetricDefinitionError(
                f"Unknown aggregation type '{aggregation}'"
            ) from None
    strategy = (fields.get("calculation") or {}).get("custom_strategy")
    if strategy:
        resolve_strategy(strategy)


class MetricRegistry:
    """Create, read, update, and delete metric definitions per tenant.

    Methods are blocking; async callers run them through ``asyncio.to_thread``.
    """

    def __init__(self, defaults: tuple[dict[str, Any], ...] = DEFAULT_METRICS) -> None:
        for definition in defaults:
            validate_definition_fields(definition)
        self._defaults = defaults

    def initialize_defaults(self, tenant_id: str) -> list[MetricDefinition]:
        """Insert the default definitions the tenant does not have yet."""

        created: list[MetricDefinition] = []
        with session_scope() as session:
            repository = MetricRepository(session)
            existing = repository.existing_keys(tenant_id)
            for template in self._defaults:
                if template["metric_key"] in existing:
                    continue
                created.append(
                    repository.add_definition(
                        MetricDefinition(
                            tenant_id=tenant_id,
                            category=DEFAULT_CATEGORY,
                            is_active=True,
                            is_custom=False,
                            **_copy_template(template),
                        )
                    )
                )
        if created:
            logger.info(
                "Initialized %s default metric(s)",
                len(created),
                extra={"tenant_id": tenant_id, "status": "success"},
            )
        return created

    def list_definitions(
        self, tenant_id: str, category: str | None = None
    ) -> list[MetricDefinition]:
        with session_scope() as session:
            return MetricRepository(session).list_definitions(tenant_id, category=category)

    def get(self, tenant_id: str, metric_key: str) -> MetricDefinition:
        with session_scope() as session:
            return MetricRepository(session).get_definition(tenant_id, metric_key)

    def create(self, tenant_id: str, fields: Mapping[str, Any]) -> MetricDefinition:
        metric_key = fields.get("metric_key")
        if not metric_key:
            raise InvalidMetricDefinitionError("metric_key is required")
        validate_definition_fields(fields)
        with session_scope() as session:
            repository = MetricRepository(session)
            if metric_key in repository.existing_keys(tenant_id):
                raise MetricAlreadyExistsError(
                    f"Metric '{metric_key}' already exists for tenant '{tenant_id}'"
                )
            values = {key: value for key, value in fields.items() if key in MUTABLE_FIELDS}
            values.setdefault("category", "custom")
            return repository.add_definition(
                MetricDefinition(
                    tenant_id=tenant_id, metric_key=metric_key, is_custom=True, **values
                )
            )

    def update(
        self, tenant_id: str, metric_key: str, updates: Mapping[str, Any]
    ) -> MetricDefinition:
        """Apply administrative edits; the key is immutable."""

        new_key = updates.get("metric_key")
        if new_key is not None and new_key != metric_key:
            raise InvalidMetricDefinitionError("metric_key cannot be changed")
        validate_definition_fields(updates)
        with session_scope() as session:
            definition = MetricRepository(session).get_definition(tenant_id, metric_key)
            for key, value in updates.items():
                if key in MUTABLE_FIELDS:
                    setattr(definition, key, value)
            session.flush()
            return definition

    def delete(self, tenant_id: str, metric_key: str) -> None:
        with session_scope() as session:
            repository = MetricRepository(session)
            definition = repository.get_definition(tenant_id, metric_key)
            if not definition.is_custom:
                raise InvalidMetricDefinitionError(
                    f"Metric '{metric_key}' is a default metric; deactivate it instead"
                )
            repository.delete_definition(definition)

    def tenants_with_active_definitions(self) -> list[str]:
        with session_scope() as session:
            return MetricRepository(session).tenants_with_active_definitions()


def _copy_template(template: Mapping[str, Any]) -> dict[str, Any]:
    # JSON columns must not share the module-level template dicts.
    return copy.deepcopy(dict(template))
