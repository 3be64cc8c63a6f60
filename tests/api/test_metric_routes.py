"""Tests for metric definition and metric value endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from opspulse.analytics.registry import DEFAULT_METRICS
from opspulse.models.repository import CanonicalRecordCreate
from opspulse.sync.stores import CanonicalStore

PERIOD = {"period_start": "2026-02-01T00:00:00Z", "period_end": "2026-03-01T00:00:00Z"}

P1_VOLUME = {
    "metric_key": "p1_volume",
    "name": "P1 Volume",
    "aggregation_type": "count",
    "source_types": ["servicenow"],
    "calculation": {"entity_type": "incident", "filters": {"priority": "1 - Critical"}},
}


@pytest.fixture
def seeded_incidents(make_connection) -> None:
    connection = make_connection()
    start = datetime(2026, 2, 1, tzinfo=timezone.utc)
    CanonicalStore().upsert_many(
        tenant_id="tenant-a",
        connection_id=connection.id,
        source="servicenow",
        records=[
            CanonicalRecordCreate(
                entity_type="incident",
                external_id=f"inc-{n}",
                occurred_at=start + timedelta(days=n),
                fields={"priority": "1 - Critical" if n % 2 else "3 - Moderate"},
            )
            for n in range(1, 5)
        ],
    )


class TestMetricDefinitionRoutes:
    """Test suite for metric definition CRUD."""

    def test_initialize_defaults_is_idempotent(self, client: TestClient, headers) -> None:
        first = client.post("/api/v1/metrics/initialize", headers=headers)
        second = client.post("/api/v1/metrics/initialize", headers=headers)

        assert first.status_code == 200
        assert len(first.json()) == len(DEFAULT_METRICS)
        assert second.json() == []

        listed = client.get("/api/v1/metrics", headers=headers).json()
        assert {item["metric_key"] for item in listed} == {
            metric["metric_key"] for metric in DEFAULT_METRICS
        }

    def test_create_update_and_delete_custom_metric(self, client: TestClient, headers) -> None:
        created = client.post("/api/v1/metrics", json=P1_VOLUME, headers=headers)

        assert created.status_code == 201
        assert created.json()["is_custom"] is True

        updated = client.patch(
            "/api/v1/metrics/p1_volume", json={"name": "Critical incidents"}, headers=headers
        )
        assert updated.json()["name"] == "Critical incidents"

        deleted = client.delete("/api/v1/metrics/p1_volume", headers=headers)
        assert deleted.status_code == 204
        missing = client.get("/api/v1/metrics/p1_volume", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error_type"] == "MetricNotFoundError"

    def test_duplicate_metric_is_conflict(self, client: TestClient, headers) -> None:
        client.post("/api/v1/metrics", json=P1_VOLUME, headers=headers)

        response = client.post("/api/v1/metrics", json=P1_VOLUME, headers=headers)

        assert response.status_code == 409
        assert response.json()["error_type"] == "MetricAlreadyExistsError"

    def test_invalid_definitions_are_rejected(self, client: TestClient, headers) -> None:
        """Unknown aggregations and strategies are 422; so is deleting a default."""
        client.post("/api/v1/metrics/initialize", headers=headers)

        bad_aggregation = client.post(
            "/api/v1/metrics",
            json={**P1_VOLUME, "aggregation_type": "p99"},
            headers=headers,
        )
        bad_strategy = client.post(
            "/api/v1/metrics",
            json={**P1_VOLUME, "calculation": {"custom_strategy": "mood"}},
            headers=headers,
        )
        delete_default = client.delete("/api/v1/metrics/mttr", headers=headers)

        assert bad_aggregation.status_code == 422
        assert bad_aggregation.json()["error_type"] == "InvalidMetricDefinitionError"
        assert bad_strategy.status_code == 422
        assert bad_strategy.json()["error_type"] == "UnknownStrategyError"
        assert delete_default.status_code == 422

    def test_metrics_are_tenant_scoped(self, client: TestClient, headers) -> None:
        client.post("/api/v1/metrics", json=P1_VOLUME, headers=headers)

        other = {**headers, "X-Tenant-ID": "tenant-b"}

        assert client.get("/api/v1/metrics/p1_volume", headers=other).status_code == 404
        assert client.get("/api/v1/metrics", headers=other).json() == []


class TestMetricValueRoutes:
    """Test suite for calculating and reading stored metric values."""

    def test_calculate_stores_value(self, client: TestClient, headers, seeded_incidents) -> None:
        client.post("/api/v1/metrics", json=P1_VOLUME, headers=headers)

        response = client.post(
            "/api/v1/metrics/p1_volume/calculate", json=PERIOD, headers=headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["value"] == 2.0
        assert body["granularity"] == "daily"
        assert body["calculation_metadata"]["dataPoints"] == 2

        values = client.get(
            "/api/v1/metrics/p1_volume/values",
            params={"start": PERIOD["period_start"], "end": PERIOD["period_end"]},
            headers=headers,
        )
        assert [item["id"] for item in values.json()] == [body["id"]]

    def test_recalculating_overwrites_the_period(
        self, client: TestClient, headers, seeded_incidents
    ) -> None:
        client.post("/api/v1/metrics", json=P1_VOLUME, headers=headers)

        first = client.post("/api/v1/metrics/p1_volume/calculate", json=PERIOD, headers=headers)
        second = client.post("/api/v1/metrics/p1_volume/calculate", json=PERIOD, headers=headers)

        assert first.json()["id"] == second.json()["id"]

    def test_period_must_move_forward(self, client: TestClient, headers) -> None:
        client.post("/api/v1/metrics", json=P1_VOLUME, headers=headers)
        backwards = {
            "period_start": PERIOD["period_end"],
            "period_end": PERIOD["period_start"],
        }

        calculate = client.post(
            "/api/v1/metrics/p1_volume/calculate", json=backwards, headers=headers
        )
        values = client.get(
            "/api/v1/metrics/p1_volume/values",
            params={"start": PERIOD["period_start"], "end": PERIOD["period_start"]},
            headers=headers,
        )

        assert calculate.status_code == 422
        assert values.status_code == 422

    def test_calculating_unknown_metric_is_not_found(self, client: TestClient, headers) -> None:
        response = client.post("/api/v1/metrics/nope/calculate", json=PERIOD, headers=headers)

        assert response.status_code == 404
