"""Tests for the organizational pulse and business impact endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from opspulse.models.repository import CanonicalRecordCreate
from opspulse.sync.stores import CanonicalStore


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
                occurred_at=datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc),
                fields={"priority": "1 - Critical", "durationMinutes": 90.0},
            )
        ],
    )


class TestPulseRoutes:
    """Test suite for the cached pulse dashboard."""

    def test_pulse_payload_is_cached(self, client: TestClient, headers) -> None:
        """A second request is served from the cache until invalidated."""
        client.post("/api/v1/metrics/initialize", headers=headers)

        first = client.get("/api/v1/dashboard/pulse", params={"time_range": "3m"}, headers=headers)
        second = client.get(
            "/api/v1/dashboard/pulse", params={"time_range": "3m"}, headers=headers
        )

        assert first.status_code == 200
        body = first.json()
        assert body["tenantId"] == "tenant-a"
        assert body["timeRange"] == "3m"
        assert body["overallHealth"]["totalMetrics"] == 9
        assert second.json()["generatedAt"] == body["generatedAt"]

        invalidated = client.post(
            "/api/v1/dashboard/pulse/invalidate", params={"time_range": "3m"}, headers=headers
        )
        assert invalidated.json() == {"status": "success", "invalidated": 1}

    def test_unknown_time_range_is_rejected(self, client: TestClient, headers) -> None:
        response = client.get(
            "/api/v1/dashboard/pulse", params={"time_range": "2w"}, headers=headers
        )

        assert response.status_code == 422

    def test_recording_an_impact_refreshes_the_pulse(self, client: TestClient, headers) -> None:
        """New impacts invalidate the tenant's cached payloads."""
        before = client.get("/api/v1/dashboard/pulse", headers=headers).json()

        created = client.post(
            "/api/v1/dashboard/business-impact",
            json={"source_type": "jira", "source_id": "OPS-1", "duration_minutes": 30},
            headers=headers,
        )
        after = client.get("/api/v1/dashboard/pulse", headers=headers).json()

        assert created.status_code == 201
        assert before["businessEscalations"]["totalCount"] == 0
        assert after["businessEscalations"]["totalCount"] == 1
        assert after["businessEscalations"]["totalHoursLost"] == 0.5


class TestBusinessImpactRoutes:
    """Test suite for business impact records."""

    def test_record_list_get_and_estimate(
        self, client: TestClient, headers, seeded_incident
    ) -> None:
        created = client.post(
            "/api/v1/dashboard/business-impact",
            json={
                "source_type": "servicenow",
                "source_id": "inc-1",
                "revenue_per_hour": 40000,
                "customers_affected": 10,
            },
            headers=headers,
        )

        assert created.status_code == 201
        impact = created.json()
        assert impact["impact_type"] == "incident"
        assert impact["duration_minutes"] == 90
        assert impact["estimated_revenue_loss"] == 60000.0
        assert impact["severity"] == "high"

        listed = client.get(
            "/api/v1/dashboard/business-impact", params={"severity": "high"}, headers=headers
        )
        assert [item["id"] for item in listed.json()] == [impact["id"]]

        fetched = client.get(f"/api/v1/dashboard/business-impact/{impact['id']}", headers=headers)
        assert fetched.json()["source_id"] == "inc-1"

        estimated = client.post(
            f"/api/v1/dashboard/business-impact/{impact['id']}/estimate",
            json={"include_reputation_impact": False},
            headers=headers,
        )
        breakdown = estimated.json()["loss_estimation"]
        assert breakdown["calculationMethod"] == "comprehensive_estimation"
        assert breakdown["reputationImpact"] == 0.0

    def test_impacts_are_tenant_scoped(self, client: TestClient, headers) -> None:
        created = client.post(
            "/api/v1/dashboard/business-impact",
            json={"source_type": "jira", "source_id": "OPS-1"},
            headers=headers,
        ).json()
        other = {**headers, "X-Tenant-ID": "tenant-b"}

        response = client.get(f"/api/v1/dashboard/business-impact/{created['id']}", headers=other)

        assert response.status_code == 404
        assert response.json()["error_type"] == "ImpactNotFoundError"

    def test_summary(self, client: TestClient, headers, seeded_incident) -> None:
        client.post(
            "/api/v1/dashboard/business-impact",
            json={"source_type": "servicenow", "source_id": "inc-1", "revenue_per_hour": 40000},
            headers=headers,
        )

        summary = client.get("/api/v1/dashboard/business-impact/summary", headers=headers).json()

        assert summary["count"] == 1
        assert summary["total"] == 60000.0
        assert summary["hoursLost"] == 1.5
