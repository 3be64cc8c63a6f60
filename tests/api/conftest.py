"""Shared fixtures for the HTTP API tests."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from opspulse.api.main import app
from opspulse.utils.config import get_settings


class VendorStub:
    """Serves ServiceNow tables and the OAuth token endpoint for every connector call."""

    def __init__(self) -> None:
        self.incidents: list[dict[str, Any]] = [
            {
                "sys_id": "inc-1",
                "number": "INC0001",
                "priority": "1 - Critical",
                "opened_at": "2026-02-01 09:00:00",
                "resolved_at": "2026-02-01 10:30:00",
                "sys_updated_on": "2026-02-01 10:30:00",
            },
            {
                "sys_id": "inc-2",
                "number": "INC0002",
                "opened_at": "2026-02-02 08:00:00",
                "sys_updated_on": "2026-02-02 08:15:00",
            },
        ]
        self.table_status = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/oauth_token.do"):
            return httpx.Response(
                200,
                json={
                    "access_token": "granted-token",
                    "refresh_token": "granted-refresh",
                    "expires_in": 3600,
                },
            )
        if self.table_status != 200:
            return httpx.Response(self.table_status, json={"error": "stubbed"})
        table = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(
            200, json={"result": self.incidents if table == "incident" else []}
        )


@pytest.fixture
def vendor() -> VendorStub:
    return VendorStub()


@pytest.fixture(name="client")
def client_fixture(monkeypatch: pytest.MonkeyPatch, vendor: VendorStub) -> Iterator[TestClient]:
    """Provide a FastAPI test client whose vendor calls are served by ``vendor``."""

    monkeypatch.setenv("OPSPULSE_OAUTH__SERVICENOW__CLIENT_ID", "client-id")
    monkeypatch.setenv("OPSPULSE_OAUTH__SERVICENOW__CLIENT_SECRET", "client-secret")
    monkeypatch.setenv(
        "OPSPULSE_OAUTH__SERVICENOW__REDIRECT_URI", "https://opspulse.test/callback"
    )
    get_settings.cache_clear()

    app.state.http_transport = httpx.MockTransport(vendor)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        del app.state.http_transport

    get_settings.cache_clear()


@pytest.fixture
def headers() -> dict[str, str]:
    return {"X-API-Key": "test-key", "X-Tenant-ID": "tenant-a"}
