"""Pytest configuration - no path manipulation, rely on proper package installation."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from opspulse.models.base import reset_engine
from opspulse.models.connection import Connection
from opspulse.sync.stores import CredentialStore
from opspulse.utils.config import get_settings

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture(autouse=True)
def _isolated_runtime(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[None]:
    """Give every test its own sqlite database and background-free settings."""

    db_path = tmp_path_factory.mktemp("sqlite-db") / "opspulse.sqlite"
    monkeypatch.setenv("OPSPULSE_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("OPSPULSE_API_KEYS", '["test-key"]')
    monkeypatch.setenv("OPSPULSE_CONFIG_DIR", str(CONFIG_DIR))
    monkeypatch.setenv("OPSPULSE_OAUTH_STATE_SECRET", "test-state-secret")
    monkeypatch.setenv("OPSPULSE_SYNC__SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("OPSPULSE_PULSE_CACHE__WARMUP_ENABLED", "false")
    monkeypatch.delenv("OPSPULSE_ENVIRONMENT", raising=False)
    monkeypatch.delenv("OPSPULSE_CONFIG_PROFILE", raising=False)

    get_settings.cache_clear()
    reset_engine()
    yield
    reset_engine()
    get_settings.cache_clear()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_connection() -> Callable[..., Connection]:
    """Factory persisting a connection with a non-expiring access token."""

    def _make(**overrides: Any) -> Connection:
        values: dict[str, Any] = {
            "tenant_id": "tenant-a",
            "vendor": "servicenow",
            "instance_url": "https://acme.service-now.com",
            "access_token": "access-token",
            "refresh_token": None,
            "token_expires_at": None,
        }
        values.update(overrides)
        return CredentialStore().create(**values)

    return _make
