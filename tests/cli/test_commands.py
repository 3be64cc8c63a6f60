"""Tests for the operator CLI."""

from __future__ import annotations

import json

import httpx
import pytest
from click.testing import CliRunner

from opspulse.cli import main as cli_main
from opspulse.cli.main import cli
from opspulse.container import build_container
from opspulse.utils.config import get_settings


def _servicenow(request: httpx.Request) -> httpx.Response:
    table = request.url.path.rsplit("/", 1)[-1]
    incidents = [
        {
            "sys_id": "inc-1",
            "number": "INC0001",
            "opened_at": "2026-02-01 09:00:00",
            "sys_updated_on": "2026-02-01 09:30:00",
        }
    ]
    return httpx.Response(200, json={"result": incidents if table == "incident" else []})


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    """CLI runner whose container talks to a mocked ServiceNow instance."""

    monkeypatch.setattr(
        cli_main,
        "_container",
        lambda: build_container(get_settings(), transport=httpx.MockTransport(_servicenow)),
    )
    return CliRunner()


class TestSyncCommand:
    """Test suite for the sync command."""

    def test_sync_prints_summary(self, runner, make_connection):
        connection = make_connection()

        result = runner.invoke(cli, ["sync", connection.id, "--tenant", "tenant-a"])

        assert result.exit_code == 0, result.output
        assert "SYNC COMPLETED  (incremental)" in result.output
        assert "incident" in result.output

    def test_sync_json_output(self, runner, make_connection):
        connection = make_connection()

        result = runner.invoke(
            cli, ["sync", connection.id, "--tenant", "tenant-a", "--mode", "full", "--json"]
        )

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["status"] == "completed"
        assert payload["sync_type"] == "full"
        assert payload["entity_stats"]["incident"]["created"] == 1

    def test_sync_failure_exits_non_zero(self, runner, make_connection):
        connection = make_connection()

        result = runner.invoke(cli, ["sync", connection.id, "--tenant", "tenant-b"])

        assert result.exit_code == 1
        assert "ConnectionNotFoundError" in result.output


class TestAnalyticsCommands:
    """Test suite for metric and pulse commands."""

    def test_init_metrics(self, runner):
        first = runner.invoke(cli, ["init-metrics", "tenant-a"])
        second = runner.invoke(cli, ["init-metrics", "tenant-a"])

        assert first.output.strip() == "Created 9 metric definition(s) for tenant-a"
        assert second.output.strip() == "Created 0 metric definition(s) for tenant-a"

    def test_pulse_json(self, runner):
        runner.invoke(cli, ["init-metrics", "tenant-a"])

        result = runner.invoke(cli, ["pulse", "tenant-a", "--range", "7d", "--json"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["timeRange"] == "7d"
        assert len(payload["metrics"]) == 9

    def test_pulse_table(self, runner):
        runner.invoke(cli, ["init-metrics", "tenant-a"])

        result = runner.invoke(cli, ["pulse", "tenant-a"])

        assert result.exit_code == 0, result.output
        assert "Organizational pulse for tenant-a (1m)" in result.output
        assert "incident_resolution_time" in result.output

    def test_pulse_rejects_unknown_range(self, runner):
        result = runner.invoke(cli, ["pulse", "tenant-a", "--range", "2w"])

        assert result.exit_code == 2

    def test_warm_cache(self, runner):
        runner.invoke(cli, ["init-metrics", "tenant-a"])

        result = runner.invoke(cli, ["warm-cache"])

        assert result.exit_code == 0, result.output
        assert result.output.strip() == "Warmed 3 of 3 entries in 1 attempt(s)"
