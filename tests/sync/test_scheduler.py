"""Tests for the scheduled sync driver and due-connection selection."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from opspulse.exceptions import ConcurrencyConflictError
from opspulse.models.connection import Connection
from opspulse.models.sync_history import SyncType
from opspulse.sync.scheduler import ScheduledSyncDriver, is_due
from opspulse.sync.stores import CredentialStore


def _connection(**overrides) -> Connection:
    values = {
        "id": "conn-1",
        "tenant_id": "tenant-a",
        "vendor": "jira",
        "instance_url": "https://acme.atlassian.net",
        "name": "acme",
        "sync_interval_minutes": 30,
        "is_active": True,
        "requires_reauth": False,
        "last_successful_sync_at": None,
    }
    values.update(overrides)
    return Connection(**values)


class TestIsDue:
    """Test suite for the is_due predicate."""

    def test_never_synced_connection_is_due(self, fixed_now):
        """Connections without a successful sync are always due."""
        assert is_due(_connection(), fixed_now) is True

    def test_due_once_interval_elapsed(self, fixed_now):
        """A connection becomes due exactly when its interval has elapsed."""
        recent = _connection(last_successful_sync_at=fixed_now - timedelta(minutes=29))
        elapsed = _connection(last_successful_sync_at=fixed_now - timedelta(minutes=30))

        assert is_due(recent, fixed_now) is False
        assert is_due(elapsed, fixed_now) is True

    def test_inactive_or_reauth_connections_are_never_due(self, fixed_now):
        """Deactivated connections and ones needing reconnection are skipped."""
        assert is_due(_connection(is_active=False), fixed_now) is False
        assert is_due(_connection(requires_reauth=True), fixed_now) is False


class TestScheduledSyncDriver:
    """Test suite for ScheduledSyncDriver."""

    @pytest.mark.asyncio
    async def test_tick_launches_only_due_connections(self, make_connection, fixed_now):
        """A tick starts incremental syncs for due connections and ignores the rest."""
        store = CredentialStore()
        due = make_connection()
        fresh = make_connection(instance_url="https://fresh.service-now.com")
        store.record_sync_success(
            fresh.id, checkpoint=fixed_now - timedelta(minutes=5), records_synced=0
        )
        flagged = make_connection(instance_url="https://flagged.service-now.com")
        store.record_sync_failure(flagged.id, error="401", requires_reauth=True)

        orchestrator = Mock()
        orchestrator.run = AsyncMock(return_value=None)
        driver = ScheduledSyncDriver(store, orchestrator, clock=lambda: fixed_now)

        tasks = await driver.tick()
        await asyncio.gather(*tasks)

        assert len(tasks) == 1
        orchestrator.run.assert_awaited_once_with(due.id, "tenant-a", SyncType.INCREMENTAL)
        assert driver.in_flight == {}

    @pytest.mark.asyncio
    async def test_in_flight_connection_is_not_launched_twice(self, make_connection, fixed_now):
        """A slow sync keeps its connection out of subsequent ticks until it finishes."""
        make_connection()
        release = asyncio.Event()

        async def slow_run(*args, **kwargs):
            await release.wait()

        orchestrator = Mock()
        orchestrator.run = AsyncMock(side_effect=slow_run)
        driver = ScheduledSyncDriver(CredentialStore(), orchestrator, clock=lambda: fixed_now)

        first = await driver.tick()
        second = await driver.tick()

        assert len(first) == 1
        assert second == []
        assert len(driver.in_flight) == 1

        release.set()
        await asyncio.gather(*first)
        assert driver.in_flight == {}

    @pytest.mark.asyncio
    async def test_failed_scheduled_sync_does_not_break_driver(self, make_connection, fixed_now):
        """Errors from a launched sync are logged by the driver and never propagate."""
        make_connection()
        orchestrator = Mock()
        orchestrator.run = AsyncMock(side_effect=ConcurrencyConflictError("conn"))
        driver = ScheduledSyncDriver(CredentialStore(), orchestrator, clock=lambda: fixed_now)

        tasks = await driver.tick()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert isinstance(results[0], ConcurrencyConflictError)
        assert driver.in_flight == {}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, fixed_now):
        """The driver loop can be started and cancelled cleanly."""
        orchestrator = Mock()
        orchestrator.run = AsyncMock(return_value=None)
        driver = ScheduledSyncDriver(
            CredentialStore(), orchestrator, tick_seconds=60, clock=lambda: fixed_now
        )

        driver.start()
        await asyncio.sleep(0)
        assert driver.running is True

        await driver.stop()
        assert driver.running is False
