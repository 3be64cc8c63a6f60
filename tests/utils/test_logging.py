"""Tests for structured logging helpers."""

from __future__ import annotations

import logging

import pytest

from opspulse.utils.logging import (
    DEFAULT_CONTEXT,
    LOG_FORMAT,
    ContextualFormatter,
    log_sync_attempt,
    setup_logger,
)


def test_formatter_fills_missing_context() -> None:
    """Records without structured fields render with placeholders."""

    formatter = ContextualFormatter(LOG_FORMAT, DEFAULT_CONTEXT)
    record = logging.LogRecord("opspulse.test", logging.INFO, __file__, 1, "hello", None, None)
    record.tenant_id = "tenant-a"

    rendered = formatter.format(record)

    assert "tenant_id=tenant-a" in rendered
    assert "connection_id=-" in rendered
    assert rendered.endswith("| hello")


def test_adapter_context_is_overridden_per_call(caplog: pytest.LogCaptureFixture) -> None:
    logger = setup_logger("opspulse.test.adapter", context={"vendor": "jira"})

    with caplog.at_level(logging.INFO, logger="opspulse.test.adapter"):
        logger.info("first")
        logger.info("second", extra={"vendor": "slack", "tenant_id": "tenant-a"})

    first, second = caplog.records
    assert first.vendor == "jira"
    assert first.tenant_id == "-"
    assert second.vendor == "slack"
    assert second.tenant_id == "tenant-a"


def test_log_sync_attempt_levels(caplog: pytest.LogCaptureFixture) -> None:
    """Completed runs log at INFO; anything else logs at ERROR with its context."""

    logger = setup_logger("opspulse.test.sync")
    common = {
        "tenant_id": "tenant-a",
        "connection_id": "conn-1",
        "vendor": "servicenow",
        "sync_type": "incremental",
        "duration_ms": 120,
    }

    with caplog.at_level(logging.INFO, logger="opspulse.test.sync"):
        log_sync_attempt(logger, status="completed", **common)
        log_sync_attempt(logger, status="failed", error_type="AuthenticationError", **common)

    completed, failed = caplog.records
    assert completed.levelno == logging.INFO
    assert completed.getMessage() == "Sync completed"
    assert completed.connection_id == "conn-1"
    assert failed.levelno == logging.ERROR
    assert "AuthenticationError" in failed.getMessage()
    assert failed.status == "failed"
