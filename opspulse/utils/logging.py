"""Logging configuration for OpsPulse."""

from __future__ import annotations

import logging
import sys
from threading import Lock
from typing import Any, Final

from .config import get_settings

# Pipe-separated format with structured context placeholders.
LOG_FORMAT: Final[str] = (
    "%(asctime)s | %(levelname)s | %(name)s | "
    "tenant_id=%(tenant_id)s | connection_id=%(connection_id)s | vendor=%(vendor)s | "
    "sync_type=%(sync_type)s | status=%(status)s | duration_ms=%(duration_ms)s | %(message)s"
)

DEFAULT_CONTEXT: Final[dict[str, str]] = {
    "tenant_id": "-",
    "connection_id": "-",
    "vendor": "-",
    "sync_type": "-",
    "status": "-",
    "duration_ms": "-",
}

_LOG_CONFIGURED = False
_CONFIG_LOCK: Final = Lock()


class ContextualFormatter(logging.Formatter):
    """Formatter that injects default structured context fields when absent."""

    def __init__(self, fmt: str, defaults: dict[str, str] | None = None) -> None:
        super().__init__(fmt)
        self._defaults = defaults or {}

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        for key, value in self._defaults.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return super().format(record)


def _configure_root_logger() -> None:
    """Configure the root logger exactly once based on global settings."""

    global _LOG_CONFIGURED
    with _CONFIG_LOCK:
        if _LOG_CONFIGURED:
            return

        settings = get_settings()
        resolved_level = getattr(logging, settings.log_level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(resolved_level)

        formatter = ContextualFormatter(LOG_FORMAT, DEFAULT_CONTEXT)

        if not root_logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setLevel(resolved_level)
            handler.setFormatter(formatter)
            root_logger.addHandler(handler)
        else:
            for handler in root_logger.handlers:
                handler.setFormatter(formatter)

        _LOG_CONFIGURED = True


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that lets per-call extras override defaults."""

    def process(  # type: ignore[override]
        self, msg: str, kwargs: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logger(
    name: str,
    *,
    level: str | None = None,
    context: dict[str, Any] | None = None,
) -> logging.LoggerAdapter:
    """Return a logger configured with the global logging defaults.

    Args:
        name: Logger name to retrieve.
        level: Optional log level override (primarily for tests).
        context: Optional default structured context to include with every entry.

    Returns:
        LoggerAdapter injecting structured defaults for consistent formatting.
    """

    _configure_root_logger()
    logger = logging.getLogger(name)

    if level is not None:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    else:
        logger.setLevel(logging.NOTSET)

    adapter_context: dict[str, Any] = dict(DEFAULT_CONTEXT)
    if context:
        adapter_context.update(context)

    return StructuredLoggerAdapter(logger, adapter_context)


def log_sync_attempt(
    logger: logging.Logger | logging.LoggerAdapter,
    *,
    tenant_id: str,
    connection_id: str,
    vendor: str,
    sync_type: str,
    duration_ms: int,
    status: str,
    **extra_context: Any,
) -> None:
    """
    Log the outcome of a connector sync run with structured context.

    Args:
        logger: Logger instance
        tenant_id: Tenant owning the connection
        connection_id: Connection that was synchronized
        vendor: Vendor of the connection
        sync_type: full or incremental
        duration_ms: Run duration in milliseconds
        status: Terminal status (completed, failed, ...)
        **extra_context: Additional context (counters, error type) appended to the message
    """
    structured_context: dict[str, Any] = {
        "tenant_id": tenant_id,
        "connection_id": connection_id,
        "vendor": vendor,
        "sync_type": sync_type,
        "duration_ms": duration_ms,
        "status": status,
    }
    suffix = f" | context={extra_context}" if extra_context else ""
    log_method = logger.info if status.lower() == "completed" else logger.error
    log_method(f"Sync {status}{suffix}", extra=structured_context)
