"""Async retry utilities for vendor HTTP calls."""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, cast

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

logger = logging.getLogger(__name__)


class RetryableStatusError(Exception):
    """Internal exception used to signal retryable HTTP status codes."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"Retryable HTTP status {response.status_code}")
        self.response = response


_RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.TransportError,
    RetryableStatusError,
)


class RetryConfig(BaseModel):
    """HTTP retry behaviour for a source API client.

    Disabled by default: a failed vendor call fails the sync run and recovery is
    left to the next scheduler tick. Enabling it only smooths over rate limiting
    within a single page request.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    max_attempts: int = Field(default=3, ge=1)
    backoff_factor: float = Field(default=0.5, gt=0)
    max_backoff: float | None = Field(default=10.0, gt=0)
    jitter: float = Field(default=0.0, ge=0)
    status_forcelist: list[int] = Field(default_factory=lambda: [429, 502, 503, 504])
    retry_on_methods: list[str] = Field(default_factory=lambda: ["GET"])
    respect_retry_after: bool = True

    @field_validator("retry_on_methods", mode="before")
    @classmethod
    def _coerce_methods(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple, set)):
            raise ValueError("retry_on_methods must be a sequence of HTTP methods")
        return [str(item).strip().upper() for item in value if str(item).strip()]

    def should_retry_method(self, method: str) -> bool:
        return method.upper() in self.retry_on_methods

    def should_retry_response(self, response: httpx.Response) -> bool:
        return response.status_code in self.status_forcelist


def _parse_retry_after(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    trimmed = value.strip()
    if trimmed.isdigit():
        return max(float(trimmed), 0.0)
    try:
        parsed = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return max((parsed - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _wait_strategy(config: RetryConfig) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        attempt_number = max(retry_state.attempt_number, 1)
        delay = config.backoff_factor * (2 ** (attempt_number - 1))
        if config.max_backoff is not None:
            delay = min(delay, config.max_backoff)

        outcome = retry_state.outcome
        if config.respect_retry_after and outcome is not None and outcome.failed:
            exception = outcome.exception()
            if isinstance(exception, RetryableStatusError):
                header_delay = _parse_retry_after(exception.response.headers.get("retry-after"))
                if header_delay is not None:
                    delay = max(delay, header_delay)

        if config.jitter > 0:
            delay += random.uniform(0, config.jitter)
        return max(delay, 0.0)

    return _wait


def _retry_error_callback(retry_state: RetryCallState) -> httpx.Response:
    outcome = retry_state.outcome
    if outcome is None:
        raise RuntimeError("Retry attempt completed without outcome")
    exception = outcome.exception()
    if isinstance(exception, RetryableStatusError):
        return exception.response
    if exception is not None:
        raise exception
    return cast(httpx.Response, outcome.result())


async def execute_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    method: str,
    retry_config: RetryConfig,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> httpx.Response:
    """Execute an HTTP request with retries according to the provided configuration.

    When retries are exhausted on a retryable status the last response is returned
    so the caller can map it to a domain error.
    """

    if not retry_config.enabled or retry_config.max_attempts <= 1:
        return await send()
    if not retry_config.should_retry_method(method):
        return await send()

    logger_to_use = log or logger
    if isinstance(logger_to_use, logging.LoggerAdapter):
        sleep_logger = cast(logging.Logger, logger_to_use.logger)
    else:
        sleep_logger = logger_to_use

    response: httpx.Response | None = None
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(retry_config.max_attempts),
        wait=_wait_strategy(retry_config),
        retry=retry_if_exception_type(_RETRYABLE_EXCEPTIONS),
        before_sleep=before_sleep_log(sleep_logger, logging.WARNING),
        reraise=False,
        retry_error_callback=_retry_error_callback,
    ):
        with attempt:
            response = await send()
            if retry_config.should_retry_response(response):
                raise RetryableStatusError(response)

    if response is None:
        raise RuntimeError("Retry loop exited without producing a response")
    return response
