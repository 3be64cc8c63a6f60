"""Base class for vendor REST clients used by the sync engine."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, ClassVar

import httpx

from ..exceptions import (
    AuthenticationError,
    DataIntegrityError,
    SourceApiError,
    TransientNetworkError,
)
from ..models.connection import Connection
from ..models.repository import CanonicalRecordCreate
from ..utils.logging import setup_logger
from ..utils.retry import RetryConfig, execute_with_retry

logger = setup_logger(__name__)


class Vendor(str, enum.Enum):
    SERVICENOW = "servicenow"
    JIRA = "jira"
    SLACK = "slack"
    TEAMS = "teams"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse vendor timestamps (ISO-8601, ``YYYY-MM-DD HH:MM:SS`` or epoch seconds) as UTC."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromtimestamp(float(text), tz=timezone.utc)
        except ValueError:
            if text.endswith("Z"):
                text = f"{text[:-1]}+00:00"
            # Jira emits offsets without a colon, e.g. +0000
            if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
                text = f"{text[:-2]}:{text[-2:]}"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def minutes_between(start: datetime | None, end: datetime | None) -> float | None:
    if start is None or end is None:
        return None
    return round((end - start).total_seconds() / 60, 2)


def require(raw: Mapping[str, Any], key: str, *, entity_type: str) -> Any:
    """Return ``raw[key]`` or raise :class:`DataIntegrityError` when it is missing."""

    value = raw.get(key)
    if value in (None, ""):
        raise DataIntegrityError(f"{entity_type} record is missing required field '{key}'")
    return value


class SourceApiClient(ABC):
    """
    Paginated, filtered fetch over one external system's REST surface.

    Subclasses implement :meth:`fetch_pages` (yielding lists of raw vendor
    records) and :meth:`normalize` (turning one raw record into a canonical
    record). HTTP failures are mapped to the domain error hierarchy here so the
    orchestrator never sees transport-level exceptions.

    A resource that stops at ``max_records`` while the vendor still has more data
    is added to :attr:`truncated`. Clients whose pages arrive in ascending
    update order set ``ordered_by_update`` so a capped run can resume from the
    newest record it stored.
    """

    vendor: ClassVar[Vendor]
    default_resources: ClassVar[tuple[str, ...]] = ()
    ordered_by_update: ClassVar[bool] = False

    def __init__(
        self,
        connection: Connection,
        access_token: str,
        *,
        page_size: int = 100,
        max_records: int = 1000,
        timeout: float = 30.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.connection = connection
        self.access_token = access_token
        self.page_size = page_size
        self.max_records = max_records
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.truncated: set[str] = set()
        self.log = setup_logger(
            f"{__name__}.{self.vendor.value}",
            context={"vendor": self.vendor.value, "connection_id": connection.id},
        )

    async def __aenter__(self) -> SourceApiClient:
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers=self.default_headers(),
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def default_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"}

    def resources(self) -> list[str]:
        """Resource tables to sync: the connection's filter list or the vendor defaults."""

        return list(self.connection.resource_filters or self.default_resources)

    def query_filter(self, key: str) -> Any:
        return (self.connection.query_filters or {}).get(key)

    def mark_truncated(self, resource: str) -> None:
        self.truncated.add(resource)
        self.log.warning(
            "Stopped reading %s at the %s record cap; remaining records wait for the next run",
            resource,
            self.max_records,
            extra={"status": "truncated"},
        )

    @abstractmethod
    def fetch_pages(
        self, resource: str, *, updated_after: datetime | None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield pages of raw records for ``resource`` updated after the cursor (if any)."""

    @abstractmethod
    def normalize(self, resource: str, raw: Mapping[str, Any]) -> CanonicalRecordCreate:
        """Map a raw vendor record to a canonical record or raise DataIntegrityError."""

    async def get_json(self, url: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Issue a GET request and return the decoded JSON object body."""

        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} must be used as an async context manager")

        client = self._client

        async def _send() -> httpx.Response:
            return await client.get(url, params=params)

        try:
            response = await execute_with_retry(
                _send, method="GET", retry_config=self.retry_config, log=self.log
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{self.vendor.value} request timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{self.vendor.value} request failed: {exc}") from exc

        self.raise_for_status(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceApiError(
                f"{self.vendor.value} returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise SourceApiError(
                f"{self.vendor.value} returned an unexpected payload shape",
                status_code=response.status_code,
            )
        return payload

    def raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        message = f"{self.vendor.value} API responded with HTTP {status} for {response.request.url}"
        if status in (401, 403):
            raise AuthenticationError(message, connection_id=self.connection.id)
        if status == 429 or status >= 500:
            raise TransientNetworkError(message, status_code=status)
        raise SourceApiError(message, status_code=status)
