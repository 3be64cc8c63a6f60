"""Connector registry mapping vendors to their source API clients."""

from __future__ import annotations

import httpx

from ..exceptions import ConnectorNotFoundError
from ..models.connection import Connection
from ..utils.config import SyncSettings
from ..utils.retry import RetryConfig
from .base import SourceApiClient, Vendor
from .jira import JiraClient
from .servicenow import ServiceNowClient
from .slack import SlackClient
from .teams import TeamsClient


class ConnectorRegistry:
    """Resolve and build :class:`SourceApiClient` instances for a connection's vendor."""

    def __init__(
        self,
        sync_settings: SyncSettings,
        *,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._clients: dict[Vendor, type[SourceApiClient]] = {}
        self._sync_settings = sync_settings
        self._retry_config = retry_config
        self._transport = transport

    def register(self, vendor: Vendor | str, client_class: type[SourceApiClient]) -> None:
        """
        Register a client class for a vendor.

        Args:
            vendor: Vendor identifier
            client_class: SourceApiClient subclass handling that vendor
        """
        self._clients[Vendor(vendor)] = client_class

    def get(self, vendor: Vendor | str) -> type[SourceApiClient]:
        """
        Get the client class for a vendor.

        Raises:
            ConnectorNotFoundError: If no client is registered for the vendor
        """
        try:
            return self._clients[Vendor(vendor)]
        except (KeyError, ValueError):
            available = ", ".join(sorted(v.value for v in self._clients)) or "none"
            raise ConnectorNotFoundError(
                f"No connector registered for vendor '{vendor}'. Available connectors: {available}."
            ) from None

    def create(self, connection: Connection, access_token: str) -> SourceApiClient:
        client_class = self.get(connection.vendor)
        return client_class(
            connection,
            access_token,
            page_size=self._sync_settings.page_size,
            max_records=self._sync_settings.max_records_per_resource,
            timeout=self._sync_settings.request_timeout_seconds,
            retry_config=self._retry_config,
            transport=self._transport,
        )

    def vendors(self) -> list[str]:
        return [vendor.value for vendor in self._clients]


def build_default_registry(
    sync_settings: SyncSettings,
    *,
    retry_config: RetryConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ConnectorRegistry:
    """Return a registry with every built-in vendor connector registered."""

    registry = ConnectorRegistry(sync_settings, retry_config=retry_config, transport=transport)
    registry.register(Vendor.SERVICENOW, ServiceNowClient)
    registry.register(Vendor.JIRA, JiraClient)
    registry.register(Vendor.SLACK, SlackClient)
    registry.register(Vendor.TEAMS, TeamsClient)
    return registry


__all__ = [
    "ConnectorRegistry",
    "JiraClient",
    "ServiceNowClient",
    "SlackClient",
    "SourceApiClient",
    "TeamsClient",
    "Vendor",
    "build_default_registry",
]
