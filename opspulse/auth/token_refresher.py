"""Ensures a connection's access token is valid before it is used."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from ..exceptions import AuthenticationError, ConfigurationError
from ..models.connection import Connection
from ..monitoring.metrics import record_token_refresh
from ..sync.stores import CredentialStore
from ..utils.config import VendorOAuthSettings
from ..utils.logging import setup_logger
from .providers import OAuthTokenClient, get_provider

logger = setup_logger(__name__)


class TokenRefresher:
    """Refreshes OAuth access tokens that are expired or within the safety margin.

    The connection passed to :meth:`ensure_valid` is only mutated after the vendor
    accepted the refresh and the new credentials were persisted.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        token_client: OAuthTokenClient,
        oauth_settings: VendorOAuthSettings,
        *,
        margin_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = credential_store
        self._token_client = token_client
        self._oauth_settings = oauth_settings
        self._margin = timedelta(seconds=margin_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}

    def needs_refresh(self, connection: Connection) -> bool:
        if connection.token_expires_at is None:
            return False
        return connection.token_expires_at - self._clock() < self._margin

    async def ensure_valid(self, connection: Connection) -> str:
        """Return a usable access token, refreshing it first when close to expiry.

        Raises:
            AuthenticationError: When there is no token, the token is expired with no
                refresh credential, or the vendor rejects the refresh.
        """

        if not connection.access_token:
            raise AuthenticationError(
                f"Connection '{connection.id}' has no access token; reconnect required",
                connection_id=connection.id,
            )
        if not self.needs_refresh(connection):
            return connection.access_token

        if not connection.refresh_token:
            expires_at = connection.token_expires_at
            if expires_at is not None and expires_at <= self._clock():
                raise AuthenticationError(
                    f"Access token for connection '{connection.id}' expired at "
                    f"{expires_at.isoformat()} and no refresh token is available",
                    connection_id=connection.id,
                )
            return connection.access_token

        lock = self._locks.setdefault(connection.id, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed (and rotated) the stored credentials
            # while we waited, possibly through a different Connection instance.
            latest = await asyncio.to_thread(
                self._store.get, connection.tenant_id, connection.id
            )
            connection.access_token = latest.access_token
            connection.refresh_token = latest.refresh_token
            connection.token_expires_at = latest.token_expires_at
            if connection.access_token and not self.needs_refresh(connection):
                return connection.access_token
            if not connection.refresh_token:
                raise AuthenticationError(
                    f"Connection '{connection.id}' lost its refresh token; reconnect required",
                    connection_id=connection.id,
                )
            return await self._refresh(connection)

    async def _refresh(self, connection: Connection) -> str:
        provider = get_provider(connection.vendor)
        client_settings = self._oauth_settings.for_vendor(connection.vendor)
        try:
            grant = await self._token_client.request_token(
                provider,
                client_settings,
                instance_url=connection.instance_url,
                grant={
                    "grant_type": "refresh_token",
                    "refresh_token": connection.refresh_token or "",
                },
            )
        except (AuthenticationError, ConfigurationError) as exc:
            record_token_refresh(connection.vendor, "failure")
            logger.warning(
                "Token refresh failed: %s",
                exc,
                extra={
                    "tenant_id": connection.tenant_id,
                    "connection_id": connection.id,
                    "vendor": connection.vendor,
                    "status": "error",
                },
            )
            raise AuthenticationError(
                f"Token refresh failed for connection '{connection.id}': {exc}",
                connection_id=connection.id,
            ) from exc

        updated = await asyncio.to_thread(
            self._store.update_credentials,
            connection.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=grant.expires_at,
        )
        connection.access_token = updated.access_token
        connection.refresh_token = updated.refresh_token
        connection.token_expires_at = updated.token_expires_at
        record_token_refresh(connection.vendor, "success")
        logger.info(
            "Refreshed access token",
            extra={
                "tenant_id": connection.tenant_id,
                "connection_id": connection.id,
                "vendor": connection.vendor,
                "status": "success",
            },
        )
        return grant.access_token
