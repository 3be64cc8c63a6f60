"""OAuth authorize, callback, and revoke flows for vendor connections."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any
from urllib.parse import urlencode

import httpx

from ..connectors.base import Vendor
from ..exceptions import AuthenticationError
from ..models.connection import Connection
from ..sync.stores import CredentialStore
from ..utils.config import GlobalSettings
from ..utils.logging import setup_logger
from .providers import OAuthTokenClient, TokenGrant, get_provider

logger = setup_logger(__name__)

ATLASSIAN_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
STATE_MAX_AGE_SECONDS = 15 * 60


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class OAuthService:
    """Builds authorization redirects and turns callbacks into persisted connections."""

    def __init__(
        self,
        credential_store: CredentialStore,
        token_client: OAuthTokenClient,
        settings: GlobalSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = credential_store
        self._token_client = token_client
        self._settings = settings
        self._transport = transport

    def encode_state(self, payload: dict[str, Any]) -> str:
        body = _b64encode(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode())
        signature = hmac.new(
            self._settings.oauth_state_secret.encode(), body.encode(), hashlib.sha256
        ).hexdigest()
        return f"{body}.{signature}"

    def decode_state(self, state: str) -> dict[str, Any]:
        body, _, signature = state.rpartition(".")
        expected = hmac.new(
            self._settings.oauth_state_secret.encode(), body.encode(), hashlib.sha256
        ).hexdigest()
        if not body or not hmac.compare_digest(signature, expected):
            raise AuthenticationError("OAuth state failed signature verification")
        try:
            payload = json.loads(_b64decode(body))
        except ValueError as exc:
            raise AuthenticationError("OAuth state is not valid encoded JSON") from exc
        if time.time() - float(payload.get("issued_at", 0)) > STATE_MAX_AGE_SECONDS:
            raise AuthenticationError("OAuth state has expired; restart the authorization flow")
        return payload

    def build_authorization_url(
        self,
        vendor: Vendor | str,
        *,
        tenant_id: str,
        instance_url: str,
        name: str | None = None,
    ) -> str:
        provider = get_provider(vendor)
        client = self._settings.oauth.for_vendor(provider.vendor.value)
        state = self.encode_state(
            {
                "tenant_id": tenant_id,
                "vendor": provider.vendor.value,
                "instance_url": instance_url.rstrip("/"),
                "name": name or instance_url,
                "nonce": secrets.token_urlsafe(16),
                "issued_at": int(time.time()),
            }
        )
        scopes = client.scopes or list(provider.default_scopes)
        params = {
            "response_type": "code",
            "client_id": client.client_id or "",
            "redirect_uri": client.redirect_uri or "",
            "scope": provider.scope_separator.join(scopes),
            "state": state,
            **provider.extra_authorize_params,
        }
        return f"{provider.resolve(provider.authorize_url, instance_url)}?{urlencode(params)}"

    async def complete_authorization(
        self, vendor: Vendor | str, *, code: str, state: str
    ) -> Connection:
        """Exchange the authorization code and upsert the tenant's connection."""

        provider = get_provider(vendor)
        payload = self.decode_state(state)
        if payload.get("vendor") != provider.vendor.value:
            raise AuthenticationError("OAuth state was issued for a different vendor")

        client = self._settings.oauth.for_vendor(provider.vendor.value)
        grant = await self._token_client.request_token(
            provider,
            client,
            instance_url=payload["instance_url"],
            grant={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": client.redirect_uri or "",
            },
        )
        metadata = dict(grant.metadata)
        if provider.vendor is Vendor.JIRA:
            metadata["cloud_id"] = await self._resolve_jira_cloud_id(grant, payload["instance_url"])

        connection = await asyncio.to_thread(
            self._store.upsert_from_oauth,
            tenant_id=payload["tenant_id"],
            vendor=provider.vendor.value,
            instance_url=payload["instance_url"],
            name=payload.get("name") or payload["instance_url"],
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=grant.expires_at,
            oauth_metadata=metadata,
        )
        logger.info(
            "OAuth authorization completed",
            extra={
                "tenant_id": connection.tenant_id,
                "connection_id": connection.id,
                "vendor": connection.vendor,
                "status": "success",
            },
        )
        return connection

    async def _resolve_jira_cloud_id(self, grant: TokenGrant, instance_url: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as http:
                response = await http.get(
                    ATLASSIAN_RESOURCES_URL,
                    headers={"Authorization": f"Bearer {grant.access_token}"},
                )
                response.raise_for_status()
                resources = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AuthenticationError(f"Unable to list Atlassian resources: {exc}") from exc

        if not resources:
            raise AuthenticationError("The Atlassian grant does not cover any Jira site")
        wanted = instance_url.rstrip("/")
        for resource in resources:
            if str(resource.get("url", "")).rstrip("/") == wanted:
                return str(resource["id"])
        return str(resources[0]["id"])

    async def revoke(self, tenant_id: str, connection_id: str) -> Connection:
        """Invalidate the remote token (best effort) and deactivate the connection."""

        connection = await asyncio.to_thread(self._store.get, tenant_id, connection_id)
        provider = get_provider(connection.vendor)
        token = connection.refresh_token or connection.access_token
        if token:
            try:
                await self._token_client.revoke(
                    provider,
                    self._settings.oauth.for_vendor(provider.vendor.value),
                    instance_url=connection.instance_url,
                    token=token,
                )
            except httpx.HTTPError as exc:
                logger.warning(
                    "Remote token revocation failed; deactivating locally: %s",
                    exc,
                    extra={
                        "tenant_id": tenant_id,
                        "connection_id": connection_id,
                        "vendor": connection.vendor,
                        "status": "warning",
                    },
                )
        return await asyncio.to_thread(self._store.deactivate, tenant_id, connection_id)
