"""OAuth endpoint definitions and the token endpoint client shared by auth services."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..connectors.base import Vendor
from ..exceptions import AuthenticationError, ConfigurationError
from ..utils.config import OAuthClientSettings


@dataclass(frozen=True, slots=True)
class OAuthProvider:
    """Authorize/token/revoke endpoints for one vendor; ``{instance}`` is substituted."""

    vendor: Vendor
    authorize_url: str
    token_url: str
    revoke_url: str | None = None
    default_scopes: tuple[str, ...] = ()
    scope_separator: str = " "
    json_token_body: bool = False
    extra_authorize_params: Mapping[str, str] = field(default_factory=dict)

    def resolve(self, template: str, instance_url: str) -> str:
        return template.format(instance=instance_url.rstrip("/"))


PROVIDERS: dict[Vendor, OAuthProvider] = {
    Vendor.SERVICENOW: OAuthProvider(
        vendor=Vendor.SERVICENOW,
        authorize_url="{instance}/oauth_auth.do",
        token_url="{instance}/oauth_token.do",
        revoke_url="{instance}/oauth_revoke_token.do",
        default_scopes=("useraccount", "user_impersonation"),
    ),
    Vendor.JIRA: OAuthProvider(
        vendor=Vendor.JIRA,
        authorize_url="https://auth.atlassian.com/authorize",
        token_url="https://auth.atlassian.com/oauth/token",
        default_scopes=("read:jira-work", "read:jira-user", "offline_access"),
        json_token_body=True,
        extra_authorize_params={"audience": "api.atlassian.com", "prompt": "consent"},
    ),
    Vendor.SLACK: OAuthProvider(
        vendor=Vendor.SLACK,
        authorize_url="https://slack.com/oauth/v2/authorize",
        token_url="https://slack.com/api/oauth.v2.access",
        revoke_url="https://slack.com/api/auth.revoke",
        default_scopes=("channels:history", "channels:read", "groups:history", "groups:read"),
        scope_separator=",",
    ),
    Vendor.TEAMS: OAuthProvider(
        vendor=Vendor.TEAMS,
        authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        default_scopes=(
            "offline_access",
            "Team.ReadBasic.All",
            "Channel.ReadBasic.All",
            "ChannelMessage.Read.All",
        ),
    ),
}


def get_provider(vendor: Vendor | str) -> OAuthProvider:
    try:
        return PROVIDERS[Vendor(vendor)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"No OAuth provider configured for vendor '{vendor}'") from None


@dataclass(slots=True)
class TokenGrant:
    """Credentials returned by a vendor token endpoint."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    metadata: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, now: datetime) -> TokenGrant:
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthenticationError("Token endpoint response did not include an access_token")
        expires_in = payload.get("expires_in")
        try:
            expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
        except (TypeError, ValueError):
            expires_at = None
        metadata = {
            key: value
            for key, value in payload.items()
            if key not in {"access_token", "refresh_token", "id_token"}
        }
        return cls(
            access_token=str(access_token),
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            metadata=metadata,
        )


class OAuthTokenClient:
    """POSTs grants to a vendor token endpoint and maps every failure to AuthenticationError."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def request_token(
        self,
        provider: OAuthProvider,
        client: OAuthClientSettings,
        *,
        instance_url: str,
        grant: Mapping[str, str],
    ) -> TokenGrant:
        if not client.client_id or not client.client_secret:
            raise ConfigurationError(
                f"OAuth client credentials missing for {provider.vendor.value}"
            )

        body = {**grant, "client_id": client.client_id, "client_secret": client.client_secret}
        url = provider.resolve(provider.token_url, instance_url)
        requested_at = datetime.now(timezone.utc)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
                if provider.json_token_body:
                    response = await http.post(url, json=body)
                else:
                    response = await http.post(url, data=body)
        except httpx.HTTPError as exc:
            raise AuthenticationError(
                f"{provider.vendor.value} token endpoint unreachable: {exc}"
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400 or not isinstance(payload, dict):
            detail = None
            if isinstance(payload, dict):
                detail = payload.get("error_description") or payload.get("error")
            raise AuthenticationError(
                f"{provider.vendor.value} token request failed with HTTP {response.status_code}"
                + (f": {detail}" if detail else "")
            )
        if payload.get("error") or payload.get("ok") is False:
            raise AuthenticationError(
                f"{provider.vendor.value} token request rejected: "
                f"{payload.get('error_description') or payload.get('error')}"
            )
        return TokenGrant.from_payload(payload, now=requested_at)

    async def revoke(
        self,
        provider: OAuthProvider,
        client: OAuthClientSettings,
        *,
        instance_url: str,
        token: str,
    ) -> None:
        """Invalidate a token remotely; raises ``httpx.HTTPError`` on failure."""

        if provider.revoke_url is None:
            return
        url = provider.resolve(provider.revoke_url, instance_url)
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
            if provider.vendor is Vendor.SLACK:
                response = await http.post(url, headers={"Authorization": f"Bearer {token}"})
            else:
                response = await http.post(
                    url,
                    data={
                        "token": token,
                        "client_id": client.client_id or "",
                        "client_secret": client.client_secret or "",
                    },
                )
            response.raise_for_status()
