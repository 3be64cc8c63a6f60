"""OAuth authorize, callback, and revoke endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from ...connectors.base import Vendor
from ...container import ServiceContainer
from ...schemas.payload import AuthorizationResponse, ConnectionResponse
from ..dependencies import get_container, require_api_key, require_tenant

router = APIRouter()


@router.get(
    "/oauth/{vendor}/authorize",
    response_model=AuthorizationResponse,
    dependencies=[Depends(require_api_key)],
)
async def authorize(
    vendor: Vendor,
    instance_url: str = Query(..., description="Vendor instance the tenant is connecting"),
    name: str | None = Query(None, description="Display name for the connection"),
    redirect: bool = Query(False, description="Respond with a 307 to the consent page"),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> AuthorizationResponse | RedirectResponse:
    url = container.oauth.build_authorization_url(
        vendor, tenant_id=tenant_id, instance_url=instance_url, name=name
    )
    if redirect:
        return RedirectResponse(url)
    return AuthorizationResponse(authorization_url=url)


@router.get("/oauth/{vendor}/callback", response_model=ConnectionResponse)
async def callback(
    vendor: Vendor,
    code: str = Query(...),
    state: str = Query(...),
    container: ServiceContainer = Depends(get_container),
) -> ConnectionResponse:
    """
    Complete the vendor redirect.

    The browser arrives here without API credentials; the signed ``state`` carries the
    tenant and instance and is the only trust anchor.
    """
    connection = await container.oauth.complete_authorization(vendor, code=code, state=state)
    return ConnectionResponse.model_validate(connection)


@router.post(
    "/connections/{connection_id}/revoke",
    response_model=ConnectionResponse,
    dependencies=[Depends(require_api_key)],
)
async def revoke(
    connection_id: str,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> ConnectionResponse:
    connection = await container.oauth.revoke(tenant_id, connection_id)
    return ConnectionResponse.model_validate(connection)
