"""Manual sync trigger and sync history endpoints."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Query

from ...container import ServiceContainer
from ...models.sync_history import SyncType
from ...schemas.payload import ConnectionResponse, SyncHistoryResponse
from ..dependencies import get_container, require_api_key, require_tenant

router = APIRouter(dependencies=[Depends(require_api_key)])


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> ConnectionResponse:
    connection = await asyncio.to_thread(
        container.credential_store.get, tenant_id, connection_id
    )
    return ConnectionResponse.model_validate(connection)


@router.post("/connections/{connection_id}/sync", response_model=SyncHistoryResponse)
async def trigger_sync(
    connection_id: str,
    mode: SyncType = Query(SyncType.INCREMENTAL, description="'full' or 'incremental'"),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> SyncHistoryResponse:
    """
    Run a sync for the connection and return its history record.

    A run already in progress for the connection yields 409 without touching it.
    """
    record = await container.orchestrator.run(connection_id, tenant_id, mode)
    await container.pulse_cache.invalidate(tenant_id)
    return SyncHistoryResponse.model_validate(record)


@router.get(
    "/connections/{connection_id}/sync-history", response_model=list[SyncHistoryResponse]
)
async def sync_history(
    connection_id: str,
    limit: int = Query(10, ge=1, le=100),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> list[SyncHistoryResponse]:
    records = await asyncio.to_thread(
        container.history_store.list_history, tenant_id, connection_id, limit
    )
    return [SyncHistoryResponse.model_validate(record) for record in records]
