"""Organizational pulse and business impact endpoints."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status

from ...analytics.pulse import TimeRange
from ...container import ServiceContainer
from ...schemas.payload import BusinessImpactCreate, BusinessImpactResponse, EstimateRequest
from ..dependencies import get_container, require_api_key, require_tenant

router = APIRouter(prefix="/dashboard", dependencies=[Depends(require_api_key)])


@router.get("/pulse")
async def organizational_pulse(
    time_range: TimeRange = Query(TimeRange.LAST_MONTH),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Pulse payload for the tenant, served from cache and recomputed on a miss."""

    return await container.pulse_cache.get_or_compute(tenant_id, time_range)


@router.post("/pulse/invalidate")
async def invalidate_pulse(
    time_range: TimeRange | None = Query(None),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    removed = await container.pulse_cache.invalidate(tenant_id, time_range)
    return {"status": "success", "invalidated": removed}


@router.get("/business-impact/summary")
async def business_impact_summary(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    return await asyncio.to_thread(container.estimator.summarize, tenant_id, start, end)


@router.get("/business-impact", response_model=list[BusinessImpactResponse])
async def list_business_impacts(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    severity: str | None = Query(None),
    source_type: str | None = Query(None),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> list[BusinessImpactResponse]:
    impacts = await asyncio.to_thread(
        container.estimator.list_impacts,
        tenant_id,
        start=start,
        end=end,
        severity=severity,
        source_type=source_type,
    )
    return [BusinessImpactResponse.model_validate(impact) for impact in impacts]


@router.post(
    "/business-impact",
    response_model=BusinessImpactResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_business_impact(
    request: BusinessImpactCreate,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> BusinessImpactResponse:
    impact = await asyncio.to_thread(
        container.estimator.record_from_source,
        tenant_id,
        request.source_type,
        request.source_id,
        revenue_per_hour=request.revenue_per_hour,
        duration_minutes=request.duration_minutes,
        customers_affected=request.customers_affected,
        affected_services=request.affected_services,
        recurring_impact=request.recurring_impact,
    )
    await container.pulse_cache.invalidate(tenant_id)
    return BusinessImpactResponse.model_validate(impact)


@router.get("/business-impact/{impact_id}", response_model=BusinessImpactResponse)
async def get_business_impact(
    impact_id: str,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> BusinessImpactResponse:
    impact = await asyncio.to_thread(container.estimator.get, tenant_id, impact_id)
    return BusinessImpactResponse.model_validate(impact)


@router.post("/business-impact/{impact_id}/estimate", response_model=BusinessImpactResponse)
async def estimate_business_impact(
    impact_id: str,
    request: EstimateRequest | None = None,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> BusinessImpactResponse:
    """Recompute the loss breakdown and confidence for an existing impact record."""

    options = request or EstimateRequest()
    impact = await asyncio.to_thread(
        container.estimator.estimate,
        tenant_id,
        impact_id,
        include_opportunity_cost=options.include_opportunity_cost,
        include_reputation_impact=options.include_reputation_impact,
    )
    return BusinessImpactResponse.model_validate(impact)
