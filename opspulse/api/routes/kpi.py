"""Metric definition and metric value endpoints."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ...analytics.aggregation import CalculationContext
from ...container import ServiceContainer
from ...schemas.payload import (
    MetricCalculationRequest,
    MetricDefinitionCreate,
    MetricDefinitionResponse,
    MetricDefinitionUpdate,
    MetricValueResponse,
)
from ..dependencies import get_container, require_api_key, require_tenant

router = APIRouter(prefix="/metrics", dependencies=[Depends(require_api_key)])


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _check_period(start: datetime, end: datetime) -> None:
    if _as_utc(end) <= _as_utc(start):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Period end must be after period start.",
        )


@router.post("/initialize", response_model=list[MetricDefinitionResponse])
async def initialize_defaults(
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> list[MetricDefinitionResponse]:
    """Insert the default org-health metrics the tenant does not have yet."""

    created = await asyncio.to_thread(container.metric_registry.initialize_defaults, tenant_id)
    if created:
        await container.pulse_cache.invalidate(tenant_id)
    return [MetricDefinitionResponse.model_validate(definition) for definition in created]


@router.get("", response_model=list[MetricDefinitionResponse])
async def list_metrics(
    category: str | None = Query(None),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> list[MetricDefinitionResponse]:
    definitions = await asyncio.to_thread(
        container.metric_registry.list_definitions, tenant_id, category
    )
    return [MetricDefinitionResponse.model_validate(definition) for definition in definitions]


@router.post(
    "", response_model=MetricDefinitionResponse, status_code=status.HTTP_201_CREATED
)
async def create_metric(
    request: MetricDefinitionCreate,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> MetricDefinitionResponse:
    definition = await asyncio.to_thread(
        container.metric_registry.create, tenant_id, request.model_dump()
    )
    await container.pulse_cache.invalidate(tenant_id)
    return MetricDefinitionResponse.model_validate(definition)


@router.get("/{metric_key}", response_model=MetricDefinitionResponse)
async def get_metric(
    metric_key: str,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> MetricDefinitionResponse:
    definition = await asyncio.to_thread(container.metric_registry.get, tenant_id, metric_key)
    return MetricDefinitionResponse.model_validate(definition)


@router.patch("/{metric_key}", response_model=MetricDefinitionResponse)
async def update_metric(
    metric_key: str,
    request: MetricDefinitionUpdate,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> MetricDefinitionResponse:
    definition = await asyncio.to_thread(
        container.metric_registry.update,
        tenant_id,
        metric_key,
        request.model_dump(exclude_unset=True),
    )
    await container.pulse_cache.invalidate(tenant_id)
    return MetricDefinitionResponse.model_validate(definition)


@router.delete("/{metric_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_metric(
    metric_key: str,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    await asyncio.to_thread(container.metric_registry.delete, tenant_id, metric_key)
    await container.pulse_cache.invalidate(tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{metric_key}/calculate", response_model=MetricValueResponse)
async def calculate_metric(
    metric_key: str,
    request: MetricCalculationRequest,
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> MetricValueResponse:
    """Calculate the metric for an explicit period and store (or overwrite) the value."""

    _check_period(request.period_start, request.period_end)
    definition = await asyncio.to_thread(container.metric_registry.get, tenant_id, metric_key)
    context = CalculationContext(
        tenant_id=tenant_id,
        period_start=_as_utc(request.period_start),
        period_end=_as_utc(request.period_end),
        granularity=request.granularity,
        filters=request.filters,
    )
    value = await container.engine.calculate_and_store(definition, context)
    return MetricValueResponse.model_validate(value)


@router.get("/{metric_key}/values", response_model=list[MetricValueResponse])
async def metric_values(
    metric_key: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    tenant_id: str = Depends(require_tenant),
    container: ServiceContainer = Depends(get_container),
) -> list[MetricValueResponse]:
    _check_period(start, end)
    values = await container.engine.get_values(
        tenant_id, metric_key, _as_utc(start), _as_utc(end)
    )
    return [MetricValueResponse.model_validate(value) for value in values]
