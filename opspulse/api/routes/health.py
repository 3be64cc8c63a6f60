"""Health check endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ...models.base import session_scope

router = APIRouter()


def _database_status() -> dict[str, Any]:
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok"}


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint including database and scheduler status."""

    database = _database_status()
    container = getattr(request.app.state, "container", None)
    scheduler: dict[str, Any] = {"status": "disabled"}
    if container is not None and container.settings.sync.scheduler_enabled:
        scheduler = {
            "status": "ok" if container.driver.running else "stopped",
            "in_flight": len(container.driver.in_flight),
        }

    overall_status = "healthy"
    if database["status"] == "error":
        overall_status = "unhealthy"
    elif scheduler["status"] == "stopped":
        overall_status = "degraded"

    return {
        "status": overall_status,
        "service": "opspulse",
        "database": database,
        "scheduler": scheduler,
    }
