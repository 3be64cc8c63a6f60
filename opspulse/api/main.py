"""FastAPI application for the OpsPulse service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..container import build_container
from ..exceptions import (
    AuthenticationError,
    ConcurrencyConflictError,
    ConnectorNotFoundError,
    InvalidMetricDefinitionError,
    MetricAlreadyExistsError,
    NotFoundError,
    OpsPulseError,
    SourceApiError,
    TransientNetworkError,
    UnknownStrategyError,
)
from ..utils.config import ensure_runtime_configuration, get_settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "FastAPI"})

_STATUS_BY_ERROR: tuple[tuple[type[OpsPulseError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConnectorNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (MetricAlreadyExistsError, status.HTTP_409_CONFLICT),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (TransientNetworkError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SourceApiError, status.HTTP_502_BAD_GATEWAY),
    (InvalidMetricDefinitionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnknownStrategyError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def status_for_error(exc: OpsPulseError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore
    """Application lifespan context manager for startup/shutdown."""
    # Startup
    settings = ensure_runtime_configuration(get_settings())
    container = build_container(
        settings, transport=getattr(app.state, "http_transport", None)
    )
    app.state.container = container
    await container.start()
    logger.info("OpsPulse API starting up...")
    yield
    # Shutdown
    logger.info("OpsPulse API shutting down...")
    await container.stop()
    app.state.container = None


# Create FastAPI app
app = FastAPI(
    title="OpsPulse API",
    description="Connector sync engine and organizational analytics for operational data",
    version="0.1.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(OpsPulseError)
async def opspulse_exception_handler(request: Request, exc: OpsPulseError) -> JSONResponse:
    """Translate domain errors into HTTP responses."""
    status_code = status_for_error(exc)
    tenant_id = request.headers.get("x-tenant-id") or "-"
    log_method = logger.error if status_code >= 500 else logger.warning
    log_method(
        "%s on %s: %s",
        exc.__class__.__name__,
        request.url.path,
        exc,
        extra={"tenant_id": tenant_id, "status": "error"},
    )
    content = {"status": "error", "message": str(exc), "error_type": exc.__class__.__name__}
    if isinstance(exc, AuthenticationError):
        content["action"] = "reconnect_required"
    return JSONResponse(status_code=status_code, content=content)


# Import routers
from .routes import dashboard, health, kpi, metrics, oauth, sync  # noqa: E402

app.include_router(health.router, tags=["health"])
app.include_router(metrics.router, tags=["monitoring"])
app.include_router(oauth.router, prefix="/api/v1", tags=["oauth"])
app.include_router(sync.router, prefix="/api/v1", tags=["sync"])
app.include_router(kpi.router, prefix="/api/v1", tags=["metrics"])
app.include_router(dashboard.router, prefix="/api/v1", tags=["dashboard"])
