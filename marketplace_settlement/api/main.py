"""
FastAPI application for the settlement service.

An external scheduler drives the three settlement jobs through ``/cron``;
operators and the storefront backend use the seller, order and admin routes.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace_settlement import __version__
from marketplace_settlement.config import get_settings
from marketplace_settlement.core.clock import utcnow
from marketplace_settlement.core.platform_settings import PlatformSettingsProvider
from marketplace_settlement.database.connection import close_db, init_db
from marketplace_settlement.integrations.stripe_client import StripeClient
from marketplace_settlement.monitoring.logging import setup_logging
from marketplace_settlement.monitoring.metrics import metrics

from .dependencies import APIKeyError, CronUnauthorizedError
from .routes import admin_router, cron_router, monitoring_router, order_router, seller_router

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create the schema and the app-scoped collaborators; dispose the engine on exit."""
    logger.info(
        "settlement_service_starting",
        version=__version__,
        test_mode=settings.is_test_mode,
        cron_auth=settings.cron_auth_enabled,
    )
    if not settings.cron_auth_enabled:
        logger.warning("cron_secret_not_configured")
    if settings.api_key is None:
        logger.warning("api_key_not_configured")

    await init_db()
    app.state.stripe_client = StripeClient(settings)
    app.state.platform_settings = PlatformSettingsProvider(settings=settings)

    yield

    await close_db()
    logger.info("settlement_service_stopped")


app = FastAPI(
    title="Marketplace Settlement Service",
    description=(
        "Escrow release, seller payouts and payment reconciliation for the marketplace. "
        "Jobs are triggered by an external scheduler through the /cron endpoints."
    ),
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id to the log context and record request metrics."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
    started = time.perf_counter()
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        elapsed = time.perf_counter() - started
        route = request.scope.get("route")
        metrics.record_http_request(
            request.method,
            getattr(route, "path", "unmatched"),
            status_code,
            elapsed,
        )
        logger.info(
            "request_handled",
            method=request.method,
            status_code=status_code,
            duration_seconds=round(elapsed, 4),
        )
        structlog.contextvars.unbind_contextvars("request_id", "path")


@app.exception_handler(CronUnauthorizedError)
async def cron_unauthorized_handler(request: Request, exc: CronUnauthorizedError) -> JSONResponse:
    """Wrong scheduler secret; nothing was processed."""
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"success": False, "error": "Unauthorized", "timestamp": utcnow().isoformat()},
    )


@app.exception_handler(APIKeyError)
async def api_key_error_handler(request: Request, exc: APIKeyError) -> JSONResponse:
    """Missing or wrong internal API key."""
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "Unauthorized", "message": str(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Details stay in the log; callers only learn that the request failed
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


for router in (cron_router, seller_router, order_router, admin_router, monitoring_router):
    app.include_router(router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Service identity and entry points."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "currency": settings.currency,
        "cron": ["/cron/auto-release-escrow", "/cron/process-payouts", "/cron/reconcile-payments"],
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "marketplace_settlement.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )
