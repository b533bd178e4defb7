"""
API routes for settlement.

- cron_router: scheduled triggers for the three settlement jobs
- seller_router / order_router / admin_router: internal API used by the
  marketplace backend
- monitoring_router: health probes and Prometheus metrics
"""
import uuid
from typing import Any, Dict, NoReturn

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from marketplace_settlement.core.clock import utcnow
from marketplace_settlement.core.escrow import EscrowReleaseJob
from marketplace_settlement.core.orders import (
    OrderError,
    OrderNotFoundError,
    OrderService,
    OrderTransitionError,
)
from marketplace_settlement.core.payouts import (
    PayoutBatchJob,
    PayoutNotFoundError,
    PayoutService,
    PayoutStateError,
    PayoutValidationError,
)
from marketplace_settlement.core.platform_settings import (
    PlatformSettingsError,
    PlatformSettingsProvider,
)
from marketplace_settlement.core.reconciliation import ReconciliationEngine
from marketplace_settlement.monitoring.health import HealthCheck

from .dependencies import (
    get_escrow_release_job,
    get_order_service,
    get_payout_batch_job,
    get_payout_service,
    get_platform_settings,
    get_reconciliation_engine,
    verify_api_key,
    verify_cron_secret,
)
from .schemas import (
    ActorRequest,
    BalanceSummaryResponse,
    CreatePayoutRequest,
    EscrowFailure,
    EscrowReleaseCronResponse,
    HealthCheckResponse,
    MarkPaidRequest,
    OpenDisputeRequest,
    OrderResponse,
    PaymentReconciliation,
    PayoutBatchCronResponse,
    PayoutFailure,
    PayoutResponse,
    PlatformSettingsResponse,
    ReconciliationCronResponse,
    ResolveDisputeRequest,
    UpdatePlatformSettingsRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
cron_router = APIRouter(
    prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)]
)
seller_router = APIRouter(
    prefix="/sellers", tags=["sellers"], dependencies=[Depends(verify_api_key)]
)
order_router = APIRouter(
    prefix="/orders", tags=["orders"], dependencies=[Depends(verify_api_key)]
)
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(verify_api_key)]
)
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


def _timestamp() -> str:
    return utcnow().isoformat()


def _cron_failure(job: str, error: Exception) -> JSONResponse:
    logger.error("cron_job_failed", job=job, error=str(error), error_type=type(error).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": str(error), "timestamp": _timestamp()},
    )


def _raise_http(error: Exception) -> NoReturn:
    """Translate a domain error into an HTTP error."""
    if isinstance(error, (PayoutNotFoundError, OrderNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (PayoutStateError, OrderTransitionError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, (PayoutValidationError, PlatformSettingsError, OrderError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        logger.error("api_unexpected_error", error=str(error), error_type=type(error).__name__)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Request failed: {str(error)}",
        )
    logger.warning("api_request_rejected", status_code=code, error=str(error))
    raise HTTPException(status_code=code, detail=str(error))


@cron_router.api_route(
    "/auto-release-escrow",
    methods=["GET", "POST"],
    response_model=EscrowReleaseCronResponse,
    summary="Release escrow",
    description="Release held funds for orders whose holding period has elapsed",
)
async def auto_release_escrow(
    job: EscrowReleaseJob = Depends(get_escrow_release_job),
) -> Any:
    """Scheduled trigger for the escrow release job."""
    try:
        result = await job.run()
    except Exception as e:
        return _cron_failure("escrow_release", e)

    return EscrowReleaseCronResponse(
        success=True,
        message=f"Released {result['released']} orders from escrow",
        released=result["released"],
        failures=[EscrowFailure(**failure) for failure in result["failures"]],
        timestamp=_timestamp(),
    )


@cron_router.api_route(
    "/process-payouts",
    methods=["GET", "POST"],
    response_model=PayoutBatchCronResponse,
    summary="Process payouts",
    description="Transfer every due pending payout request",
)
async def process_payouts(
    job: PayoutBatchJob = Depends(get_payout_batch_job),
) -> Any:
    """Scheduled trigger for the payout batch job."""
    try:
        result = await job.run()
    except Exception as e:
        return _cron_failure("payout_batch", e)

    return PayoutBatchCronResponse(
        success=True,
        message=f"Processed {result['processed']} payouts, {result['failed']} failed",
        processed=result["processed"],
        failed=result["failed"],
        processed_ids=result["processed_ids"],
        failed_details=[PayoutFailure(**detail) for detail in result["failed_details"]],
        timestamp=_timestamp(),
    )


@cron_router.api_route(
    "/reconcile-payments",
    methods=["GET", "POST"],
    response_model=ReconciliationCronResponse,
    summary="Reconcile payments",
    description="Compare recent payment records with Stripe",
)
async def reconcile_payments(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Any:
    """Scheduled trigger for the reconciliation job."""
    try:
        result = await engine.run()
    except Exception as e:
        return _cron_failure("reconciliation", e)

    return ReconciliationCronResponse(
        success=True,
        message=f"Checked {result['checked']} payments, found {result['issues_found']} issues",
        checked=result["checked"],
        issues_found=result["issues_found"],
        reconciliations=[PaymentReconciliation(**item) for item in result["reconciliations"]],
        timestamp=_timestamp(),
    )


@seller_router.post(
    "/{seller_id}/payouts",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
)
async def request_payout(
    seller_id: str,
    request: CreatePayoutRequest,
    service: PayoutService = Depends(get_payout_service),
) -> Dict[str, Any]:
    """Create a pending payout request for the seller."""
    try:
        return await service.request_payout(seller_id, request.amount_minor)
    except Exception as e:
        _raise_http(e)


@seller_router.get(
    "/{seller_id}/balance",
    response_model=BalanceSummaryResponse,
    summary="Seller balance summary",
)
async def get_balance(
    seller_id: str,
    service: PayoutService = Depends(get_payout_service),
) -> Dict[str, Any]:
    """Available balance, escrow and payout totals for a seller."""
    try:
        return await service.get_balance_summary(seller_id)
    except Exception as e:
        _raise_http(e)


@order_router.post("/{order_id}/mark-paid", response_model=OrderResponse)
async def mark_paid(
    order_id: uuid.UUID,
    request: MarkPaidRequest,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Record checkout payment for a placed order."""
    try:
        return await service.mark_paid(order_id, request.payment_reference, request.actor)
    except Exception as e:
        _raise_http(e)


@order_router.post("/{order_id}/ship", response_model=OrderResponse)
async def ship_order(
    order_id: uuid.UUID,
    request: ActorRequest,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Mark an order shipped."""
    try:
        return await service.mark_shipped(order_id, request.actor)
    except Exception as e:
        _raise_http(e)


@order_router.post("/{order_id}/deliver", response_model=OrderResponse)
async def confirm_delivery(
    order_id: uuid.UUID,
    request: ActorRequest,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Confirm delivery; starts the escrow holding period."""
    try:
        return await service.confirm_delivery(order_id, request.actor)
    except Exception as e:
        _raise_http(e)


@order_router.post("/{order_id}/dispute", response_model=OrderResponse)
async def open_dispute(
    order_id: uuid.UUID,
    request: OpenDisputeRequest,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Open a dispute, freezing the order's escrow."""
    try:
        return await service.open_dispute(
            order_id, request.dispute_type, request.description, request.actor
        )
    except Exception as e:
        _raise_http(e)


@admin_router.post("/orders/{order_id}/resolve-dispute", response_model=OrderResponse)
async def resolve_dispute(
    order_id: uuid.UUID,
    request: ResolveDisputeRequest,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Resolve a dispute in favour of the seller or the buyer."""
    try:
        return await service.resolve_dispute(
            order_id, request.resolution, request.actor, notes=request.notes
        )
    except Exception as e:
        _raise_http(e)


@admin_router.post("/payouts/{payout_id}/retrigger", response_model=PayoutResponse)
async def retrigger_payout(
    payout_id: uuid.UUID,
    request: ActorRequest,
    service: PayoutService = Depends(get_payout_service),
) -> Dict[str, Any]:
    """Explicitly retry a failed payout as a new pending request."""
    try:
        return await service.retrigger(payout_id, request.actor)
    except Exception as e:
        _raise_http(e)


@admin_router.post("/payouts/{payout_id}/resume", response_model=PayoutResponse)
async def resume_payout(
    payout_id: uuid.UUID,
    request: ActorRequest,
    service: PayoutService = Depends(get_payout_service),
) -> Dict[str, Any]:
    """Finish a payout left in processing."""
    try:
        return await service.resume(payout_id, request.actor)
    except Exception as e:
        _raise_http(e)


@admin_router.get("/platform-settings", response_model=PlatformSettingsResponse)
async def get_platform_settings_view(
    provider: PlatformSettingsProvider = Depends(get_platform_settings),
) -> Dict[str, Any]:
    """Current settlement settings."""
    return await provider.get_all()


@admin_router.put("/platform-settings", response_model=PlatformSettingsResponse)
async def update_platform_settings(
    request: UpdatePlatformSettingsRequest,
    provider: PlatformSettingsProvider = Depends(get_platform_settings),
) -> Dict[str, Any]:
    """Change settlement settings; takes effect immediately."""
    try:
        return await provider.update(request.changes(), request.updated_by)
    except Exception as e:
        _raise_http(e)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
