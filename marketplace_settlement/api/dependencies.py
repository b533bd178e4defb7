"""
FastAPI dependencies: request authentication and service wiring.

Long-lived collaborators (Stripe client with its circuit breaker, platform
settings provider with its cache) live on ``app.state`` so they are scoped to
the application instance rather than the module.
"""
import hmac
from typing import Optional

import structlog
from fastapi import Depends, Query, Request

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.escrow import EscrowReleaseJob
from marketplace_settlement.core.orders import OrderService
from marketplace_settlement.core.payouts import PayoutBatchJob, PayoutService
from marketplace_settlement.core.platform_settings import PlatformSettingsProvider
from marketplace_settlement.core.reconciliation import ReconciliationEngine
from marketplace_settlement.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


class CronUnauthorizedError(Exception):
    """Raised when a scheduled trigger presents the wrong shared secret."""

    pass


class APIKeyError(Exception):
    """Raised when an internal API call has a missing or wrong API key."""

    pass


def _matches(supplied: Optional[str], expected: str) -> bool:
    if supplied is None:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def verify_cron_secret(
    request: Request,
    secret: Optional[str] = Query(default=None, description="Scheduler shared secret"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Check the ``secret`` query parameter against CRON_SECRET.

    Raises:
        CronUnauthorizedError: If a secret is configured and does not match
    """
    if not settings.cron_auth_enabled:
        return
    if not _matches(secret, settings.cron_secret):
        logger.warning("cron_unauthorized", path=request.url.path)
        raise CronUnauthorizedError("Unauthorized")


async def verify_api_key(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Check the internal API key header against API_KEY.

    Raises:
        APIKeyError: If a key is configured and the header does not match
    """
    if settings.api_key is None:
        return
    if not _matches(request.headers.get(settings.api_key_header), settings.api_key):
        logger.warning("api_key_rejected", path=request.url.path)
        raise APIKeyError("Invalid or missing API key")


def get_stripe_client(request: Request) -> StripeClient:
    """Application-scoped Stripe client."""
    client = getattr(request.app.state, "stripe_client", None)
    if client is None:
        client = StripeClient()
        request.app.state.stripe_client = client
    return client


def get_platform_settings(request: Request) -> PlatformSettingsProvider:
    """Application-scoped platform settings provider."""
    provider = getattr(request.app.state, "platform_settings", None)
    if provider is None:
        provider = PlatformSettingsProvider()
        request.app.state.platform_settings = provider
    return provider


def get_escrow_release_job(
    platform_settings: PlatformSettingsProvider = Depends(get_platform_settings),
) -> EscrowReleaseJob:
    """Escrow release job for one invocation."""
    return EscrowReleaseJob(platform_settings=platform_settings)


def get_payout_batch_job(
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> PayoutBatchJob:
    """Payout batch job for one invocation."""
    return PayoutBatchJob(stripe_client=stripe_client)


def get_reconciliation_engine(
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> ReconciliationEngine:
    """Reconciliation engine for one invocation."""
    return ReconciliationEngine(stripe_client=stripe_client)


def get_payout_service(
    platform_settings: PlatformSettingsProvider = Depends(get_platform_settings),
    batch_job: PayoutBatchJob = Depends(get_payout_batch_job),
) -> PayoutService:
    """Payout service for one request."""
    return PayoutService(platform_settings=platform_settings, batch_job=batch_job)


def get_order_service() -> OrderService:
    """Order service for one request."""
    return OrderService()
