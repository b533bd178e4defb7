"""
Health checks for the settlement service.

Readiness needs the database and (optionally) Stripe. The settlement check
reports payout requests stuck in ``processing``: they need an operator resume
but do not make the service unready.
"""
import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional

import stripe
import structlog
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.clock import Clock, utcnow
from marketplace_settlement.database.connection import get_session_factory
from marketplace_settlement.database.models import PayoutRequest, PayoutStatus

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
DEGRADED = "degraded"


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""

    pass


class HealthCheck:
    """Dependency and settlement state checks behind /health endpoints."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        check_stripe: bool = True,
        settings: Optional[Settings] = None,
        stranded_after: timedelta = timedelta(hours=1),
        clock: Clock = utcnow,
    ) -> None:
        """
        Args:
            session_factory: Optional session factory (defaults to the app's)
            check_stripe: Whether readiness includes the Stripe call
            settings: Optional settings
            stranded_after: Age after which a processing payout counts as stuck
            clock: Current time source
        """
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.stripe_enabled = check_stripe
        self.stranded_after = stranded_after
        self.clock = clock

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        # Resolved lazily so importing the routes does not create an engine
        return self._session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        """
        Run ``SELECT 1``.

        Raises:
            HealthCheckError: If the database cannot be reached
        """
        try:
            async with self.session_factory() as db:
                await db.scalar(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")
        return {"status": HEALTHY, "service": "database"}

    async def check_stripe(self) -> Dict[str, Any]:
        """
        Retrieve the platform balance, the cheapest authenticated Stripe call.

        Raises:
            HealthCheckError: If Stripe cannot be reached or rejects the key
        """
        stripe.api_key = self.settings.stripe_secret_key
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, stripe.Balance.retrieve)
        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            raise HealthCheckError(f"Stripe health check failed: {str(e)}")
        return {
            "status": HEALTHY,
            "service": "stripe",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_stranded_payouts(self) -> Dict[str, Any]:
        """Count payout requests left in processing longer than ``stranded_after``."""
        cutoff = self.clock() - self.stranded_after
        async with self.session_factory() as db:
            stranded = await db.scalar(
                select(func.count(PayoutRequest.id)).where(
                    PayoutRequest.status == PayoutStatus.PROCESSING,
                    PayoutRequest.processing_started_at <= cutoff,
                )
            )
        if stranded:
            logger.warning("stranded_payouts_detected", count=stranded)
        return {
            "status": DEGRADED if stranded else HEALTHY,
            "service": "payouts",
            "stranded_processing": int(stranded or 0),
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            Dict[str, Any]: ``healthy``, ``degraded`` (stuck payouts only) or
            ``unhealthy`` plus the individual results
        """
        checks: Dict[str, Any] = {}
        overall = HEALTHY

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": UNHEALTHY, "service": "database", "error": str(e)}
            overall = UNHEALTHY

        if self.stripe_enabled:
            try:
                checks["stripe"] = await self.check_stripe()
            except HealthCheckError as e:
                checks["stripe"] = {"status": UNHEALTHY, "service": "stripe", "error": str(e)}
                overall = UNHEALTHY

        if checks["database"]["status"] == HEALTHY:
            try:
                checks["payouts"] = await self.check_stranded_payouts()
            except SQLAlchemyError as e:
                # Reachable database without the settlement schema
                logger.error("payout_health_check_failed", error=str(e))
                checks["payouts"] = {"status": UNHEALTHY, "service": "payouts", "error": str(e)}
                overall = UNHEALTHY
            if overall == HEALTHY and checks["payouts"]["status"] == DEGRADED:
                overall = DEGRADED

        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe; touches nothing external."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe; ready unless a dependency is unhealthy."""
        return await self.check_all()
