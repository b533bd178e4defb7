"""
Escrow release job.

Releases held funds to sellers once the holding period after delivery has
elapsed. Each order is released in its own transaction:
- conditional status update delivered/escrow_held -> released
- commission and net amount fixed on the order
- seller balance credited by the net amount
- a sale ledger entry and an order status-history row
"""
import time
import uuid
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.clock import Clock, utcnow
from marketplace_settlement.core.orders import transition_order
from marketplace_settlement.core.platform_settings import PlatformSettingsProvider
from marketplace_settlement.database.connection import get_session_factory
from marketplace_settlement.database.models import (
    LedgerEntry,
    LedgerEntryType,
    Order,
    OrderStatus,
    Seller,
)
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

JOB_NAME = "escrow_release"
ACTOR = "escrow_release_job"


class EscrowReleaseError(Exception):
    """Raised when a single order cannot be released."""

    pass


def calculate_commission(total_minor: int, rate: Decimal) -> Tuple[int, int]:
    """
    Split an order total into platform commission and seller net.

    Args:
        total_minor: Order total in minor units
        rate: Commission rate between 0 and 1

    Returns:
        Tuple[int, int]: (commission_minor, net_minor)
    """
    commission = (Decimal(total_minor) * Decimal(rate)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    commission_minor = int(commission)
    return commission_minor, total_minor - commission_minor


class EscrowReleaseJob:
    """Credits sellers for delivered orders whose holding period has elapsed."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        platform_settings: Optional[PlatformSettingsProvider] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.platform_settings = platform_settings or PlatformSettingsProvider(
            settings=self.settings, session_factory=self.session_factory
        )
        self.clock = clock

    async def _find_due_orders(self, cutoff: datetime) -> List[uuid.UUID]:
        async with self.session_factory() as db:
            stmt = (
                select(Order.id)
                .where(
                    Order.status.in_(OrderStatus.RELEASABLE),
                    Order.delivered_at.isnot(None),
                    Order.delivered_at <= cutoff,
                )
                .order_by(Order.delivered_at)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _release_order(
        self, order_id: uuid.UUID, platform_rate: Decimal, now: datetime
    ) -> Optional[int]:
        """
        Release one order.

        Returns:
            Optional[int]: Net amount credited, or None if the order was no
            longer releasable

        Raises:
            EscrowReleaseError: If the seller cannot be credited
        """
        async with self.session_factory() as db:
            try:
                order = await db.get(Order, order_id)
                if order is None:
                    raise EscrowReleaseError(f"Order {order_id} not found")

                rate = order.commission_rate if order.commission_rate is not None else platform_rate
                commission_minor, net_minor = calculate_commission(order.total_minor, rate)

                previous = await transition_order(
                    db,
                    order_id,
                    OrderStatus.RELEASABLE,
                    OrderStatus.RELEASED,
                    actor=ACTOR,
                    values={
                        "released_at": now,
                        "commission_rate": rate,
                        "commission_minor": commission_minor,
                        "net_minor": net_minor,
                    },
                    details={"commission_minor": commission_minor, "net_minor": net_minor},
                    now=now,
                )
                if previous is None:
                    await db.rollback()
                    return None

                credit = await db.execute(
                    update(Seller)
                    .where(Seller.id == order.seller_id)
                    .values(
                        available_balance_minor=Seller.available_balance_minor + net_minor,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if credit.rowcount != 1:
                    raise EscrowReleaseError(f"Seller {order.seller_id} not found")

                db.add(
                    LedgerEntry(
                        seller_id=order.seller_id,
                        entry_type=LedgerEntryType.SALE,
                        amount_minor=net_minor,
                        commission_minor=commission_minor,
                        order_id=order_id,
                        description=f"Escrow release for order {order_id}",
                        created_at=now,
                    )
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(
            "escrow_released",
            order_id=str(order_id),
            seller_id=order.seller_id,
            total_minor=order.total_minor,
            commission_minor=commission_minor,
            net_minor=net_minor,
        )
        return net_minor

    async def run(self) -> Dict[str, Any]:
        """
        Release every order whose holding period has elapsed.

        A failure on one order is logged and collected; the rest of the batch
        still runs.

        Returns:
            Dict[str, Any]: released count, released order ids and failures
        """
        start_time = time.time()
        now = self.clock()
        cutoff = now - timedelta(days=self.settings.escrow_holding_days)

        logger.info("escrow_release_started", cutoff=cutoff.isoformat())

        try:
            order_ids = await self._find_due_orders(cutoff)
            platform_rate = await self.platform_settings.get_commission_rate()
        except Exception as e:
            logger.error("escrow_release_job_failed", error=str(e))
            metrics.record_job_run(JOB_NAME, "error", time.time() - start_time)
            raise

        released_ids: List[str] = []
        failures: List[Dict[str, str]] = []
        skipped = 0

        for order_id in order_ids:
            try:
                net_minor = await self._release_order(order_id, platform_rate, now)
            except Exception as e:
                logger.error(
                    "escrow_release_failed",
                    order_id=str(order_id),
                    error=str(e),
                )
                metrics.record_escrow_failure()
                failures.append({"order_id": str(order_id), "error": str(e)})
                continue

            if net_minor is None:
                skipped += 1
                logger.info("escrow_release_skipped", order_id=str(order_id))
                continue

            released_ids.append(str(order_id))
            metrics.record_escrow_release(net_minor)

        metrics.record_job_run(JOB_NAME, "success", time.time() - start_time)
        logger.info(
            "escrow_release_completed",
            candidates=len(order_ids),
            released=len(released_ids),
            skipped=skipped,
            failed=len(failures),
        )

        return {
            "released": len(released_ids),
            "released_ids": released_ids,
            "failures": failures,
        }
