"""
Seller payouts.

PayoutService handles the seller and operator actions (request, balance
summary, re-trigger, resume). PayoutBatchJob moves due requests through
pending -> processing -> completed/failed:

1. Reserve: one transaction marks the request processing and debits the
   seller balance only if it still covers the amount. This is the intent
   record written before the gateway is called.
2. Transfer: Stripe transfer with idempotency key ``payout-<id>``.
3. Settle: completed with the transfer id, or failed with the reservation
   credited back.

A transfer that succeeds but cannot be recorded leaves the request in
processing; ``PayoutService.resume`` replays it with the same idempotency key.
"""
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.clock import Clock, add_business_days, utcnow
from marketplace_settlement.core.escrow import calculate_commission
from marketplace_settlement.core.platform_settings import PlatformSettingsProvider
from marketplace_settlement.database.connection import get_session_factory
from marketplace_settlement.database.models import (
    LedgerEntry,
    LedgerEntryType,
    Order,
    OrderStatus,
    PayoutRequest,
    PayoutStatus,
    Seller,
)
from marketplace_settlement.integrations.stripe_client import StripeClient, StripeError
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

JOB_NAME = "payout_batch"

# Orders whose funds are still held by the platform
HELD_ORDER_STATUSES = (
    OrderStatus.PAID,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.ESCROW_HELD,
    OrderStatus.DISPUTED,
)

COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"


class PayoutError(Exception):
    """Base exception for payout errors."""

    pass


class PayoutValidationError(PayoutError):
    """Raised when a payout request is not acceptable."""

    pass


class PayoutNotFoundError(PayoutError):
    """Raised when a payout request or seller does not exist."""

    pass


class PayoutStateError(PayoutError):
    """Raised when a payout request is not in the status an action needs."""

    pass


def idempotency_key(payout_id: uuid.UUID) -> str:
    """Gateway idempotency key for a payout request."""
    return f"payout-{payout_id}"


def format_naira(amount_minor: int) -> str:
    """Human readable amount for validation messages."""
    return f"₦{Decimal(amount_minor) / 100:,.2f}"


def payout_to_dict(payout: PayoutRequest) -> Dict[str, Any]:
    """Serialize a payout request for API responses."""
    return {
        "id": str(payout.id),
        "seller_id": payout.seller_id,
        "amount_minor": payout.amount_minor,
        "currency": payout.currency,
        "status": payout.status,
        "requested_at": payout.requested_at.isoformat(),
        "scheduled_for": payout.scheduled_for.isoformat(),
        "processed_at": payout.processed_at.isoformat() if payout.processed_at else None,
        "transfer_reference": payout.transfer_reference,
        "failure_reason": payout.failure_reason,
        "retry_of": str(payout.retry_of) if payout.retry_of else None,
    }


class PayoutBatchJob:
    """Processes payout requests whose scheduled date has arrived."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        stripe_client: Optional[StripeClient] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.stripe_client = stripe_client or StripeClient(self.settings)
        self.clock = clock

    async def _find_due_requests(self, now: datetime) -> List[uuid.UUID]:
        async with self.session_factory() as db:
            stmt = (
                select(PayoutRequest.id)
                .where(
                    PayoutRequest.status == PayoutStatus.PENDING,
                    PayoutRequest.scheduled_for <= now,
                )
                .order_by(PayoutRequest.requested_at)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _reserve(self, payout_id: uuid.UUID, now: datetime) -> Optional[str]:
        """
        Claim a pending request and reserve its amount from the seller balance.

        Returns:
            Optional[str]: None when reserved, otherwise the reason it was skipped
        """
        async with self.session_factory() as db:
            try:
                payout = await db.get(PayoutRequest, payout_id, populate_existing=True)
                if payout is None or payout.status != PayoutStatus.PENDING:
                    return "not_pending"

                claimed = await db.execute(
                    update(PayoutRequest)
                    .where(
                        PayoutRequest.id == payout_id,
                        PayoutRequest.status == PayoutStatus.PENDING,
                    )
                    .values(status=PayoutStatus.PROCESSING, processing_started_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    await db.rollback()
                    return "not_pending"

                debit = await db.execute(
                    update(Seller)
                    .where(
                        Seller.id == payout.seller_id,
                        Seller.available_balance_minor >= payout.amount_minor,
                    )
                    .values(
                        available_balance_minor=Seller.available_balance_minor
                        - payout.amount_minor,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if debit.rowcount != 1:
                    # Leaves the request pending for a later run
                    await db.rollback()
                    return "insufficient_balance"

                db.add(
                    LedgerEntry(
                        seller_id=payout.seller_id,
                        entry_type=LedgerEntryType.PAYOUT,
                        amount_minor=-payout.amount_minor,
                        payout_id=payout_id,
                        description=f"Payout {payout_id}",
                        created_at=now,
                    )
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return None

    async def _mark_completed(
        self, payout_id: uuid.UUID, transfer_reference: str, now: datetime
    ) -> None:
        async with self.session_factory() as db:
            try:
                result = await db.execute(
                    update(PayoutRequest)
                    .where(
                        PayoutRequest.id == payout_id,
                        PayoutRequest.status == PayoutStatus.PROCESSING,
                    )
                    .values(
                        status=PayoutStatus.COMPLETED,
                        transfer_reference=transfer_reference,
                        processed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise PayoutStateError(f"Payout {payout_id} is no longer processing")
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def _mark_failed(self, payout_id: uuid.UUID, reason: str, now: datetime) -> None:
        async with self.session_factory() as db:
            try:
                payout = await db.get(PayoutRequest, payout_id, populate_existing=True)
                result = await db.execute(
                    update(PayoutRequest)
                    .where(
                        PayoutRequest.id == payout_id,
                        PayoutRequest.status == PayoutStatus.PROCESSING,
                    )
                    .values(
                        status=PayoutStatus.FAILED,
                        failure_reason=reason,
                        processed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise PayoutStateError(f"Payout {payout_id} is no longer processing")

                # Release the reservation
                await db.execute(
                    update(Seller)
                    .where(Seller.id == payout.seller_id)
                    .values(
                        available_balance_minor=Seller.available_balance_minor
                        + payout.amount_minor,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.add(
                    LedgerEntry(
                        seller_id=payout.seller_id,
                        entry_type=LedgerEntryType.PAYOUT_REVERSAL,
                        amount_minor=payout.amount_minor,
                        payout_id=payout_id,
                        description=f"Payout {payout_id} failed: {reason}"[:1000],
                        created_at=now,
                    )
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def settle(self, payout_id: uuid.UUID, now: datetime) -> Tuple[str, str]:
        """
        Transfer a processing request and record the outcome.

        Args:
            payout_id: Payout request in status processing
            now: Timestamp recorded on the request

        Returns:
            Tuple[str, str]: ("completed", transfer id) or ("failed", reason)

        Raises:
            PayoutError: If the request is not processing or the outcome
                cannot be recorded (the request then stays processing)
        """
        async with self.session_factory() as db:
            payout = await db.get(PayoutRequest, payout_id)
            if payout is None:
                raise PayoutNotFoundError(f"Payout {payout_id} not found")
            if payout.status != PayoutStatus.PROCESSING:
                raise PayoutStateError(f"Payout {payout_id} is {payout.status}, expected processing")
            seller = await db.get(Seller, payout.seller_id)

        try:
            if seller is None or not seller.stripe_account_id:
                raise PayoutValidationError("Seller has no payout destination account")
            transfer = await self.stripe_client.create_transfer(
                amount_minor=payout.amount_minor,
                currency=payout.currency,
                destination=seller.stripe_account_id,
                idempotency_key=idempotency_key(payout.id),
                metadata={"payout_id": str(payout.id), "seller_id": payout.seller_id},
            )
        except (StripeError, PayoutValidationError) as e:
            reason = str(e)
            logger.warning(
                "payout_transfer_failed",
                payout_id=str(payout_id),
                seller_id=payout.seller_id,
                error=reason,
            )
            await self._mark_failed(payout_id, reason, now)
            metrics.record_payout(FAILED)
            return FAILED, reason

        try:
            await self._mark_completed(payout_id, transfer.id, now)
        except Exception as e:
            logger.error(
                "payout_completion_not_recorded",
                payout_id=str(payout_id),
                transfer_id=transfer.id,
                error=str(e),
            )
            raise PayoutError(
                f"Transfer {transfer.id} succeeded but was not recorded: {e}"
            ) from e

        logger.info(
            "payout_completed",
            payout_id=str(payout_id),
            seller_id=payout.seller_id,
            amount_minor=payout.amount_minor,
            transfer_id=transfer.id,
        )
        metrics.record_payout(COMPLETED, payout.amount_minor)
        return COMPLETED, transfer.id

    async def process_request(self, payout_id: uuid.UUID, now: datetime) -> Tuple[str, str]:
        """Reserve, transfer and settle one request."""
        skip_reason = await self._reserve(payout_id, now)
        if skip_reason is not None:
            logger.info("payout_skipped", payout_id=str(payout_id), reason=skip_reason)
            metrics.record_payout(SKIPPED)
            return SKIPPED, skip_reason
        return await self.settle(payout_id, now)

    async def run(self) -> Dict[str, Any]:
        """
        Process every due pending request, oldest first.

        Returns:
            Dict[str, Any]: processed/failed counts, processed ids, failure
            details and skipped ids
        """
        start_time = time.time()
        now = self.clock()

        logger.info("payout_batch_started", now=now.isoformat())

        try:
            payout_ids = await self._find_due_requests(now)
        except Exception as e:
            logger.error("payout_batch_job_failed", error=str(e))
            metrics.record_job_run(JOB_NAME, "error", time.time() - start_time)
            raise

        processed_ids: List[str] = []
        failed_details: List[Dict[str, str]] = []
        skipped_ids: List[str] = []

        for payout_id in payout_ids:
            try:
                outcome, detail = await self.process_request(payout_id, now)
            except Exception as e:
                logger.error("payout_processing_error", payout_id=str(payout_id), error=str(e))
                failed_details.append({"payout_id": str(payout_id), "error": str(e)})
                continue

            if outcome == COMPLETED:
                processed_ids.append(str(payout_id))
            elif outcome == FAILED:
                failed_details.append({"payout_id": str(payout_id), "error": detail})
            else:
                skipped_ids.append(str(payout_id))

        metrics.record_job_run(JOB_NAME, "success", time.time() - start_time)
        logger.info(
            "payout_batch_completed",
            due=len(payout_ids),
            processed=len(processed_ids),
            failed=len(failed_details),
            skipped=len(skipped_ids),
        )

        return {
            "processed": len(processed_ids),
            "failed": len(failed_details),
            "processed_ids": processed_ids,
            "failed_details": failed_details,
            "skipped_ids": skipped_ids,
        }


class PayoutService:
    """Seller payout requests and operator payout actions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        platform_settings: Optional[PlatformSettingsProvider] = None,
        batch_job: Optional[PayoutBatchJob] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.platform_settings = platform_settings or PlatformSettingsProvider(
            settings=self.settings, session_factory=self.session_factory
        )
        self._batch_job = batch_job
        self.clock = clock

    @property
    def batch_job(self) -> PayoutBatchJob:
        # The Stripe client is only needed for resume
        if self._batch_job is None:
            self._batch_job = PayoutBatchJob(
                settings=self.settings,
                session_factory=self.session_factory,
                clock=self.clock,
            )
        return self._batch_job

    async def _pending_total(self, db: AsyncSession, seller_id: str) -> Tuple[int, int]:
        stmt = select(
            func.count(PayoutRequest.id),
            func.coalesce(func.sum(PayoutRequest.amount_minor), 0),
        ).where(
            PayoutRequest.seller_id == seller_id,
            PayoutRequest.status == PayoutStatus.PENDING,
        )
        count, total = (await db.execute(stmt)).one()
        return int(count), int(total)

    async def _create_request(
        self,
        seller_id: str,
        amount_minor: int,
        scheduled_for: datetime,
        retry_of: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        now = self.clock()
        async with self.session_factory() as db:
            try:
                seller = await db.get(Seller, seller_id)
                if seller is None:
                    raise PayoutNotFoundError(f"Seller {seller_id} not found")
                if not seller.stripe_account_id:
                    raise PayoutValidationError(
                        "Please add a payout account before requesting a payout"
                    )

                pending_count, pending_total = await self._pending_total(db, seller_id)
                if pending_count:
                    raise PayoutValidationError("You already have a pending payout request")

                withdrawable = seller.available_balance_minor - pending_total
                if amount_minor > withdrawable:
                    raise PayoutValidationError(
                        f"Insufficient balance. Available: {format_naira(withdrawable)}"
                    )

                payout = PayoutRequest(
                    seller_id=seller_id,
                    amount_minor=amount_minor,
                    currency=self.settings.currency,
                    status=PayoutStatus.PENDING,
                    requested_at=now,
                    scheduled_for=scheduled_for,
                    retry_of=retry_of,
                )
                db.add(payout)
                await db.commit()
            except IntegrityError:
                # Lost a race with a concurrent request for the same seller
                await db.rollback()
                raise PayoutValidationError("You already have a pending payout request")
            except Exception:
                await db.rollback()
                raise

        logger.info(
            "payout_requested",
            payout_id=str(payout.id),
            seller_id=seller_id,
            amount_minor=amount_minor,
            scheduled_for=scheduled_for.isoformat(),
            retry_of=str(retry_of) if retry_of else None,
        )
        return payout_to_dict(payout)

    async def request_payout(self, seller_id: str, amount_minor: int) -> Dict[str, Any]:
        """
        Create a pending payout request for a seller.

        Args:
            seller_id: Requesting seller
            amount_minor: Amount in minor units

        Returns:
            Dict[str, Any]: The created request

        Raises:
            PayoutValidationError: If the amount or seller state is not acceptable
            PayoutNotFoundError: If the seller does not exist
        """
        if amount_minor <= 0:
            raise PayoutValidationError("Payout amount must be positive")

        minimum = await self.platform_settings.get_minimum_payout_minor()
        if amount_minor < minimum:
            raise PayoutValidationError(f"Minimum payout amount is {format_naira(minimum)}")

        processing_days = await self.platform_settings.get_payout_processing_days()
        scheduled_for = add_business_days(self.clock(), processing_days)
        return await self._create_request(seller_id, amount_minor, scheduled_for)

    async def retrigger(self, payout_id: uuid.UUID, actor: str) -> Dict[str, Any]:
        """
        Explicitly retry a failed request.

        The failed request is left as is; a new pending request referencing it
        is scheduled immediately.
        """
        async with self.session_factory() as db:
            payout = await db.get(PayoutRequest, payout_id)
            if payout is None:
                raise PayoutNotFoundError(f"Payout {payout_id} not found")
            if payout.status != PayoutStatus.FAILED:
                raise PayoutStateError(
                    f"Only failed payouts can be re-triggered. Current status: {payout.status}"
                )
            retried = await db.scalar(
                select(func.count(PayoutRequest.id)).where(PayoutRequest.retry_of == payout_id)
            )
            if retried:
                raise PayoutStateError(f"Payout {payout_id} has already been re-triggered")

        logger.info("payout_retriggered", payout_id=str(payout_id), actor=actor)
        return await self._create_request(
            payout.seller_id, payout.amount_minor, self.clock(), retry_of=payout_id
        )

    async def resume(self, payout_id: uuid.UUID, actor: str) -> Dict[str, Any]:
        """
        Finish a request left in processing.

        The transfer is replayed with the original idempotency key, so a
        transfer that already went through is returned rather than repeated.
        """
        logger.info("payout_resume_requested", payout_id=str(payout_id), actor=actor)
        await self.batch_job.settle(payout_id, self.clock())
        return await self.get_payout(payout_id)

    async def get_payout(self, payout_id: uuid.UUID) -> Dict[str, Any]:
        """Fetch one payout request."""
        async with self.session_factory() as db:
            payout = await db.get(PayoutRequest, payout_id)
            if payout is None:
                raise PayoutNotFoundError(f"Payout {payout_id} not found")
            return payout_to_dict(payout)

    async def get_balance_summary(self, seller_id: str) -> Dict[str, Any]:
        """
        Summarize a seller's settlement position.

        Returns:
            Dict[str, Any]: available balance, escrow pending, pending and
            completed payouts, earnings and commission totals
        """
        platform_rate = await self.platform_settings.get_commission_rate()
        async with self.session_factory() as db:
            seller = await db.get(Seller, seller_id)
            if seller is None:
                raise PayoutNotFoundError(f"Seller {seller_id} not found")

            payout_rows = await db.execute(
                select(PayoutRequest.status, func.sum(PayoutRequest.amount_minor))
                .where(PayoutRequest.seller_id == seller_id)
                .group_by(PayoutRequest.status)
            )
            payout_totals = {status: int(total or 0) for status, total in payout_rows.all()}

            held_orders = await db.execute(
                select(Order.total_minor, Order.commission_rate).where(
                    Order.seller_id == seller_id,
                    Order.status.in_(HELD_ORDER_STATUSES),
                )
            )
            escrow_pending = 0
            for total_minor, rate in held_orders.all():
                _, net_minor = calculate_commission(
                    total_minor, rate if rate is not None else platform_rate
                )
                escrow_pending += net_minor

            sales = (
                await db.execute(
                    select(
                        func.count(LedgerEntry.id),
                        func.coalesce(func.sum(LedgerEntry.amount_minor), 0),
                        func.coalesce(func.sum(LedgerEntry.commission_minor), 0),
                    ).where(
                        LedgerEntry.seller_id == seller_id,
                        LedgerEntry.entry_type == LedgerEntryType.SALE,
                    )
                )
            ).one()

        pending = payout_totals.get(PayoutStatus.PENDING, 0)
        return {
            "seller_id": seller_id,
            "currency": self.settings.currency,
            "available_balance_minor": seller.available_balance_minor,
            "withdrawable_minor": max(seller.available_balance_minor - pending, 0),
            "escrow_pending_minor": escrow_pending,
            "pending_payouts_minor": pending,
            "processing_payouts_minor": payout_totals.get(PayoutStatus.PROCESSING, 0),
            "total_paid_out_minor": payout_totals.get(PayoutStatus.COMPLETED, 0),
            "released_orders": int(sales[0]),
            "total_earnings_minor": int(sales[1]),
            "commission_paid_minor": int(sales[2]),
        }
