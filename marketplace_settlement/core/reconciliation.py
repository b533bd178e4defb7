"""
Reconciliation engine for comparing Stripe PaymentIntents with payment records.

Runs daily over a lookback window to detect:
- Status mismatches (local record is corrected to mirror Stripe)
- Amount mismatches (annotated only, amounts are never changed)
- Payments missing at Stripe
- Succeeded PaymentIntents with no local record
"""
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.clock import Clock, utcnow
from marketplace_settlement.database.connection import get_session_factory
from marketplace_settlement.database.models import Payment, PaymentStatus, ReconciliationRun
from marketplace_settlement.integrations.stripe_client import StripeClient, StripeError
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

JOB_NAME = "reconciliation"

STATUS_MISMATCH = "status_mismatch"
AMOUNT_MISMATCH = "amount_mismatch"
MISSING_AT_GATEWAY = "missing_at_gateway"

_GATEWAY_STATUS_MAP = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "processing": PaymentStatus.PROCESSING,
    "canceled": PaymentStatus.FAILED,
}


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


def map_gateway_status(status: str) -> Optional[str]:
    """
    Map a PaymentIntent status onto the local payment vocabulary.

    Returns None for statuses with no local equivalent.
    """
    if status.startswith("requires_"):
        return PaymentStatus.PENDING
    return _GATEWAY_STATUS_MAP.get(status)


def _issue(issue_type: str, fingerprint: str, now: datetime, **details: Any) -> Dict[str, Any]:
    return {
        "type": issue_type,
        "fingerprint": fingerprint,
        "detected_at": now.isoformat(),
        **details,
    }


def _occurrence(fingerprint: str, seen: Set[Optional[str]]) -> str:
    """
    Fingerprint for an issue that changes the record when applied.

    A status correction is applied every time the mismatch is found, so each
    occurrence gets its own fingerprint (``...#2``, ``...#3``) and is recorded.
    """
    candidate, occurrence = fingerprint, 1
    while candidate in seen:
        occurrence += 1
        candidate = f"{fingerprint}#{occurrence}"
    return candidate


class ReconciliationEngine:
    """
    Reconciliation engine for daily payment verification.

    Read-only towards Stripe; only local payment records are annotated.
    """

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        """
        Initialize reconciliation engine.

        Args:
            stripe_client: Optional Stripe client
            session_factory: Optional session factory
            settings: Optional settings
            clock: Current time source
        """
        self.settings = settings or get_settings()
        self.stripe_client = stripe_client or StripeClient(self.settings)
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock

    async def _fetch_gateway_intents(
        self, start_date: datetime, end_date: datetime
    ) -> Dict[str, Any]:
        """
        List every PaymentIntent created in the window.

        Raises:
            ReconciliationError: If Stripe cannot be listed
        """
        intents: Dict[str, Any] = {}
        starting_after = None

        logger.info(
            "fetching_stripe_payments",
            start=start_date.isoformat(),
            end=end_date.isoformat(),
        )

        # Paginate through all payment intents
        while True:
            try:
                page = await self.stripe_client.list_payment_intents(
                    limit=100,
                    starting_after=starting_after,
                    created_gte=int(start_date.timestamp()),
                    created_lte=int(end_date.timestamp()),
                )
            except StripeError as e:
                logger.error("stripe_fetch_error", error=str(e))
                raise ReconciliationError(f"Failed to fetch Stripe data: {str(e)}")

            for intent in page.data:
                intents[intent.id] = intent

            if not page.has_more or not page.data:
                break
            starting_after = page.data[-1].id

        return intents

    async def _load_payments(self, start_date: datetime) -> List[Any]:
        async with self.session_factory() as db:
            stmt = (
                select(Payment.id, Payment.gateway_reference)
                .where(
                    Payment.created_at >= start_date,
                    Payment.status != PaymentStatus.REFUNDED,
                )
                .order_by(Payment.created_at)
            )
            result = await db.execute(stmt)
            return list(result.all())

    async def _find_known_references(self, references: List[str]) -> set:
        if not references:
            return set()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment.gateway_reference).where(Payment.gateway_reference.in_(references))
            )
            return set(result.scalars().all())

    async def _lookup_intent(self, reference: str) -> Optional[Any]:
        """Retrieve a single PaymentIntent, or None when Stripe has no such object."""
        try:
            return await self.stripe_client.retrieve_payment_intent(reference)
        except StripeError as e:
            if e.is_resource_missing:
                return None
            raise

    async def _reconcile_payment(
        self, payment_id: uuid.UUID, intent: Optional[Any], now: datetime
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Compare one payment record with its PaymentIntent and annotate it.

        Returns:
            Optional[List[Dict[str, Any]]]: Newly recorded issues, or None if
            the record changed underneath us and was left alone
        """
        async with self.session_factory() as db:
            try:
                payment = await db.get(Payment, payment_id, populate_existing=True)
                if payment is None:
                    return None

                existing = payment.discrepancies or []
                seen = {entry.get("fingerprint") for entry in existing}
                issues: List[Dict[str, Any]] = []
                corrected_status = None

                if intent is None:
                    issues.append(
                        _issue(
                            MISSING_AT_GATEWAY,
                            f"{MISSING_AT_GATEWAY}:{payment.gateway_reference}",
                            now,
                            gateway_reference=payment.gateway_reference,
                        )
                    )
                else:
                    gateway_status = map_gateway_status(intent.status)
                    if gateway_status is None:
                        logger.warning(
                            "unmapped_gateway_status",
                            payment_id=str(payment_id),
                            gateway_status=intent.status,
                        )
                    elif gateway_status != payment.status:
                        corrected_status = gateway_status
                        issues.append(
                            _issue(
                                STATUS_MISMATCH,
                                _occurrence(
                                    f"{STATUS_MISMATCH}:{payment.status}->{gateway_status}", seen
                                ),
                                now,
                                local_status=payment.status,
                                gateway_status=intent.status,
                            )
                        )

                    if intent.amount != payment.amount_minor:
                        issues.append(
                            _issue(
                                AMOUNT_MISMATCH,
                                f"{AMOUNT_MISMATCH}:{payment.amount_minor}:{intent.amount}",
                                now,
                                local_amount_minor=payment.amount_minor,
                                gateway_amount_minor=intent.amount,
                            )
                        )

                new_issues = [issue for issue in issues if issue["fingerprint"] not in seen]

                values: Dict[str, Any] = {"reconciled_at": now}
                if new_issues:
                    values["discrepancies"] = existing + new_issues
                if corrected_status is not None:
                    values["status"] = corrected_status

                result = await db.execute(
                    update(Payment)
                    .where(Payment.id == payment_id, Payment.status == payment.status)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    return None
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if corrected_status is not None:
            logger.warning(
                "payment_status_corrected",
                payment_id=str(payment_id),
                from_status=payment.status,
                to_status=corrected_status,
            )
        return new_issues

    async def _start_run(self, start_date: datetime, end_date: datetime) -> int:
        async with self.session_factory() as db:
            run = ReconciliationRun(
                window_start=start_date,
                window_end=end_date,
                status="in_progress",
                started_at=self.clock(),
            )
            db.add(run)
            await db.commit()
            return run.id

    async def _finish_run(self, run_id: int, status: str, **values: Any) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ReconciliationRun)
                .where(ReconciliationRun.id == run_id)
                .values(status=status, completed_at=self.clock(), **values)
            )
            await db.commit()

    async def run(self) -> Dict[str, Any]:
        """
        Reconcile payments created within the lookback window.

        Returns:
            Dict[str, Any]: checked count, new issues found, per-payment
            reconciliations, missing_locally references and per-record errors

        Raises:
            ReconciliationError: If the run cannot complete
        """
        start_time = time.time()
        end_date = self.clock()
        start_date = end_date - timedelta(days=self.settings.reconciliation_lookback_days)

        logger.info(
            "reconciliation_started",
            window_start=start_date.isoformat(),
            window_end=end_date.isoformat(),
        )

        run_id = None
        try:
            run_id = await self._start_run(start_date, end_date)
            intents = await self._fetch_gateway_intents(start_date, end_date)
            payments = await self._load_payments(start_date)
        except Exception as e:
            logger.error("reconciliation_failed", error=str(e))
            metrics.record_job_run(JOB_NAME, "error", time.time() - start_time)
            if run_id is not None:
                await self._finish_run(run_id, "failed", details={"error": str(e)})
            if isinstance(e, ReconciliationError):
                raise
            raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        checked = 0
        issues_found = 0
        reconciliations: List[Dict[str, Any]] = []
        errors: List[Dict[str, str]] = []
        matched_references = set()

        for payment_id, reference in payments:
            try:
                if reference is None:
                    intent = None
                elif reference in intents:
                    intent = intents[reference]
                else:
                    intent = await self._lookup_intent(reference)
                if reference is not None:
                    matched_references.add(reference)

                new_issues = await self._reconcile_payment(payment_id, intent, end_date)
            except Exception as e:
                # Transient failures abort only this record
                logger.error(
                    "payment_reconciliation_failed",
                    payment_id=str(payment_id),
                    error=str(e),
                )
                errors.append({"payment_id": str(payment_id), "error": str(e)})
                continue

            if new_issues is None:
                continue
            checked += 1
            if new_issues:
                issues_found += len(new_issues)
                reconciliations.append(
                    {
                        "payment_id": str(payment_id),
                        "gateway_reference": reference,
                        "issues": [issue["type"] for issue in new_issues],
                    }
                )
                logger.warning(
                    "payment_discrepancy_found",
                    payment_id=str(payment_id),
                    gateway_reference=reference,
                    issues=[issue["type"] for issue in new_issues],
                )

        unmatched = [
            ref
            for ref, intent in intents.items()
            if ref not in matched_references and intent.status == "succeeded"
        ]
        known = await self._find_known_references(unmatched)
        missing_locally = [
            {
                "gateway_reference": ref,
                "amount_minor": intents[ref].amount,
                "currency": intents[ref].currency,
            }
            for ref in unmatched
            if ref not in known
        ]
        if missing_locally:
            logger.warning("payments_missing_locally", count=len(missing_locally))

        await self._finish_run(
            run_id,
            "completed",
            checked=checked,
            issues_found=issues_found,
            details={
                "reconciliations": reconciliations[:100],  # Limit stored details
                "missing_locally": missing_locally[:100],
                "errors": errors[:100],
            },
        )

        metrics.set_reconciliation_metrics(checked, issues_found)
        metrics.record_job_run(JOB_NAME, "success", time.time() - start_time)
        logger.info(
            "reconciliation_completed",
            checked=checked,
            issues_found=issues_found,
            missing_locally=len(missing_locally),
            errors=len(errors),
        )

        return {
            "run_id": run_id,
            "checked": checked,
            "issues_found": issues_found,
            "reconciliations": reconciliations,
            "missing_locally": missing_locally,
            "errors": errors,
        }
