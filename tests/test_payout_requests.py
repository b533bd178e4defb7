"""
Tests for seller payout requests, re-triggers and balance summaries.
"""
import uuid
from typing import Any

import pytest

from marketplace_settlement.core.escrow import EscrowReleaseJob
from marketplace_settlement.core.payouts import (
    PayoutNotFoundError,
    PayoutService,
    PayoutStateError,
    PayoutValidationError,
    format_naira,
)
from marketplace_settlement.database.models import PayoutRequest, PayoutStatus


@pytest.fixture
def payout_service(
    test_settings: Any, session_factory: Any, platform_settings: Any, clock: Any
) -> PayoutService:
    """Payout service on the test database."""
    return PayoutService(
        settings=test_settings,
        session_factory=session_factory,
        platform_settings=platform_settings,
        clock=clock,
    )


class TestPayoutStatus:
    """Payout request state vocabulary."""

    @pytest.mark.unit
    def test_no_cancelled_state(self) -> None:
        assert PayoutStatus.ALL == ("pending", "processing", "completed", "failed")
        assert PayoutStatus.TERMINAL == ("completed", "failed")


class TestFormatNaira:
    """Validation message amounts."""

    @pytest.mark.unit
    def test_formats_minor_units(self) -> None:
        assert format_naira(100_000) == "₦1,000.00"
        assert format_naira(123_456_789) == "₦1,234,567.89"
        assert format_naira(5) == "₦0.05"


class TestRequestPayout:
    """Test suite for PayoutService.request_payout."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_creates_pending_request_three_business_days_out(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        """A Wednesday request is scheduled for the following Monday."""
        await seed.seller(balance_minor=1_000_000)

        payout = await payout_service.request_payout("seller_1", 500_000)

        assert payout["status"] == PayoutStatus.PENDING
        assert payout["amount_minor"] == 500_000
        assert payout["currency"] == "NGN"
        assert payout["requested_at"].startswith("2025-01-15T10:00:00")
        assert payout["scheduled_for"].startswith("2025-01-20T10:00:00")

        stored = await seed.get(PayoutRequest, uuid.UUID(payout["id"]))
        assert stored.status == PayoutStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_does_not_touch_balance(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        """Funds are only reserved when the batch job processes the request."""
        await seed.seller(balance_minor=1_000_000)

        await payout_service.request_payout("seller_1", 500_000)

        summary = await payout_service.get_balance_summary("seller_1")
        assert summary["available_balance_minor"] == 1_000_000
        assert summary["withdrawable_minor"] == 500_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_below_minimum_is_rejected(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        await seed.seller(balance_minor=1_000_000)

        with pytest.raises(PayoutValidationError, match=r"Minimum payout amount is ₦1,000\.00"):
            await payout_service.request_payout("seller_1", 99_999)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100])
    async def test_non_positive_amount_is_rejected(
        self, payout_service: PayoutService, amount: int
    ) -> None:
        with pytest.raises(PayoutValidationError, match="must be positive"):
            await payout_service.request_payout("seller_1", amount)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_seller_without_payout_account_is_rejected(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        await seed.seller(balance_minor=1_000_000, stripe_account_id=None)

        with pytest.raises(PayoutValidationError, match="add a payout account"):
            await payout_service.request_payout("seller_1", 500_000)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_above_balance_is_rejected(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        await seed.seller(balance_minor=300_000)

        with pytest.raises(PayoutValidationError, match=r"Insufficient balance. Available: ₦3,000\.00"):
            await payout_service.request_payout("seller_1", 500_000)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_pending_request_is_rejected(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        """One pending request per seller at a time."""
        await seed.seller(balance_minor=1_000_000)
        await payout_service.request_payout("seller_1", 200_000)

        with pytest.raises(PayoutValidationError, match="already have a pending payout"):
            await payout_service.request_payout("seller_1", 200_000)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_seller(self, payout_service: PayoutService) -> None:
        with pytest.raises(PayoutNotFoundError):
            await payout_service.request_payout("seller_missing", 500_000)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_minimum_follows_platform_settings(
        self, payout_service: PayoutService, platform_settings: Any, seed: Any
    ) -> None:
        """Administrators can raise the minimum without a deploy."""
        await seed.seller(balance_minor=1_000_000)
        await platform_settings.update({"minimum_payout_minor": 600_000}, updated_by="admin_1")

        with pytest.raises(PayoutValidationError, match=r"₦6,000\.00"):
            await payout_service.request_payout("seller_1", 500_000)


class TestRetrigger:
    """Test suite for PayoutService.retrigger."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_request_is_retried_as_new_request(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        """The failed request stays failed; the retry is due immediately."""
        await seed.seller(balance_minor=1_000_000)
        failed = await seed.payout(amount_minor=400_000, status=PayoutStatus.FAILED)

        retry = await payout_service.retrigger(failed.id, actor="ops_1")

        assert retry["id"] != str(failed.id)
        assert retry["status"] == PayoutStatus.PENDING
        assert retry["amount_minor"] == 400_000
        assert retry["retry_of"] == str(failed.id)
        assert retry["scheduled_for"].startswith("2025-01-15T10:00:00")
        assert (await seed.get(PayoutRequest, failed.id)).status == PayoutStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_can_only_be_retriggered_once(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        await seed.seller(balance_minor=1_000_000)
        failed = await seed.payout(status=PayoutStatus.FAILED)
        await payout_service.retrigger(failed.id, actor="ops_1")

        with pytest.raises(PayoutStateError, match="already been re-triggered"):
            await payout_service.retrigger(failed.id, actor="ops_1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED]
    )
    async def test_only_failed_requests_can_be_retriggered(
        self, payout_service: PayoutService, seed: Any, status: str
    ) -> None:
        await seed.seller(balance_minor=1_000_000)
        payout = await seed.payout(status=status)

        with pytest.raises(PayoutStateError, match="Only failed payouts"):
            await payout_service.retrigger(payout.id, actor="ops_1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retrigger_unknown_payout(self, payout_service: PayoutService) -> None:
        with pytest.raises(PayoutNotFoundError):
            await payout_service.retrigger(uuid.uuid4(), actor="ops_1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resume_requires_processing_status(
        self, payout_service: PayoutService, seed: Any
    ) -> None:
        await seed.seller(balance_minor=1_000_000)
        payout = await seed.payout(status=PayoutStatus.PENDING)

        with pytest.raises(PayoutStateError, match="expected processing"):
            await payout_service.resume(payout.id, actor="ops_1")


class TestBalanceSummary:
    """Test suite for PayoutService.get_balance_summary."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_summary_combines_balance_escrow_and_payouts(
        self,
        payout_service: PayoutService,
        seed: Any,
        test_settings: Any,
        session_factory: Any,
        platform_settings: Any,
        clock: Any,
    ) -> None:
        await seed.seller(balance_minor=0)
        await seed.order(total_minor=1_000_000, delivered_days_ago=8)
        await seed.order(total_minor=400_000, delivered_days_ago=2)
        await EscrowReleaseJob(
            settings=test_settings,
            session_factory=session_factory,
            platform_settings=platform_settings,
            clock=clock,
        ).run()
        await seed.payout(amount_minor=100_000, status=PayoutStatus.COMPLETED)
        await payout_service.request_payout("seller_1", 200_000)

        summary = await payout_service.get_balance_summary("seller_1")

        assert summary == {
            "seller_id": "seller_1",
            "currency": "NGN",
            "available_balance_minor": 950_000,
            "withdrawable_minor": 750_000,
            "escrow_pending_minor": 380_000,
            "pending_payouts_minor": 200_000,
            "processing_payouts_minor": 0,
            "total_paid_out_minor": 100_000,
            "released_orders": 1,
            "total_earnings_minor": 950_000,
            "commission_paid_minor": 50_000,
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_seller(self, payout_service: PayoutService) -> None:
        with pytest.raises(PayoutNotFoundError):
            await payout_service.get_balance_summary("seller_missing")
