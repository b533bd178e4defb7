"""
Tests for order lifecycle transitions and disputes.
"""
import uuid
from typing import Any

import pytest
from sqlalchemy import select

from marketplace_settlement.core.escrow import EscrowReleaseJob
from marketplace_settlement.core.orders import (
    OrderError,
    OrderNotFoundError,
    OrderService,
    OrderTransitionError,
    transition_order,
)
from marketplace_settlement.database.models import Order, OrderEvent, OrderStatus, Seller


@pytest.fixture
def order_service(session_factory: Any, clock: Any) -> OrderService:
    """Order service on the test database."""
    return OrderService(session_factory=session_factory, clock=clock)


async def _events(session_factory: Any, order_id: uuid.UUID) -> list:
    async with session_factory() as db:
        result = await db.execute(
            select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.id)
        )
        return list(result.scalars().all())


class TestOrderLifecycle:
    """Test suite for OrderService transitions."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_happy_path_through_escrow_release(
        self,
        order_service: OrderService,
        seed: Any,
        session_factory: Any,
        test_settings: Any,
        platform_settings: Any,
        clock: Any,
    ) -> None:
        """placed -> paid -> shipped -> delivered, released after the holding period."""
        await seed.seller()
        order = await seed.order(status=OrderStatus.PLACED, delivered_days_ago=None)

        paid = await order_service.mark_paid(order.id, "pi_checkout_42", actor="checkout")
        assert paid["status"] == OrderStatus.PAID
        assert paid["payment_reference"] == "pi_checkout_42"

        await order_service.mark_shipped(order.id, actor="seller_1")
        delivered = await order_service.confirm_delivery(order.id, actor="buyer_1")
        assert delivered["status"] == OrderStatus.DELIVERED
        assert delivered["delivered_at"].startswith("2025-01-15T10:00:00")

        job = EscrowReleaseJob(
            settings=test_settings,
            session_factory=session_factory,
            platform_settings=platform_settings,
            clock=clock,
        )
        assert (await job.run())["released"] == 0

        clock.advance(days=7, seconds=1)
        assert (await job.run())["released_ids"] == [str(order.id)]

        events = await _events(session_factory, order.id)
        assert [(e.from_status, e.to_status) for e in events] == [
            (OrderStatus.PLACED, OrderStatus.PAID),
            (OrderStatus.PAID, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
            (OrderStatus.DELIVERED, OrderStatus.RELEASED),
        ]
        assert [e.actor for e in events] == ["checkout", "seller_1", "buyer_1", "escrow_release_job"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_skipping_a_step_is_rejected(
        self, order_service: OrderService, seed: Any, session_factory: Any
    ) -> None:
        await seed.seller()
        order = await seed.order(status=OrderStatus.PAID, delivered_days_ago=None)

        with pytest.raises(OrderTransitionError, match="Current status: paid"):
            await order_service.confirm_delivery(order.id, actor="buyer_1")

        assert (await seed.get(Order, order.id)).status == OrderStatus.PAID
        assert await _events(session_factory, order.id) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, order_service: OrderService) -> None:
        with pytest.raises(OrderNotFoundError):
            await order_service.mark_shipped(uuid.uuid4(), actor="seller_1")


class TestDisputes:
    """Test suite for dispute handling."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_open_dispute_freezes_escrow(
        self, order_service: OrderService, seed: Any
    ) -> None:
        await seed.seller()
        order = await seed.order(delivered_days_ago=3)

        disputed = await order_service.open_dispute(
            order.id, "damaged_item", "Screen cracked on arrival", actor="buyer_1"
        )

        assert disputed["status"] == OrderStatus.DISPUTED
        assert disputed["dispute"]["type"] == "damaged_item"
        assert disputed["dispute"]["status"] == "open"
        assert disputed["dispute"]["id"].startswith("dispute_")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_released_order_cannot_be_disputed(
        self, order_service: OrderService, seed: Any
    ) -> None:
        await seed.seller()
        order = await seed.order(status=OrderStatus.RELEASED)

        with pytest.raises(OrderTransitionError, match="Current status: released"):
            await order_service.open_dispute(order.id, "wrong_item", "Blue not red", actor="buyer_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_dispute_type(self, order_service: OrderService) -> None:
        with pytest.raises(OrderError, match="Unknown dispute type"):
            await order_service.open_dispute(uuid.uuid4(), "changed_mind", "", actor="buyer_1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolution_in_favor_of_seller_returns_to_escrow(
        self,
        order_service: OrderService,
        seed: Any,
        test_settings: Any,
        session_factory: Any,
        platform_settings: Any,
        clock: Any,
    ) -> None:
        """The release job picks the order up again once resolved for the seller."""
        await seed.seller()
        order = await seed.order(delivered_days_ago=10)
        await order_service.open_dispute(order.id, "wrong_item", "Wrong size", actor="buyer_1")

        resolved = await order_service.resolve_dispute(
            order.id, "favor_seller", actor="admin_1", notes="Size matches listing"
        )

        assert resolved["status"] == OrderStatus.ESCROW_HELD
        assert resolved["dispute"]["status"] == "resolved"
        assert resolved["dispute"]["resolution"] == "favor_seller"
        assert resolved["dispute"]["notes"] == "Size matches listing"

        result = await EscrowReleaseJob(
            settings=test_settings,
            session_factory=session_factory,
            platform_settings=platform_settings,
            clock=clock,
        ).run()
        assert result["released_ids"] == [str(order.id)]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolution_before_delivery_starts_holding_period(
        self, order_service: OrderService, seed: Any
    ) -> None:
        await seed.seller()
        order = await seed.order(status=OrderStatus.SHIPPED, delivered_days_ago=None)
        await order_service.open_dispute(order.id, "item_not_received", "", actor="buyer_1")

        resolved = await order_service.resolve_dispute(order.id, "favor_seller", actor="admin_1")

        assert resolved["delivered_at"].startswith("2025-01-15T10:00:00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolution_in_favor_of_buyer_refunds(
        self, order_service: OrderService, seed: Any
    ) -> None:
        await seed.seller()
        order = await seed.order(delivered_days_ago=10)
        await order_service.open_dispute(order.id, "damaged_item", "Broken", actor="buyer_1")

        resolved = await order_service.resolve_dispute(order.id, "favor_buyer", actor="admin_1")

        assert resolved["status"] == OrderStatus.REFUNDED
        assert (await seed.get(Seller, "seller_1")).available_balance_minor == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolving_order_without_dispute_is_rejected(
        self, order_service: OrderService, seed: Any
    ) -> None:
        await seed.seller()
        order = await seed.order(delivered_days_ago=2)

        with pytest.raises(OrderTransitionError):
            await order_service.resolve_dispute(order.id, "favor_buyer", actor="admin_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_resolution(self, order_service: OrderService) -> None:
        with pytest.raises(OrderError, match="Unknown resolution"):
            await order_service.resolve_dispute(uuid.uuid4(), "split", actor="admin_1")


class TestTransitionOrder:
    """Test suite for the transition_order primitive."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disallowed_transition_raises(self, session_factory: Any) -> None:
        async with session_factory() as db:
            with pytest.raises(OrderTransitionError, match="released -> paid"):
                await transition_order(
                    db, uuid.uuid4(), (OrderStatus.RELEASED,), OrderStatus.PAID, actor="system"
                )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wrong_current_status_returns_none(
        self, session_factory: Any, seed: Any, clock: Any
    ) -> None:
        await seed.seller()
        order = await seed.order(status=OrderStatus.DISPUTED)

        async with session_factory() as db:
            previous = await transition_order(
                db,
                order.id,
                OrderStatus.RELEASABLE,
                OrderStatus.RELEASED,
                actor="system",
                now=clock(),
            )
            await db.rollback()

        assert previous is None
