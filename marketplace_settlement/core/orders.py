"""
Order lifecycle transitions.

Every status change is a conditional UPDATE guarded by the expected current
status plus an order_events row, so concurrent writers cannot both win and the
history stays append-only.
"""
import uuid
from typing import Any, Dict, Iterable, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_settlement.core.clock import Clock, utcnow
from marketplace_settlement.database.connection import get_session_factory
from marketplace_settlement.database.models import Order, OrderEvent, OrderStatus

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    OrderStatus.PLACED: (OrderStatus.PAID,),
    OrderStatus.PAID: (OrderStatus.SHIPPED,),
    OrderStatus.SHIPPED: (OrderStatus.DELIVERED, OrderStatus.DISPUTED),
    OrderStatus.DELIVERED: (OrderStatus.RELEASED, OrderStatus.DISPUTED),
    OrderStatus.ESCROW_HELD: (OrderStatus.RELEASED, OrderStatus.DISPUTED),
    OrderStatus.DISPUTED: (OrderStatus.ESCROW_HELD, OrderStatus.REFUNDED),
    OrderStatus.RELEASED: (),
    OrderStatus.REFUNDED: (),
}

DISPUTE_TYPES = ("item_not_received", "wrong_item", "damaged_item")


class OrderError(Exception):
    """Base exception for order lifecycle errors."""

    pass


class OrderNotFoundError(OrderError):
    """Raised when an order does not exist."""

    pass


class OrderTransitionError(OrderError):
    """Raised when an order is not in a state that allows the transition."""

    pass


async def transition_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    from_statuses: Iterable[str],
    to_status: str,
    actor: str,
    values: Optional[Dict[str, Any]] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[Any] = None,
) -> Optional[str]:
    """
    Conditionally move an order to ``to_status``.

    The caller owns the transaction. Returns the status the order was in, or
    None when the order was not in any of ``from_statuses``.
    """
    from_statuses = tuple(from_statuses)
    for status in from_statuses:
        if to_status not in ALLOWED_TRANSITIONS[status]:
            raise OrderTransitionError(f"Transition {status} -> {to_status} is not allowed")

    now = now or utcnow()
    current = await db.get(Order, order_id, populate_existing=True)
    if current is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    previous = current.status
    if previous not in from_statuses:
        return None

    # Check-and-set on the status column; a concurrent writer makes this match nothing
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == previous)
        .values(status=to_status, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        return None

    db.add(
        OrderEvent(
            order_id=order_id,
            from_status=previous,
            to_status=to_status,
            actor=actor,
            details=details,
            created_at=now,
        )
    )
    return previous


class OrderService:
    """Buyer, seller and admin driven order transitions."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock

    async def _transition(
        self,
        order_id: uuid.UUID,
        from_statuses: Iterable[str],
        to_status: str,
        actor: str,
        values: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        from_statuses = tuple(from_statuses)
        now = self.clock()
        async with self.session_factory() as db:
            try:
                previous = await transition_order(
                    db,
                    order_id,
                    from_statuses,
                    to_status,
                    actor=actor,
                    values=values,
                    details=details,
                    now=now,
                )
                if previous is None:
                    order = await db.get(Order, order_id)
                    raise OrderTransitionError(
                        f"Cannot move order to {to_status}. Current status: {order.status}"
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

            order = await db.get(Order, order_id, populate_existing=True)

        logger.info(
            "order_transitioned",
            order_id=str(order_id),
            from_status=previous,
            to_status=to_status,
            actor=actor,
        )
        return order_to_dict(order)

    async def mark_paid(self, order_id: uuid.UUID, payment_reference: str, actor: str) -> Dict[str, Any]:
        """Record checkout completion."""
        return await self._transition(
            order_id,
            (OrderStatus.PLACED,),
            OrderStatus.PAID,
            actor,
            values={"payment_reference": payment_reference},
        )

    async def mark_shipped(self, order_id: uuid.UUID, actor: str) -> Dict[str, Any]:
        """Seller hands the order to a rider."""
        return await self._transition(
            order_id,
            (OrderStatus.PAID,),
            OrderStatus.SHIPPED,
            actor,
            values={"shipped_at": self.clock()},
        )

    async def confirm_delivery(self, order_id: uuid.UUID, actor: str) -> Dict[str, Any]:
        """Delivery confirmed; the escrow holding period starts now."""
        return await self._transition(
            order_id,
            (OrderStatus.SHIPPED,),
            OrderStatus.DELIVERED,
            actor,
            values={"delivered_at": self.clock()},
        )

    async def open_dispute(
        self,
        order_id: uuid.UUID,
        dispute_type: str,
        description: str,
        actor: str,
    ) -> Dict[str, Any]:
        """Buyer disputes the order, freezing its escrow."""
        if dispute_type not in DISPUTE_TYPES:
            raise OrderError(f"Unknown dispute type: {dispute_type}")
        dispute = {
            "id": f"dispute_{uuid.uuid4().hex[:12]}",
            "type": dispute_type,
            "description": description,
            "opened_by": actor,
            "opened_at": self.clock().isoformat(),
            "status": "open",
        }
        return await self._transition(
            order_id,
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.ESCROW_HELD),
            OrderStatus.DISPUTED,
            actor,
            values={"dispute": dispute},
            details={"dispute_id": dispute["id"], "type": dispute_type},
        )

    async def resolve_dispute(
        self,
        order_id: uuid.UUID,
        resolution: str,
        actor: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Admin resolves a dispute.

        ``favor_seller`` puts the funds back in escrow for the release job;
        ``favor_buyer`` marks the order refunded.
        """
        if resolution == "favor_seller":
            to_status = OrderStatus.ESCROW_HELD
        elif resolution == "favor_buyer":
            to_status = OrderStatus.REFUNDED
        else:
            raise OrderError(f"Unknown resolution: {resolution}")

        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            dispute = dict(order.dispute or {})
            delivered_at = order.delivered_at

        dispute.update(
            status="resolved",
            resolution=resolution,
            resolved_by=actor,
            resolved_at=self.clock().isoformat(),
            notes=notes,
        )
        values: Dict[str, Any] = {"dispute": dispute}
        if to_status == OrderStatus.ESCROW_HELD and delivered_at is None:
            # Orders disputed before delivery start their holding period now
            values["delivered_at"] = self.clock()

        return await self._transition(
            order_id,
            (OrderStatus.DISPUTED,),
            to_status,
            actor,
            values=values,
            details={"resolution": resolution},
        )


def order_to_dict(order: Order) -> Dict[str, Any]:
    """Serialize an order for API responses."""
    return {
        "id": str(order.id),
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "status": order.status,
        "total_minor": order.total_minor,
        "currency": order.currency,
        "commission_minor": order.commission_minor,
        "net_minor": order.net_minor,
        "payment_reference": order.payment_reference,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        "released_at": order.released_at.isoformat() if order.released_at else None,
        "dispute": order.dispute,
    }
