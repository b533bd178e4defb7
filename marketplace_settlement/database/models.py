"""SQLAlchemy database models for escrow settlement and payouts."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only auto-increments INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class OrderStatus:
    """Order lifecycle states."""

    PLACED = "placed"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    ESCROW_HELD = "escrow_held"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"

    ALL = (PLACED, PAID, SHIPPED, DELIVERED, ESCROW_HELD, RELEASED, DISPUTED, REFUNDED)
    RELEASABLE = (DELIVERED, ESCROW_HELD)


class PayoutStatus:
    """Payout request states. Only ever move forward."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED)
    TERMINAL = (COMPLETED, FAILED)


class PaymentStatus:
    """Payment record states, mirrored from the gateway."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"

    ALL = (PENDING, PROCESSING, SUCCEEDED, FAILED, REFUNDED)


class LedgerEntryType:
    """Seller balance movement types."""

    SALE = "sale"
    PAYOUT = "payout"
    PAYOUT_REVERSAL = "payout_reversal"

    ALL = (SALE, PAYOUT, PAYOUT_REVERSAL)


def _in_clause(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Seller(Base):
    """
    Seller accounts table.

    Holds the seller's gateway destination and the available balance that
    escrow releases credit and payouts debit.
    """

    __tablename__ = "sellers"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    available_balance_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("available_balance_minor >= 0", name="non_negative_balance"),
    )

    def __repr__(self) -> str:
        """String representation of Seller."""
        return f"<Seller(id={self.id}, balance={self.available_balance_minor})>"


class Order(Base):
    """
    Orders table.

    Orders are never deleted; every status change is also written to
    order_events.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("sellers.id"), nullable=False, index=True
    )
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    commission_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    net_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dispute: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("total_minor > 0", name="positive_order_total"),
        CheckConstraint(_in_clause("status", OrderStatus.ALL), name="valid_order_status"),
        Index("idx_orders_status_delivered", "status", "delivered_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, seller_id={self.seller_id}, "
            f"total={self.total_minor}, status={self.status})>"
        )


class OrderEvent(Base):
    """
    Order status history table.

    Append-only audit trail of every order transition.
    """

    __tablename__ = "order_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    from_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False, default="system")
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of OrderEvent."""
        return (
            f"<OrderEvent(order_id={self.order_id}, "
            f"{self.from_status}->{self.to_status})>"
        )


class PayoutRequest(Base):
    """
    Seller payout requests table.

    Created by a seller action; mutated only by the payout batch job (and
    explicit operator resume).
    """

    __tablename__ = "payout_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("sellers.id"), nullable=False, index=True
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transfer_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_of: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="positive_payout_amount"),
        CheckConstraint(_in_clause("status", PayoutStatus.ALL), name="valid_payout_status"),
        Index("idx_payout_requests_status_scheduled", "status", "scheduled_for"),
        # One pending request per seller
        Index(
            "uq_payout_pending_per_seller",
            "seller_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of PayoutRequest."""
        return (
            f"<PayoutRequest(id={self.id}, seller_id={self.seller_id}, "
            f"amount={self.amount_minor}, status={self.status})>"
        )


class Payment(Base):
    """
    Payment records table.

    Created at payment time. The status mirrors the gateway and is only
    corrected by reconciliation, which also appends discrepancy annotations.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    gateway_reference: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    discrepancies: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="positive_amount"),
        CheckConstraint(_in_clause("status", PaymentStatus.ALL), name="valid_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount_minor}, status={self.status})>"
        )


class LedgerEntry(Base):
    """
    Seller ledger table.

    Immutable record of every balance movement (sales credited by escrow
    release, payout reservations and their reversals).
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    entry_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    payout_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(_in_clause("entry_type", LedgerEntryType.ALL), name="valid_entry_type"),
        # At most one sale credit per order
        Index(
            "uq_ledger_sale_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("entry_type = 'sale'"),
            sqlite_where=text("entry_type = 'sale'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of LedgerEntry."""
        return (
            f"<LedgerEntry(seller_id={self.seller_id}, type={self.entry_type}, "
            f"amount={self.amount_minor})>"
        )


class ReconciliationRun(Base):
    """
    Reconciliation run tracking table.

    One row per run comparing local payment records with the gateway log.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    checked: Mapped[int | None] = mapped_column(Integer, nullable=True)
    issues_found: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationRun."""
        return f"<ReconciliationRun(id={self.id}, status={self.status})>"


class PlatformSetting(Base):
    """Platform-wide settlement settings editable by administrators."""

    __tablename__ = "platform_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        """String representation of PlatformSetting."""
        return f"<PlatformSetting(key={self.key}, value={self.value})>"
