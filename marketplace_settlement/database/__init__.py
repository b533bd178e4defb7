"""Database package for the settlement service."""
from .connection import get_session_factory, init_db
from .models import (
    Base,
    LedgerEntry,
    LedgerEntryType,
    Order,
    OrderEvent,
    OrderStatus,
    Payment,
    PaymentStatus,
    PayoutRequest,
    PayoutStatus,
    PlatformSetting,
    ReconciliationRun,
    Seller,
)

__all__ = [
    "Base",
    "Seller",
    "Order",
    "OrderEvent",
    "OrderStatus",
    "PayoutRequest",
    "PayoutStatus",
    "Payment",
    "PaymentStatus",
    "LedgerEntry",
    "LedgerEntryType",
    "ReconciliationRun",
    "PlatformSetting",
    "get_session_factory",
    "init_db",
]
