"""Settlement jobs and lifecycle services."""
from .escrow import EscrowReleaseJob
from .orders import OrderService
from .payouts import PayoutBatchJob, PayoutService
from .platform_settings import PlatformSettingsProvider
from .reconciliation import ReconciliationEngine

__all__ = [
    "EscrowReleaseJob",
    "OrderService",
    "PayoutBatchJob",
    "PayoutService",
    "PlatformSettingsProvider",
    "ReconciliationEngine",
]
