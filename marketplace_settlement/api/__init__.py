"""FastAPI application and routes."""
from .main import app
from .schemas import (
    EscrowReleaseCronResponse,
    PayoutBatchCronResponse,
    PayoutResponse,
    ReconciliationCronResponse,
)

__all__ = [
    "app",
    "EscrowReleaseCronResponse",
    "PayoutBatchCronResponse",
    "PayoutResponse",
    "ReconciliationCronResponse",
]
