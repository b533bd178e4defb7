"""
Pydantic schemas for API request/response models.

Scheduled trigger responses use camelCase keys because the external scheduler
and the marketplace dashboard already consume that shape.
"""
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CronModel(BaseModel):
    """Base for scheduled trigger responses."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(..., description="Whether the job ran")
    message: str = Field(..., description="Human readable summary")
    timestamp: str = Field(..., description="Completion timestamp (ISO 8601)")


class EscrowFailure(BaseModel):
    """One order that could not be released."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    error: str


class EscrowReleaseCronResponse(CronModel):
    """Response schema for /cron/auto-release-escrow."""

    released: int = Field(..., description="Orders released in this run")
    failures: List[EscrowFailure] = Field(default_factory=list)

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "success": True,
                    "message": "Released 3 orders from escrow",
                    "released": 3,
                    "failures": [],
                    "timestamp": "2025-01-06T02:00:00+00:00",
                }
            ]
        },
    )


class PayoutFailure(BaseModel):
    """One payout request that failed."""

    model_config = ConfigDict(populate_by_name=True)

    payout_id: str = Field(..., alias="payoutId")
    error: str


class PayoutBatchCronResponse(CronModel):
    """Response schema for /cron/process-payouts."""

    processed: int = Field(..., description="Payouts completed")
    failed: int = Field(..., description="Payouts failed")
    processed_ids: List[str] = Field(default_factory=list, alias="processedIds")
    failed_details: List[PayoutFailure] = Field(default_factory=list, alias="failedDetails")


class PaymentReconciliation(BaseModel):
    """Discrepancies newly recorded on one payment."""

    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(..., alias="paymentId")
    gateway_reference: Optional[str] = Field(default=None, alias="gatewayReference")
    issues: List[str]


class ReconciliationCronResponse(CronModel):
    """Response schema for /cron/reconcile-payments."""

    checked: int = Field(..., description="Payments checked")
    issues_found: int = Field(..., alias="issuesFound", description="New issues found")
    reconciliations: List[PaymentReconciliation] = Field(default_factory=list)


class CronErrorResponse(BaseModel):
    """Response schema for a failed scheduled run."""

    success: bool = False
    error: str
    timestamp: str


class CreatePayoutRequest(BaseModel):
    """Request schema for a seller payout request."""

    amount_minor: int = Field(..., gt=0, description="Amount in minor units (kobo)")

    model_config = {"json_schema_extra": {"examples": [{"amount_minor": 500_000}]}}


class PayoutResponse(BaseModel):
    """Response schema for a payout request."""

    id: str
    seller_id: str
    amount_minor: int
    currency: str
    status: str
    requested_at: str
    scheduled_for: str
    processed_at: Optional[str] = None
    transfer_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_of: Optional[str] = None


class BalanceSummaryResponse(BaseModel):
    """Response schema for a seller balance summary."""

    seller_id: str
    currency: str
    available_balance_minor: int
    withdrawable_minor: int
    escrow_pending_minor: int
    pending_payouts_minor: int
    processing_payouts_minor: int
    total_paid_out_minor: int
    released_orders: int
    total_earnings_minor: int
    commission_paid_minor: int


class ActorRequest(BaseModel):
    """Request body naming who performs an action."""

    actor: str = Field(..., min_length=1, description="User or operator identifier")


class MarkPaidRequest(ActorRequest):
    """Request schema for recording checkout payment."""

    payment_reference: str = Field(..., min_length=1)


class OpenDisputeRequest(ActorRequest):
    """Request schema for opening a dispute."""

    dispute_type: Literal["item_not_received", "wrong_item", "damaged_item"]
    description: str = Field(..., min_length=1, max_length=2000)


class ResolveDisputeRequest(ActorRequest):
    """Request schema for resolving a dispute."""

    resolution: Literal["favor_seller", "favor_buyer"]
    notes: Optional[str] = Field(default=None, max_length=2000)


class OrderResponse(BaseModel):
    """Response schema for an order."""

    id: str
    buyer_id: str
    seller_id: str
    status: str
    total_minor: int
    currency: str
    commission_minor: Optional[int] = None
    net_minor: Optional[int] = None
    payment_reference: Optional[str] = None
    delivered_at: Optional[str] = None
    released_at: Optional[str] = None
    dispute: Optional[Dict[str, Any]] = None


class PlatformSettingsResponse(BaseModel):
    """Response schema for platform settlement settings."""

    commission_rate: Decimal
    minimum_payout_minor: int
    payout_processing_days: int


class UpdatePlatformSettingsRequest(BaseModel):
    """Request schema for changing platform settings."""

    updated_by: str = Field(..., min_length=1)
    commission_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)
    minimum_payout_minor: Optional[int] = Field(default=None, ge=0)
    payout_processing_days: Optional[int] = Field(default=None, ge=1, le=30)

    @field_validator("commission_rate")
    @classmethod
    def validate_rate_precision(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        """Rates are stored with four decimal places."""
        if v is not None and v != v.quantize(Decimal("0.0001")):
            raise ValueError("Commission rate supports at most 4 decimal places")
        return v

    def changes(self) -> Dict[str, Any]:
        """Only the settings present in the request."""
        return self.model_dump(exclude={"updated_by"}, exclude_none=True)


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
