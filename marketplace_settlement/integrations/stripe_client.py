"""
Stripe access for the settlement jobs.

Payouts move money with ``Transfer.create`` to the seller's connected account;
reconciliation reads PaymentIntents. The SDK is synchronous, so every call runs
in a worker thread behind a circuit breaker. Failures surface as ``StripeError``
carrying a retry classification, and tenacity retries anything that is not
permanent. Retried transfers reuse the caller's idempotency key, so Stripe
never creates a second transfer for the same payout.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """How a failed Stripe call should be treated."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


# Checked in order; anything unlisted is treated as transient
_ERROR_TYPES: Tuple[Tuple[Tuple[Type[stripe.StripeError], ...], StripeErrorType], ...] = (
    ((stripe.RateLimitError,), StripeErrorType.RATE_LIMIT),
    ((stripe.APIConnectionError, stripe.APIError), StripeErrorType.TRANSIENT),
    (
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.AuthenticationError,
            stripe.PermissionError,
        ),
        StripeErrorType.PERMANENT,
    ),
)


class StripeError(Exception):
    """A failed Stripe call, classified for retry decisions."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.code = code

    @property
    def is_resource_missing(self) -> bool:
        """True when Stripe reported the object does not exist."""
        return self.code == "resource_missing"


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type != StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Stops calling Stripe after repeated failures.

    ``closed`` passes calls through. ``failure_threshold`` consecutive failures
    open it; while open every call fails fast with a transient ``StripeError``.
    After ``timeout`` seconds one call is let through (``half_open``):
    ``success_threshold`` successes close the breaker, a failure reopens it.
    Invalid requests are the caller's fault and do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.clock = clock
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.state = "closed"

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run ``func`` unless the breaker is open.

        Raises:
            StripeError: If the breaker is open and the timeout has not passed
        """
        self._admit()
        try:
            result = func(*args, **kwargs)
        except stripe.InvalidRequestError:
            raise
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _admit(self) -> None:
        if self.state != "open":
            return
        if self.opened_at is not None and self.clock() - self.opened_at > self.timeout:
            self.success_count = 0
            self._set_state("half_open")
            return
        raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.info("circuit_breaker_state_changed", previous=self.state, state=state)
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def _record_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def _record_failure(self) -> None:
        self.failure_count += 1
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.opened_at = self.clock()
            self._set_state("open")


class StripeClient:
    """Async facade over the Stripe SDK calls the settlement jobs make."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()
        logger.info("stripe_client_initialized", test_mode=settings.is_test_mode)

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        for error_classes, error_type in _ERROR_TYPES:
            if isinstance(error, error_classes):
                return error_type
        return StripeErrorType.TRANSIENT

    def _wrap_error(self, operation: str, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        code = getattr(error, "code", None)
        metrics.record_stripe_api_error(error_type.value)
        logger.warning(
            "stripe_call_failed",
            operation=operation,
            error_type=error_type.value,
            error_code=code,
            error=str(error),
        )
        return StripeError(
            message=getattr(error, "user_message", None) or str(error),
            error_type=error_type,
            original_error=error,
            code=code,
        )

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        started = time.perf_counter()
        outcome = "error"
        try:
            result = await asyncio.to_thread(self.circuit_breaker.call, func)
            outcome = "success"
            return result
        except stripe.StripeError as e:
            raise self._wrap_error(operation, e) from e
        finally:
            metrics.record_stripe_api_call(operation, outcome, time.perf_counter() - started)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def create_transfer(
        self,
        amount_minor: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> stripe.Transfer:
        """
        Transfer funds from the platform balance to a connected account.

        Args:
            amount_minor: Amount in minor units (kobo for NGN)
            currency: ISO currency code
            destination: Connected account id (acct_...)
            idempotency_key: Stable per payout; a repeat returns the original transfer
            metadata: Stored on the transfer for support lookups

        Raises:
            StripeError: Once retries are exhausted or on a permanent failure
        """
        logger.info(
            "creating_transfer",
            amount_minor=amount_minor,
            destination=destination,
            idempotency_key=idempotency_key,
        )
        transfer = await self._call(
            "create_transfer",
            lambda: stripe.Transfer.create(
                amount=amount_minor,
                currency=currency.lower(),
                destination=destination,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
        )
        logger.info("transfer_created", transfer_id=transfer.id, idempotency_key=idempotency_key)
        return transfer

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """Fetch one PaymentIntent; a missing one raises with ``is_resource_missing``."""
        return await self._call(
            "retrieve_payment_intent",
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def list_payment_intents(
        self,
        limit: int = 100,
        starting_after: Optional[str] = None,
        created_gte: Optional[int] = None,
        created_lte: Optional[int] = None,
    ) -> stripe.ListObject:
        """
        One page of PaymentIntents, newest first.

        Args:
            limit: Page size (Stripe caps it at 100)
            starting_after: Id of the last item of the previous page
            created_gte: Unix timestamp lower bound
            created_lte: Unix timestamp upper bound
        """
        params: Dict[str, Any] = {"limit": limit}
        if starting_after:
            params["starting_after"] = starting_after
        created = {
            key: value
            for key, value in (("gte", created_gte), ("lte", created_lte))
            if value
        }
        if created:
            params["created"] = created
        logger.debug(
            "listing_payment_intents",
            limit=limit,
            starting_after=starting_after,
            created_window=created or None,
        )
        return await self._call(
            "list_payment_intents", lambda: stripe.PaymentIntent.list(**params)
        )
