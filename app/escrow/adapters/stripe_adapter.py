"""
Stripe adapter: the payment processor port for escrow.

Every processor call goes through StripeAdapter so that timeouts,
idempotency keys, logging and error translation are uniform.

Escrow holds are manual-capture PaymentIntents:
    authorize  -> PaymentIntent.create(capture_method="manual", confirm=True)
    capture    -> PaymentIntent.capture(amount_to_capture=...)
    cancel     -> PaymentIntent.cancel()
    refund     -> Refund.create(payment_intent=...)
    get_status -> PaymentIntent.retrieve()

Retry policy:
    call_with_retry() retries transient errors with exponential backoff.
    Use it only for authorize, cancel and read-only calls, which are safe
    to resend with the same idempotency key. Capture and refund are never
    retried here; their callers confirm remote state first.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: Retry attempts for call_with_retry (default: 3)
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from escrow.exceptions import (
    ProcessorDeclined,
    ProcessorError,
    ProcessorInvalidRequest,
    ProcessorRateLimited,
    ProcessorTimeout,
    ProcessorUnavailable,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class PaymentIntentResult:
    """
    Processor view of a hold.

    Attributes:
        id: PaymentIntent ID (pi_xxx)
        status: requires_capture, succeeded, canceled, processing, ...
        amount_cents: Authorized amount
        amount_capturable: Amount still capturable
        amount_received: Amount captured so far
    """

    id: str
    status: str
    amount_cents: int
    currency: str
    amount_capturable: int = 0
    amount_received: int = 0
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_capturable(self) -> bool:
        return self.status == "requires_capture"

    @property
    def is_captured(self) -> bool:
        return self.status == "succeeded"


@dataclass
class RefundResult:
    id: str
    status: str
    amount_cents: int
    currency: str
    payment_intent_id: str
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_failed(self) -> bool:
        return self.status in ("failed", "canceled")


# =============================================================================
# Idempotency Keys
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Deterministic idempotency keys derived from (operation, entity id).

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same entity and operation always give the same key, so a resent
    request can never create a second hold, capture or refund.
    """

    @staticmethod
    def generate(operation: str, entity_id: uuid.UUID | str, attempt: int = 1) -> str:
        entity_str = str(entity_id)
        digest = hashlib.sha256(
            f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}".encode()
        ).hexdigest()[:8]
        return f"{operation}:{entity_str}:{attempt}:{digest}"


# =============================================================================
# Retry Helpers
# =============================================================================


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff with 0-25% jitter.

        attempt 0: 1.0 - 1.25s
        attempt 1: 2.0 - 2.5s
        attempt 2: 4.0 - 5.0s
    """
    delay = min(base * (2**attempt), max_delay)
    return delay + delay * random.uniform(0, 0.25)


def call_with_retry(func: Callable[..., Any], *args: Any, max_retries: int | None = None, **kwargs: Any) -> Any:
    """
    Call an idempotency-keyed or read-only processor operation, retrying
    transient failures.

    Permanent errors (declines, invalid requests) propagate immediately.
    """
    if max_retries is None:
        max_retries = getattr(settings, "STRIPE_MAX_RETRIES", 3)

    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except ProcessorError as e:
            if not e.is_retryable or attempt >= max_retries:
                raise
            delay = backoff_delay(attempt)
            logger.warning(
                "Retrying processor call",
                extra={
                    "operation": getattr(func, "__name__", repr(func)),
                    "attempt": attempt + 1,
                    "delay_seconds": round(delay, 2),
                    "error_code": e.error_code,
                },
            )
            time.sleep(delay)
            attempt += 1


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Stateless Stripe client used by escrow services.

    All methods are classmethods and safe to call from Celery workers.
    Errors are translated into escrow.exceptions.ProcessorError subclasses.
    """

    @staticmethod
    def _configure_stripe() -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = 0
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @staticmethod
    def _intent_result(intent: Any) -> PaymentIntentResult:
        return PaymentIntentResult(
            id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
            amount_capturable=intent.amount_capturable or 0,
            amount_received=intent.amount_received or 0,
            metadata=dict(intent.metadata or {}),
            raw_response=intent.to_dict(),
        )

    @staticmethod
    def _refund_result(refund: Any) -> RefundResult:
        return RefundResult(
            id=refund.id,
            status=refund.status,
            amount_cents=refund.amount,
            currency=refund.currency,
            payment_intent_id=refund.payment_intent,
            metadata=dict(refund.metadata or {}),
            raw_response=refund.to_dict(),
        )

    @classmethod
    def _call(cls, operation: str, log_context: dict[str, Any], func: Callable[[], Any]) -> Any:
        """Run one Stripe call with timing and error translation."""
        cls._configure_stripe()
        log = cls.get_logger()
        log_context = {"operation": operation, **log_context}

        start_time = time.monotonic()
        log.info("Starting Stripe operation", extra=log_context)
        try:
            response = func()
        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

        log.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "status": getattr(response, "status", None),
                "duration_ms": (time.monotonic() - start_time) * 1000,
            },
        )
        return response

    # =========================================================================
    # Holds
    # =========================================================================

    @classmethod
    def authorize(
        cls,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PaymentIntentResult:
        """
        Place a manual-capture hold on a saved payment method.

        Returns the intent; ``requires_capture`` means the funds are held.

        Raises:
            ProcessorDeclined: Card declined or insufficient funds
            ProcessorUnavailable / ProcessorTimeout: Transient, resend with
                the same idempotency key
        """
        intent = cls._call(
            "authorize",
            {"amount_cents": amount_cents, "idempotency_key": idempotency_key},
            lambda: stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                capture_method="manual",
                confirm=True,
                off_session=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
        )
        return cls._intent_result(intent)

    @classmethod
    def capture(
        cls,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        """
        Capture ``amount_cents`` from a hold. Any remainder is released.

        Not retried here. On ProcessorTimeout the outcome is unknown and
        the caller must call get_status() before capturing again.
        """
        intent = cls._call(
            "capture",
            {
                "payment_intent_id": payment_intent_id,
                "amount_cents": amount_cents,
                "idempotency_key": idempotency_key,
            },
            lambda: stripe.PaymentIntent.capture(
                payment_intent_id,
                amount_to_capture=amount_cents,
                idempotency_key=idempotency_key,
            ),
        )
        return cls._intent_result(intent)

    @classmethod
    def cancel(cls, payment_intent_id: str, idempotency_key: str) -> PaymentIntentResult:
        """Release a hold. Cancelling an already-canceled intent is reported as-is."""
        intent = cls._call(
            "cancel",
            {"payment_intent_id": payment_intent_id, "idempotency_key": idempotency_key},
            lambda: stripe.PaymentIntent.cancel(
                payment_intent_id,
                cancellation_reason="abandoned",
                idempotency_key=idempotency_key,
            ),
        )
        return cls._intent_result(intent)

    @classmethod
    def get_status(cls, payment_intent_id: str) -> PaymentIntentResult:
        """Read-only lookup used to confirm remote state before any retry."""
        intent = cls._call(
            "get_status",
            {"payment_intent_id": payment_intent_id},
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
        )
        return cls._intent_result(intent)

    # =========================================================================
    # Refunds
    # =========================================================================

    @classmethod
    def refund(
        cls,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Refund part of a captured intent.

        ``metadata`` must carry ``refund_record_id`` so find_refund() can
        locate the refund after a timeout.
        """
        refund = cls._call(
            "refund",
            {
                "payment_intent_id": payment_intent_id,
                "amount_cents": amount_cents,
                "idempotency_key": idempotency_key,
            },
            lambda: stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=amount_cents,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
        )
        return cls._refund_result(refund)

    @classmethod
    def find_refund(cls, payment_intent_id: str, refund_record_id: str) -> RefundResult | None:
        """Look up the processor refund created for a RefundRecord, if any."""
        refunds = cls._call(
            "find_refund",
            {"payment_intent_id": payment_intent_id, "refund_record_id": refund_record_id},
            lambda: stripe.Refund.list(payment_intent=payment_intent_id, limit=100),
        )
        for refund in refunds.auto_paging_iter():
            if (refund.metadata or {}).get("refund_record_id") == refund_record_id:
                return cls._refund_result(refund)
        return None

    # =========================================================================
    # Webhooks
    # =========================================================================

    @classmethod
    def verify_webhook_signature(cls, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook.

        Raises:
            ProcessorInvalidRequest: Bad signature or payload
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            raise ProcessorInvalidRequest(
                "Invalid webhook signature",
                processor_code="signature_verification_failed",
                details={"error": str(e)},
            )
        return event.to_dict()

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate a Stripe SDK exception into a ProcessorError.

        Connection failures are reported as ProcessorTimeout: the request may
        have reached Stripe, so its outcome is unknown.
        """
        log = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, ProcessorError):
            raise error

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            log.warning("Card error from Stripe", extra={**log_context, "decline_code": decline_code})
            raise ProcessorDeclined(
                str(error.user_message or "The card was declined"),
                processor_code=error.code,
                decline_code=decline_code,
            )

        if isinstance(error, stripe.InvalidRequestError):
            log.error("Invalid request to Stripe", extra={**log_context, "processor_code": error.code})
            raise ProcessorInvalidRequest(str(error.user_message or error), processor_code=error.code)

        if isinstance(error, stripe.RateLimitError):
            log.warning("Rate limited by Stripe", extra=log_context)
            raise ProcessorRateLimited(
                "Payment processor is busy. Please retry.",
                processor_code="rate_limit",
            )

        if isinstance(error, stripe.APIConnectionError):
            log.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise ProcessorTimeout(
                "Payment processor did not respond. The outcome is unknown.",
                processor_code="api_connection_error",
            )

        if isinstance(error, stripe.AuthenticationError):
            log.critical("Stripe authentication failed - check API key", extra=log_context)
            raise ProcessorInvalidRequest(
                "Payment processor authentication failed",
                processor_code="authentication_error",
            )

        if isinstance(error, stripe.APIError):
            log.error("Stripe API error", extra=log_context, exc_info=True)
            raise ProcessorUnavailable(
                "Payment processor error. Please retry.",
                processor_code="api_error",
            )

        log.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise ProcessorUnavailable(
            f"Unexpected payment processor error: {error}",
            processor_code="unknown_error",
        )
