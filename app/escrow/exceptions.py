"""
Escrow domain exceptions.

Exception Hierarchy:
    BaseApplicationError (from core)
    ├── ValidationError
    │   ├── InvalidAmount
    │   ├── InvalidJustification
    │   ├── AmountMismatch
    │   ├── AdjustmentAlreadyPending
    │   └── OrderNotEligible
    ├── NotFoundError
    │   ├── OrderNotFound
    │   ├── AdjustmentNotFound
    │   ├── PaymentInstrumentNotFound
    │   ├── PayoutScheduleNotFound
    │   └── DisputeNotFound
    ├── ConflictError
    │   ├── LockAcquisitionError
    │   ├── StaleRecordError
    │   ├── InvalidStateTransitionError
    │   └── PreconditionError
    │       ├── AuthorizationExpired
    │       ├── RefundExceedsCaptured
    │       ├── RefundNotAllowed
    │       ├── NoPaymentMethod
    │       ├── AdjustmentExpired
    │       ├── ProviderLimitReached
    │       ├── AdjustmentLimitReached
    │       ├── DisputeAlreadyOpen
    │       └── PayoutFrozen
    ├── ExternalServiceError
    │   └── ProcessorError
    │       ├── ProcessorDeclined (permanent)
    │       ├── ProcessorInvalidRequest (permanent)
    │       ├── ProcessorRateLimited (retryable)
    │       ├── ProcessorUnavailable (retryable)
    │       ├── ProcessorTimeout (retryable, outcome unknown)
    │       ├── CaptureFailed
    │       └── RefundFailed
    └── ConsistencyError
        ├── DoubleCaptureDetected
        └── OrphanedPayoutSchedule

Validation and precondition errors are raised before any side effect.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    ConflictError,
    ConsistencyError,
    ExternalServiceError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Validation
# =============================================================================


class InvalidAmount(ValidationError):
    """Amount is zero, negative or otherwise unusable."""

    default_error_code = "INVALID_AMOUNT"


class InvalidJustification(ValidationError):
    """A price adjustment was requested without a justification."""

    default_error_code = "INVALID_JUSTIFICATION"


class AmountMismatch(ValidationError):
    """Capture amount does not match the order's current price or holds."""

    default_error_code = "AMOUNT_MISMATCH"


class AdjustmentAlreadyPending(ValidationError):
    """The order already has a price adjustment awaiting a response."""

    default_error_code = "ADJUSTMENT_ALREADY_PENDING"


class OrderNotEligible(ValidationError):
    """The order's state does not allow the requested operation."""

    default_error_code = "ORDER_NOT_ELIGIBLE"


# =============================================================================
# Not found
# =============================================================================


class OrderNotFound(NotFoundError):
    default_error_code = "ORDER_NOT_FOUND"


class AdjustmentNotFound(NotFoundError):
    default_error_code = "ADJUSTMENT_NOT_FOUND"


class PaymentInstrumentNotFound(NotFoundError):
    default_error_code = "PAYMENT_INSTRUMENT_NOT_FOUND"


class PayoutScheduleNotFound(NotFoundError):
    default_error_code = "PAYOUT_SCHEDULE_NOT_FOUND"


class DisputeNotFound(NotFoundError):
    default_error_code = "DISPUTE_NOT_FOUND"


# =============================================================================
# Concurrency
# =============================================================================


class LockAcquisitionError(ConflictError):
    """Another worker holds the order lock."""

    default_error_code = "LOCK_ACQUISITION_FAILED"


class StaleRecordError(ConflictError):
    """The record changed since the caller read it (version mismatch)."""

    default_error_code = "STALE_RECORD"


class InvalidStateTransitionError(ConflictError):
    """A state machine transition is not allowed from the current state."""

    default_error_code = "INVALID_STATE_TRANSITION"


# =============================================================================
# Preconditions
# =============================================================================


class AuthorizationExpired(PreconditionError):
    """The authorization hold lapsed; the customer must re-authorize."""

    default_error_code = "AUTHORIZATION_EXPIRED"


class RefundExceedsCaptured(PreconditionError):
    """Requested refund is larger than the remaining refundable amount."""

    default_error_code = "REFUND_EXCEEDS_CAPTURED"


class RefundNotAllowed(PreconditionError):
    """The order's refund policy forbids this refund."""

    default_error_code = "REFUND_NOT_ALLOWED"


class NoPaymentMethod(PreconditionError):
    """The customer has no usable payment method on file."""

    default_error_code = "NO_PAYMENT_METHOD"


class AdjustmentExpired(PreconditionError):
    """The customer's response window for the adjustment has passed."""

    default_error_code = "ADJUSTMENT_EXPIRED"


class ProviderLimitReached(PreconditionError):
    """The provider has too many open orders."""

    default_error_code = "PROVIDER_LIMIT_REACHED"


class AdjustmentLimitReached(PreconditionError):
    """The order has used all of its price adjustment requests."""

    default_error_code = "ADJUSTMENT_LIMIT_REACHED"


class DisputeAlreadyOpen(PreconditionError):
    """The order already has an open dispute."""

    default_error_code = "DISPUTE_ALREADY_OPEN"


class PayoutFrozen(PreconditionError):
    """An open dispute holds the order's payout back."""

    default_error_code = "PAYOUT_FROZEN"


# =============================================================================
# Payment processor
# =============================================================================


class ProcessorError(ExternalServiceError):
    """
    Base class for payment processor failures.

    Attributes:
        processor_code: Processor error code (e.g. "card_declined")
        decline_code: Card decline reason when the processor reports one
    """

    default_error_code = "PROCESSOR_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        processor_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.processor_code = processor_code
        self.decline_code = decline_code
        details = dict(details or {})
        if processor_code:
            details["processor_code"] = processor_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)


class ProcessorDeclined(ProcessorError):
    """The processor refused the operation (card declined, insufficient funds)."""

    default_error_code = "PROCESSOR_DECLINED"


class ProcessorInvalidRequest(ProcessorError):
    """The request was malformed or refers to an unusable object."""

    default_error_code = "PROCESSOR_INVALID_REQUEST"


class ProcessorRateLimited(ProcessorError):
    default_error_code = "PROCESSOR_RATE_LIMITED"
    is_retryable = True


class ProcessorUnavailable(ProcessorError):
    """The processor could not be reached or returned a server error."""

    default_error_code = "PROCESSOR_UNAVAILABLE"
    http_status = 503
    is_retryable = True


class ProcessorTimeout(ProcessorUnavailable):
    """The call timed out; the processor may or may not have applied it."""

    default_error_code = "PROCESSOR_TIMEOUT"
    outcome_unknown = True


class CaptureFailed(ProcessorError):
    """The processor rejected a capture."""

    default_error_code = "CAPTURE_FAILED"


class RefundFailed(ProcessorError):
    """The processor rejected a refund."""

    default_error_code = "REFUND_FAILED"


# =============================================================================
# Consistency
# =============================================================================


class DoubleCaptureDetected(ConsistencyError):
    default_error_code = "DOUBLE_CAPTURE_DETECTED"


class OrphanedPayoutSchedule(ConsistencyError):
    default_error_code = "ORPHANED_PAYOUT_SCHEDULE"


__all__ = [
    "InvalidAmount",
    "InvalidJustification",
    "AmountMismatch",
    "AdjustmentAlreadyPending",
    "OrderNotEligible",
    "OrderNotFound",
    "AdjustmentNotFound",
    "PaymentInstrumentNotFound",
    "PayoutScheduleNotFound",
    "LockAcquisitionError",
    "StaleRecordError",
    "InvalidStateTransitionError",
    "AuthorizationExpired",
    "RefundExceedsCaptured",
    "RefundNotAllowed",
    "NoPaymentMethod",
    "AdjustmentExpired",
    "ProviderLimitReached",
    "AdjustmentLimitReached",
    "ProcessorError",
    "ProcessorDeclined",
    "ProcessorInvalidRequest",
    "ProcessorRateLimited",
    "ProcessorUnavailable",
    "ProcessorTimeout",
    "CaptureFailed",
    "RefundFailed",
    "DoubleCaptureDetected",
    "OrphanedPayoutSchedule",
]
