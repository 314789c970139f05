"""
State enums for escrow models.

Django TextChoices used by the django-fsm fields and plain choice fields.
Every status set is closed: a value outside these enums cannot be stored.

State Machines Overview:

Order:
    created → authorized → (price_negotiating ⇄ authorized)*
        → fulfillment_pending → captured → payout_scheduled → completed
    created/authorized/price_negotiating/fulfillment_pending → cancelled
    captured/payout_scheduled/completed → refunded (fully refunded)

AuthorizationHold:
    pending_confirmation → requires_capture → captured
    pending_confirmation/requires_capture → canceled | expired
    pending_confirmation → failed

PriceAdjustmentRequest:
    pending → approved | rejected | expired | cancelled

PayoutSchedule:
    scheduled → released
    scheduled → cancelled

CaptureRecord / RefundRecord:
    pending → succeeded | failed
"""

from django.db import models


class OrderState(models.TextChoices):
    """
    Order lifecycle.

    Terminal states: COMPLETED, REFUNDED, CANCELLED.
    COMPLETED orders still accept refunds (clawed back from the provider),
    which move them to REFUNDED once nothing refundable remains.
    """

    CREATED = "created", "Created"
    AUTHORIZED = "authorized", "Authorized"
    PRICE_NEGOTIATING = "price_negotiating", "Price Negotiating"
    FULFILLMENT_PENDING = "fulfillment_pending", "Fulfillment Pending"
    CAPTURED = "captured", "Captured"
    PAYOUT_SCHEDULED = "payout_scheduled", "Payout Scheduled"
    COMPLETED = "completed", "Completed"
    REFUNDED = "refunded", "Refunded"
    CANCELLED = "cancelled", "Cancelled"


class FulfillmentTrigger(models.TextChoices):
    """Event that makes an order capturable."""

    DELIVERY_CONFIRMED = "delivery_confirmed", "Delivery Confirmed"
    PROOF_APPROVED = "proof_approved", "Proof Approved"
    SERVICE_COMPLETED = "service_completed", "Service Completed"

    @property
    def reported_by(self) -> tuple[str, ...]:
        """Order roles that may report this trigger. Staff may report any."""
        if self == FulfillmentTrigger.SERVICE_COMPLETED:
            return ("customer", "provider")
        # Delivery and proof need the customer's sign-off
        return ("customer",)


class RefundPolicy(models.TextChoices):
    FULLY_REFUNDABLE = "fully_refundable", "Fully Refundable"
    PARTIALLY_REFUNDABLE = "partially_refundable", "Partially Refundable"
    NON_REFUNDABLE = "non_refundable", "Non-Refundable"


class HoldStatus(models.TextChoices):
    """
    Authorization hold lifecycle, mirroring the processor's intent status.

    PENDING_CONFIRMATION: Intent created, processor has not confirmed funds
    REQUIRES_CAPTURE: Funds held and capturable until expires_at
    """

    PENDING_CONFIRMATION = "pending_confirmation", "Pending Confirmation"
    REQUIRES_CAPTURE = "requires_capture", "Requires Capture"
    CAPTURED = "captured", "Captured"
    CANCELED = "canceled", "Canceled"
    EXPIRED = "expired", "Expired"
    FAILED = "failed", "Failed"


class AdjustmentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    EXPIRED = "expired", "Expired"
    CANCELLED = "cancelled", "Cancelled"


class AdjustmentType(models.TextChoices):
    INCREASE = "increase", "Increase"
    DECREASE = "decrease", "Decrease"


class AdjustmentDecision(models.TextChoices):
    APPROVE = "approve", "Approve"
    REJECT = "reject", "Reject"


class CaptureStatus(models.TextChoices):
    """
    PENDING means the processor call may have been sent but its outcome
    is not recorded yet; reconciliation resolves it.
    """

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class PayoutStatus(models.TextChoices):
    SCHEDULED = "scheduled", "Scheduled"
    RELEASED = "released", "Released"
    CANCELLED = "cancelled", "Cancelled"


class RefundStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class RefundReason(models.TextChoices):
    CANCELLED = "cancelled", "Cancelled"
    DISPUTED = "disputed", "Disputed"
    SERVICE_NOT_PROVIDED = "service_not_provided", "Service Not Provided"
    QUALITY_ISSUE = "quality_issue", "Quality Issue"
    NO_SHOW = "no_show", "No Show"
    OTHER = "other", "Other"


class DisputeType(models.TextChoices):
    QUALITY = "quality", "Service Quality Issue"
    NO_SHOW = "no_show", "Provider No-Show"
    CANCELLATION = "cancellation", "Improper Cancellation"
    PAYMENT = "payment", "Payment Issue"
    OTHER = "other", "Other Issue"


class DisputeStatus(models.TextChoices):
    """
    OPEN freezes the order's payout until staff resolve it or the filer
    withdraws it.
    """

    OPEN = "open", "Open"
    RESOLVED = "resolved", "Resolved"
    WITHDRAWN = "withdrawn", "Withdrawn"


class DisputeResolution(models.TextChoices):
    FULL_REFUND = "full_refund", "Full Refund"
    PARTIAL_REFUND = "partial_refund", "Partial Refund"
    NO_REFUND = "no_refund", "No Refund"


class EscrowEventType(models.TextChoices):
    """Notification events written to the outbox."""

    ORDER_CREATED = "order_created", "Order Created"
    PAYMENT_AUTHORIZED = "payment_authorized", "Payment Authorized"
    AUTHORIZATION_EXPIRED = "authorization_expired", "Authorization Expired"
    AUTHORIZATION_CANCELLED = "authorization_cancelled", "Authorization Cancelled"
    PRICE_ADJUSTMENT_REQUESTED = "price_adjustment_requested", "Price Adjustment Requested"
    PRICE_ADJUSTMENT_APPROVED = "price_adjustment_approved", "Price Adjustment Approved"
    PRICE_ADJUSTMENT_REJECTED = "price_adjustment_rejected", "Price Adjustment Rejected"
    PRICE_ADJUSTMENT_EXPIRED = "price_adjustment_expired", "Price Adjustment Expired"
    PRICE_ADJUSTMENT_CANCELLED = "price_adjustment_cancelled", "Price Adjustment Cancelled"
    PAYMENT_CAPTURED = "payment_captured", "Payment Captured"
    PAYOUT_SCHEDULED = "payout_scheduled", "Payout Scheduled"
    PAYOUT_RELEASED = "payout_released", "Payout Released"
    REFUND_ISSUED = "refund_issued", "Refund Issued"
    ORDER_CANCELLED = "order_cancelled", "Order Cancelled"
    DISPUTE_OPENED = "dispute_opened", "Dispute Opened"
    DISPUTE_RESOLVED = "dispute_resolved", "Dispute Resolved"
    DISPUTE_WITHDRAWN = "dispute_withdrawn", "Dispute Withdrawn"


class DispatchStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    DISPATCHED = "dispatched", "Dispatched"
    FAILED = "failed", "Failed"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for processor webhook events.

    PENDING → PROCESSING → PROCESSED
    PENDING → PROCESSING → FAILED → PENDING (retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"
