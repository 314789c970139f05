"""
Escrow domain models.

- Order: Money-side lifecycle of a booking or production order
- PaymentInstrument: Customer's saved processor payment method
- AuthorizationHold: Funds reserved at the processor
- PriceAdjustmentRequest: Provider-proposed price change
- CaptureRecord: Charge taken from one hold, with the fee split
- PayoutSchedule: Provider payout waiting out the holding period
- RefundRecord: Money returned to the customer
- Dispute: Complaint that freezes the payout until resolved
- EscrowEvent: Notification outbox
- WebhookEvent: Processor webhook tracking
- WalletTransaction: Append-only wallet journal (escrow.wallet)
"""

from escrow.models.adjustment import PriceAdjustmentRequest
from escrow.models.authorization import AuthorizationHold
from escrow.models.capture import CaptureRecord
from escrow.models.dispute import Dispute
from escrow.models.event import EscrowEvent
from escrow.models.order import Order
from escrow.models.payment_instrument import PaymentInstrument
from escrow.models.payout import PayoutSchedule
from escrow.models.refund import RefundRecord
from escrow.models.webhook_event import WebhookEvent
from escrow.wallet.models import WalletTransaction

__all__ = [
    "AuthorizationHold",
    "CaptureRecord",
    "Dispute",
    "EscrowEvent",
    "Order",
    "PaymentInstrument",
    "PayoutSchedule",
    "PriceAdjustmentRequest",
    "RefundRecord",
    "WalletTransaction",
    "WebhookEvent",
]
