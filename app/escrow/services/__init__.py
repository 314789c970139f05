"""
Escrow services.

Public entry point:
- EscrowOrchestrator: takes the order lock and returns ServiceResult

Component services (expect the caller to hold the order lock):
- AuthorizationService: holds on the customer's card
- AdjustmentService: price adjustment negotiation
- CaptureService: capture with platform fee split
- DisputeService: disputes that freeze the payout until resolved
- PayoutScheduler: provider payout scheduling and release
- RefundService: refunds and provider clawbacks
- EscrowEventService: notification outbox

Usage:
    from escrow.services import EscrowOrchestrator

    result = EscrowOrchestrator.capture(order.id)
    if result.success:
        capture = result.data
"""

from escrow.services.adjustment_service import AdjustmentService
from escrow.services.authorization_service import AuthorizationService
from escrow.services.base import ProcessorBackedService
from escrow.services.capture_service import CaptureResult, CaptureService
from escrow.services.dispute_service import DisputeService
from escrow.services.event_service import EscrowEventService
from escrow.services.orchestrator import EscrowOrchestrator, OrderStatusSnapshot
from escrow.services.payout_scheduler import PayoutScheduler
from escrow.services.refund_service import RefundOutcome, RefundService

__all__ = [
    "AdjustmentService",
    "AuthorizationService",
    "CaptureResult",
    "CaptureService",
    "DisputeService",
    "EscrowEventService",
    "EscrowOrchestrator",
    "OrderStatusSnapshot",
    "PayoutScheduler",
    "ProcessorBackedService",
    "RefundOutcome",
    "RefundService",
]
