"""
State machine enums for escrow models.
"""

from escrow.state_machines.states import (
    AdjustmentDecision,
    AdjustmentStatus,
    AdjustmentType,
    CaptureStatus,
    DispatchStatus,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    EscrowEventType,
    FulfillmentTrigger,
    HoldStatus,
    OrderState,
    PayoutStatus,
    RefundPolicy,
    RefundReason,
    RefundStatus,
    WebhookEventStatus,
)

__all__ = [
    "AdjustmentDecision",
    "AdjustmentStatus",
    "AdjustmentType",
    "CaptureStatus",
    "DispatchStatus",
    "DisputeResolution",
    "DisputeStatus",
    "DisputeType",
    "EscrowEventType",
    "FulfillmentTrigger",
    "HoldStatus",
    "OrderState",
    "PayoutStatus",
    "RefundPolicy",
    "RefundReason",
    "RefundStatus",
    "WebhookEventStatus",
]
