"""
Reconciliation worker for payments whose processor outcome is unknown.

Tasks:
- reconcile_order_payments: Confirm one order's Pending captures/refunds
- reconcile_pending_payments: Periodic sweep queuing the above

A capture or refund interrupted by a timeout stays Pending with
needs_reconciliation set. Reconciliation reads the processor's state and
finalizes the local records; it never sends a new capture or refund.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.utils import timezone

from escrow.models import CaptureRecord, Order, RefundRecord
from escrow.state_machines import CaptureStatus, OrderState, RefundStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_ORDERS = 200

# Attempted records younger than this are probably still in flight
STUCK_THRESHOLD = timedelta(minutes=10)

RETRYABLE_ERROR_CODES = frozenset(
    {
        "LOCK_ACQUISITION_FAILED",
        "PROCESSOR_UNAVAILABLE",
        "PROCESSOR_TIMEOUT",
        "PROCESSOR_RATE_LIMITED",
    }
)


@shared_task(bind=True, max_retries=5, default_retry_delay=120)
def reconcile_order_payments(self, order_id: str) -> dict:
    """
    Reconcile one order with the processor.

    Retries itself while the order lock is busy or the processor is
    unreachable.

    Returns:
        Dict with status "reconciled", "not_found" or "failed" and the
        per-order summary
    """
    from escrow.services import EscrowOrchestrator

    try:
        order_uuid = UUID(str(order_id))
    except ValueError:
        logger.error(f"Invalid order_id format: {order_id}")
        return {"status": "not_found", "order_id": order_id, "error": "Invalid UUID format"}

    if not Order.objects.filter(pk=order_uuid).exists():
        return {"status": "not_found", "order_id": order_id}

    result = EscrowOrchestrator.reconcile_order_payments(order_uuid, blocking=False)

    if result.success:
        logger.info("Order reconciled", extra={"order_id": order_id, **result.data})
        return {"status": "reconciled", **result.data}

    if result.error_code in RETRYABLE_ERROR_CODES and self.request.retries < self.max_retries:
        logger.info(
            "Reconciliation deferred",
            extra={"order_id": order_id, "error_code": result.error_code, "retries": self.request.retries},
        )
        raise self.retry(countdown=60 * (2**self.request.retries))

    logger.error(
        f"Order reconciliation failed: {result.error}",
        extra={"order_id": order_id, "error_code": result.error_code},
    )
    return {"status": "failed", "order_id": order_id, "error": result.error, "error_code": result.error_code}


@shared_task(bind=True)
def reconcile_pending_payments(self, max_orders: int = DEFAULT_MAX_ORDERS) -> dict:
    """
    Find orders needing reconciliation and queue one task per order.

    Picks up:
    - Captures/refunds flagged needs_reconciliation
    - Attempted captures/refunds still Pending past the stuck threshold
    - Captured orders whose payout was never scheduled
    """
    cutoff = timezone.now() - STUCK_THRESHOLD

    order_ids: dict[str, None] = {}
    for model, pending in ((CaptureRecord, CaptureStatus.PENDING), (RefundRecord, RefundStatus.PENDING)):
        flagged = model.objects.filter(status=pending, needs_reconciliation=True).values_list(
            "order_id", flat=True
        )
        stuck = model.objects.filter(status=pending, processor_attempted_at__lte=cutoff).values_list(
            "order_id", flat=True
        )
        for order_id in [*flagged[:max_orders], *stuck[:max_orders]]:
            order_ids[str(order_id)] = None

    unscheduled = Order.objects.filter(status=OrderState.CAPTURED, captured_at__lte=cutoff).values_list(
        "id", flat=True
    )
    for order_id in unscheduled[:max_orders]:
        order_ids[str(order_id)] = None

    queued_count = 0
    for order_id in list(order_ids)[:max_orders]:
        try:
            reconcile_order_payments.delay(order_id)
            queued_count += 1
        except Exception as e:
            logger.error(f"Failed to queue order reconciliation: {e}", extra={"order_id": order_id})

    logger.info(
        f"Reconciliation sweep complete: queued {queued_count} orders",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}
