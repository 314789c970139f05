"""
Outbox dispatcher: delivers EscrowEvent rows to the notification inbox.

Runs after every commit that records an event and once a minute via
celery-beat. Delivery failures are counted on the event and never reach
the code that recorded it.
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.db import transaction
from django.utils import timezone

from escrow.conf import get_escrow_settings
from escrow.models import EscrowEvent
from escrow.state_machines import DispatchStatus, EscrowEventType

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

EVENT_TITLES = {
    EscrowEventType.ORDER_CREATED: "New order created",
    EscrowEventType.PAYMENT_AUTHORIZED: "Payment authorized",
    EscrowEventType.AUTHORIZATION_EXPIRED: "Payment authorization expired",
    EscrowEventType.AUTHORIZATION_CANCELLED: "Payment authorization released",
    EscrowEventType.PRICE_ADJUSTMENT_REQUESTED: "Price change requested",
    EscrowEventType.PRICE_ADJUSTMENT_APPROVED: "Price change approved",
    EscrowEventType.PRICE_ADJUSTMENT_REJECTED: "Price change rejected",
    EscrowEventType.PRICE_ADJUSTMENT_EXPIRED: "Price change expired",
    EscrowEventType.PRICE_ADJUSTMENT_CANCELLED: "Price change withdrawn",
    EscrowEventType.PAYMENT_CAPTURED: "Payment captured",
    EscrowEventType.PAYOUT_SCHEDULED: "Payout scheduled",
    EscrowEventType.PAYOUT_RELEASED: "Payout released",
    EscrowEventType.REFUND_ISSUED: "Refund issued",
    EscrowEventType.ORDER_CANCELLED: "Order cancelled",
    EscrowEventType.DISPUTE_OPENED: "Dispute opened",
    EscrowEventType.DISPUTE_RESOLVED: "Dispute resolved",
    EscrowEventType.DISPUTE_WITHDRAWN: "Dispute withdrawn",
}


def render_body(event: EscrowEvent) -> str:
    """Short human-readable line built from the event payload."""
    payload = event.payload or {}
    currency = str(payload.get("currency", "usd")).upper()
    amount = payload.get("amount_cents")
    if amount is None:
        amount = payload.get("current_price_cents")
    if amount is None:
        return ""
    return f"Amount: {int(amount) / 100:.2f} {currency}"


def deliver(event: EscrowEvent) -> None:
    """
    Hand one event to the notification sink.

    Raises:
        RuntimeError: the sink rejected the event
    """
    from notifications.services import NotificationService

    result = NotificationService.notify(
        recipient_id=event.recipient_id,
        event_type=event.event_type,
        title=EVENT_TITLES.get(event.event_type, event.get_event_type_display()),
        body=render_body(event),
        data=event.payload,
        idempotency_key=f"escrow_event:{event.id}",
    )
    if not result.success:
        raise RuntimeError(result.error or "Notification rejected")


@shared_task(bind=True)
def dispatch_escrow_events(self) -> dict:
    """
    Deliver pending outbox events, oldest first.

    Rows are claimed with SKIP LOCKED so concurrent dispatchers never
    deliver the same event twice.

    Returns:
        Dict with dispatched and failed counts
    """
    max_attempts = get_escrow_settings().event_max_attempts
    dispatched = 0
    failed = 0

    with transaction.atomic():
        events = list(
            EscrowEvent.objects.select_for_update(skip_locked=True)
            .filter(dispatch_status=DispatchStatus.PENDING)
            .order_by("created_at")[:BATCH_SIZE]
        )

        for event in events:
            try:
                with transaction.atomic():
                    deliver(event)
            except Exception as e:
                event.attempts += 1
                event.last_error = str(e)[:1000]
                if event.attempts >= max_attempts:
                    event.dispatch_status = DispatchStatus.FAILED
                    logger.error(
                        "Escrow event delivery abandoned",
                        extra={
                            "event_id": str(event.id),
                            "event_type": event.event_type,
                            "attempts": event.attempts,
                        },
                    )
                else:
                    logger.warning(
                        f"Escrow event delivery failed: {e}",
                        extra={"event_id": str(event.id), "attempts": event.attempts},
                    )
                event.save(update_fields=["attempts", "last_error", "dispatch_status", "updated_at"])
                failed += 1
                continue

            event.attempts += 1
            event.dispatch_status = DispatchStatus.DISPATCHED
            event.dispatched_at = timezone.now()
            event.save(update_fields=["attempts", "dispatch_status", "dispatched_at", "updated_at"])
            dispatched += 1

    if dispatched or failed:
        logger.info(
            f"Escrow event dispatch complete: {dispatched} dispatched, {failed} failed",
            extra={"dispatched": dispatched, "failed": failed},
        )
    return {"dispatched": dispatched, "failed": failed}
