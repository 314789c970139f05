"""
Celery tasks for the escrow app.

- process_webhook_event: Handle one stored processor webhook
- retry_failed_webhooks: Periodic re-queue of failed webhooks

The lifecycle sweeps live in escrow.workers and are imported here so that
Celery's autodiscovery registers them.

Usage:
    from escrow.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from escrow.models import WebhookEvent
from escrow.models.webhook_event import MAX_WEBHOOK_RETRIES
from escrow.state_machines import WebhookEventStatus
from escrow.workers import (  # noqa: F401
    dispatch_escrow_events,
    expire_adjustment_requests,
    expire_authorization_holds,
    expire_single_adjustment,
    reconcile_order_payments,
    reconcile_pending_payments,
    release_due_payouts,
    release_expired_hold,
    release_single_payout,
)

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Process a stored webhook.

    Already processed events are skipped. A handler failure marks the
    event FAILED for retry_failed_webhooks; an unexpected exception also
    triggers Celery's own retry.

    Returns:
        Dict with status: "processed", "already_processed", "not_found"
        or "handler_failed"
    """
    from escrow.webhooks.handlers import dispatch_webhook

    try:
        webhook_event = WebhookEvent.objects.get(id=UUID(str(webhook_event_id)))
    except (WebhookEvent.DoesNotExist, ValueError):
        logger.error("WebhookEvent not found", extra={"webhook_event_id": str(webhook_event_id)})
        return {"status": "not_found", "webhook_event_id": str(webhook_event_id)}

    if webhook_event.is_processed:
        return {"status": "already_processed", "webhook_event_id": str(webhook_event.id)}

    webhook_event.mark_processing()
    webhook_event.save()

    log_extra = {
        "webhook_event_id": str(webhook_event.id),
        "processor_event_id": webhook_event.processor_event_id,
        "event_type": webhook_event.event_type,
    }

    try:
        result = dispatch_webhook(webhook_event)
    except Exception as e:
        webhook_event.mark_failed(f"{type(e).__name__}: {e}")
        webhook_event.save()
        logger.exception("Webhook processing raised", extra=log_extra)
        raise

    if not result.success:
        error_msg = result.error or "Handler returned failure"
        webhook_event.mark_failed(error_msg)
        webhook_event.save()
        logger.warning(
            f"Webhook handler failed: {error_msg}",
            extra={**log_extra, "error_code": result.error_code},
        )
        return {"status": "handler_failed", "webhook_event_id": str(webhook_event.id), "error": error_msg}

    webhook_event.mark_processed()
    webhook_event.save()
    logger.info("Webhook processed", extra=log_extra)
    return {"status": "processed", "webhook_event_id": str(webhook_event.id)}


@shared_task
def retry_failed_webhooks() -> dict:
    """Re-queue FAILED webhooks that are still below the retry limit."""
    failed_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=MAX_WEBHOOK_RETRIES,
    ).order_by("created_at")[:100]

    queued_count = 0
    for webhook in failed_webhooks:
        try:
            process_webhook_event.delay(str(webhook.id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue webhook for retry: {e}",
                extra={"webhook_event_id": str(webhook.id)},
            )

    logger.info(
        f"Queued {queued_count} failed webhooks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}
