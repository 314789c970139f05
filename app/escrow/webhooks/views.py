"""
Stripe webhook endpoint.

The view verifies the signature, stores the event once (unique
processor_event_id) and queues escrow.tasks.process_webhook_event. It
returns immediately; all escrow work happens in the task.
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from escrow.adapters import StripeAdapter
from escrow.exceptions import ProcessorInvalidRequest
from escrow.models import WebhookEvent
from escrow.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive and queue a Stripe webhook.

    Returns:
        200: Event accepted (new or duplicate)
        400: Missing or invalid signature, or malformed event
    """
    signature = request.headers.get("Stripe-Signature", "")
    if not signature:
        logger.warning("Webhook received without Stripe-Signature header")
        return HttpResponse("Missing signature", status=400)

    try:
        event_data = StripeAdapter.verify_webhook_signature(request.body, signature)
    except ProcessorInvalidRequest as e:
        logger.warning("Webhook signature verification failed", extra={"error": str(e)})
        return HttpResponse("Invalid signature", status=400)

    processor_event_id = event_data.get("id")
    event_type = event_data.get("type")
    if not processor_event_id or not event_type:
        logger.warning("Webhook missing required fields")
        return HttpResponse("Invalid event", status=400)

    webhook_event, created = WebhookEvent.objects.get_or_create(
        processor_event_id=processor_event_id,
        defaults={
            "event_type": event_type,
            "payload": event_data,
            "status": WebhookEventStatus.PENDING,
        },
    )

    if not created and webhook_event.is_processed:
        logger.info("Webhook already processed", extra={"processor_event_id": processor_event_id})
        return HttpResponse("Already processed", status=200)

    try:
        from escrow.tasks import process_webhook_event

        process_webhook_event.delay(str(webhook_event.id))
    except Exception:
        # The stored row can still be replayed with process_webhook_event
        logger.error(
            "Failed to queue webhook",
            extra={"processor_event_id": processor_event_id},
            exc_info=True,
        )

    logger.info(
        f"Received Stripe webhook: {event_type}",
        extra={"processor_event_id": processor_event_id, "is_new": created},
    )
    return HttpResponse("Accepted", status=200)
