"""
Webhook event handlers for Stripe events.

Handlers receive a stored WebhookEvent and return a ServiceResult. All
state changes go through EscrowOrchestrator so they take the order lock
like every other escrow mutation.

Usage:
    from escrow.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("payment_intent.processing")
    def handle_processing(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from typing import Callable

from core.services import ServiceResult
from escrow.adapters import PaymentIntentResult
from escrow.models import AuthorizationHold, RefundRecord, WebhookEvent
from escrow.state_machines import RefundStatus

logger = logging.getLogger(__name__)


WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """Register a handler for a Stripe event type."""

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Route an event to its handler.

    Event types without a handler succeed so Stripe stops resending them.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)
    if handler is None:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"processor_event_id": webhook_event.processor_event_id},
        )
        return ServiceResult.success(None)
    return handler(webhook_event)


# =============================================================================
# Helpers
# =============================================================================


def intent_from_payload(obj: dict) -> PaymentIntentResult:
    return PaymentIntentResult(
        id=obj["id"],
        status=obj.get("status", ""),
        amount_cents=obj.get("amount") or 0,
        currency=obj.get("currency", "usd"),
        amount_capturable=obj.get("amount_capturable") or 0,
        amount_received=obj.get("amount_received") or 0,
        metadata=dict(obj.get("metadata") or {}),
        raw_response=obj,
    )


def find_hold(obj: dict) -> AuthorizationHold | None:
    """Match a PaymentIntent to its hold by metadata, then by reference."""
    hold_id = (obj.get("metadata") or {}).get("hold_id")
    if hold_id:
        hold = AuthorizationHold.objects.filter(pk=hold_id).first()
        if hold is not None:
            return hold
    return AuthorizationHold.objects.filter(processor_reference=obj.get("id")).first()


def _sync_intent(webhook_event: WebhookEvent) -> ServiceResult:
    from escrow.services import EscrowOrchestrator

    obj = webhook_event.get_object()
    if not obj.get("id"):
        return ServiceResult.failure(
            "Could not extract payment_intent from webhook",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    hold = find_hold(obj)
    if hold is None:
        logger.warning(
            "No authorization hold for PaymentIntent",
            extra={
                "processor_event_id": webhook_event.processor_event_id,
                "payment_intent_id": obj["id"],
            },
        )
        return ServiceResult.success(None)

    return EscrowOrchestrator.sync_hold(hold, intent_from_payload(obj))


def _reconcile_order(webhook_event: WebhookEvent, payment_intent_id: str | None) -> ServiceResult:
    from escrow.services import EscrowOrchestrator

    if not payment_intent_id:
        return ServiceResult.failure(
            "Could not extract payment_intent from webhook",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    hold = AuthorizationHold.objects.filter(processor_reference=payment_intent_id).first()
    if hold is None:
        return ServiceResult.success(None)

    has_pending = RefundRecord.objects.filter(
        order_id=hold.order_id,
        status=RefundStatus.PENDING,
        processor_attempted_at__isnull=False,
    ).exists()
    if not has_pending:
        # The synchronous path already recorded this refund
        return ServiceResult.success(None)

    return EscrowOrchestrator.reconcile_order_payments(hold.order_id)


# =============================================================================
# Payment Intent Handlers
# =============================================================================


@register_handler("payment_intent.amount_capturable_updated")
def handle_amount_capturable_updated(webhook_event: WebhookEvent) -> ServiceResult:
    """Funds are held: confirm a hold still Pending Confirmation."""
    return _sync_intent(webhook_event)


@register_handler("payment_intent.payment_failed")
def handle_payment_failed(webhook_event: WebhookEvent) -> ServiceResult:
    """Authorization failed: the pending hold moves to Failed."""
    return _sync_intent(webhook_event)


@register_handler("payment_intent.canceled")
def handle_payment_canceled(webhook_event: WebhookEvent) -> ServiceResult:
    """Processor cancelled the intent: pending holds fail, capturable ones expire."""
    return _sync_intent(webhook_event)


# =============================================================================
# Refund Handlers
# =============================================================================


@register_handler("charge.refunded")
def handle_charge_refunded(webhook_event: WebhookEvent) -> ServiceResult:
    return _reconcile_order(webhook_event, webhook_event.get_object().get("payment_intent"))


@register_handler("refund.updated")
def handle_refund_updated(webhook_event: WebhookEvent) -> ServiceResult:
    return _reconcile_order(webhook_event, webhook_event.get_object().get("payment_intent"))
