"""
Escrow orchestrator: the public API of the escrow lifecycle.

Every method takes the order's distributed lock, delegates to the
component services and converts domain errors into a ServiceResult.
Views, webhooks and Celery tasks call this class; nothing else should
call the component services directly.

Usage:
    from escrow.services import EscrowOrchestrator

    result = EscrowOrchestrator.create_order(
        customer_id=customer.id,
        provider_id=provider.id,
        price_cents=30000,
        fulfillment_trigger=FulfillmentTrigger.DELIVERY_CONFIRMED,
    )
    if not result.success:
        return Response(result.to_response(), status=400)

    EscrowOrchestrator.authorize(result.data.id)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from django.db import transaction
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from core.exceptions import BaseApplicationError, NotFoundError, PermissionDeniedError, ValidationError
from core.services import BaseService, ServiceResult
from escrow.adapters import PaymentIntentResult
from escrow.conf import get_escrow_settings
from escrow.exceptions import (
    InvalidAmount,
    InvalidStateTransitionError,
    OrderNotEligible,
    OrderNotFound,
    ProviderLimitReached,
)
from escrow.locks import DistributedLock, check_version, order_lock
from escrow.models import AuthorizationHold, Dispute, Order, PayoutSchedule, PriceAdjustmentRequest
from escrow.models.order import OPEN_STATES
from escrow.services.adjustment_service import AdjustmentService
from escrow.services.authorization_service import AuthorizationService
from escrow.services.base import lock_order_row
from escrow.services.capture_service import CaptureResult, CaptureService
from escrow.services.dispute_service import DisputeService
from escrow.services.event_service import EscrowEventService
from escrow.services.payout_scheduler import PayoutScheduler
from escrow.services.refund_service import RefundOutcome, RefundService
from escrow.state_machines import (
    AdjustmentStatus,
    CaptureStatus,
    EscrowEventType,
    FulfillmentTrigger,
    OrderState,
    PayoutStatus,
    RefundPolicy,
    RefundReason,
)


@dataclass
class OrderStatusSnapshot:
    """Read-only view of an order's money state."""

    order_id: uuid.UUID
    status: str
    version: int
    currency: str
    original_price_cents: int
    current_price_cents: int
    refund_policy: str
    fulfillment_trigger: str
    fulfilled_at: Any
    captured_cents: int
    refunded_cents: int
    remaining_refundable_cents: int
    holds: list[dict] = field(default_factory=list)
    pending_adjustment: dict | None = None
    payout: dict | None = None


class EscrowOrchestrator(BaseService):
    """
    Entry point for every escrow operation.

    Locks are not re-entrant: methods here take the order lock exactly
    once and the component services assume it is held.
    """

    # =========================================================================
    # Orders
    # =========================================================================

    @classmethod
    def create_order(
        cls,
        customer_id,
        provider_id,
        price_cents: int,
        fulfillment_trigger: str = FulfillmentTrigger.SERVICE_COMPLETED,
        refund_policy: str = RefundPolicy.FULLY_REFUNDABLE,
        currency: str = "usd",
        metadata: dict | None = None,
    ) -> ServiceResult[Order]:
        """
        Open a new escrow order in Created.

        With enforcement enabled a provider may have at most
        ESCROW_MAX_OPEN_ORDERS_PER_PROVIDER open orders.
        """
        try:
            if price_cents is None or price_cents <= 0:
                raise InvalidAmount("The order price must be positive", details={"price_cents": price_cents})
            if str(customer_id) == str(provider_id):
                raise ValidationError("Customers cannot order from themselves")
            if fulfillment_trigger not in FulfillmentTrigger.values:
                raise ValidationError(
                    f"Unknown fulfillment trigger '{fulfillment_trigger}'",
                    details={"fulfillment_trigger": fulfillment_trigger},
                )
            if refund_policy not in RefundPolicy.values:
                raise ValidationError(
                    f"Unknown refund policy '{refund_policy}'",
                    details={"refund_policy": refund_policy},
                )

            conf = get_escrow_settings()
            provider_lock = DistributedLock(
                f"escrow:provider:{provider_id}",
                ttl=conf.order_lock_ttl,
                timeout=conf.order_lock_timeout,
            )
            with provider_lock:
                with transaction.atomic():
                    if conf.enforcement_enabled:
                        open_count = Order.objects.filter(provider_id=provider_id, status__in=OPEN_STATES).count()
                        if open_count >= conf.max_open_orders_per_provider:
                            raise ProviderLimitReached(
                                "This provider cannot take more orders right now",
                                details={"provider_id": str(provider_id), "open_orders": open_count},
                            )

                    order = Order.objects.create(
                        customer_id=customer_id,
                        provider_id=provider_id,
                        original_price_cents=price_cents,
                        current_price_cents=price_cents,
                        currency=currency.lower(),
                        fulfillment_trigger=fulfillment_trigger,
                        refund_policy=refund_policy,
                        metadata=metadata or {},
                    )
                    EscrowEventService.record_event(
                        order,
                        EscrowEventType.ORDER_CREATED,
                        recipients=[customer_id, provider_id],
                    )
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Order creation failed")

        cls.get_logger().info(
            "Escrow order created",
            extra={
                "order_id": str(order.id),
                "customer_id": str(customer_id),
                "provider_id": str(provider_id),
                "price_cents": price_cents,
            },
        )
        return ServiceResult.success(order)

    @classmethod
    def record_fulfillment(cls, order_id: uuid.UUID, trigger: str) -> ServiceResult[Order]:
        """
        Record that the order's fulfillment trigger fired.

        During a negotiation the time is stamped and the order moves to
        Fulfillment Pending once the adjustment is resolved.
        """

        def run():
            with transaction.atomic():
                order = lock_order_row(order_id)
                if trigger != order.fulfillment_trigger:
                    raise OrderNotEligible(
                        f"This order is fulfilled by '{order.fulfillment_trigger}', not '{trigger}'",
                        details={"order_id": str(order.id), "trigger": trigger},
                    )
                if order.status == OrderState.FULFILLMENT_PENDING:
                    return order
                if order.status == OrderState.AUTHORIZED:
                    order.mark_fulfilled()
                elif order.status == OrderState.PRICE_NEGOTIATING:
                    if order.fulfilled_at is None:
                        order.fulfilled_at = timezone.now()
                else:
                    raise OrderNotEligible(
                        f"Fulfillment cannot be recorded while the order is {order.get_status_display().lower()}",
                        details={"order_id": str(order.id), "status": order.status},
                    )
                order.save()
            cls.get_logger().info(
                "Fulfillment recorded",
                extra={"order_id": str(order.id), "trigger": trigger, "status": order.status},
            )
            return order

        return cls._locked(order_id, "Fulfillment failed", run)

    @classmethod
    def cancel_order(cls, order_id: uuid.UUID, reason: str = "") -> ServiceResult[Order]:
        """
        Cancel an order that has not been captured.

        A pending adjustment is withdrawn and every active hold released.
        """

        def run():
            with transaction.atomic():
                order = lock_order_row(order_id)
                if not order.is_open:
                    raise OrderNotEligible(
                        f"A {order.get_status_display().lower()} order cannot be cancelled",
                        details={"order_id": str(order.id), "status": order.status},
                    )
                if order.captures.filter(status=CaptureStatus.PENDING, processor_attempted_at__isnull=False).exists():
                    raise OrderNotEligible(
                        "A capture for this order is still being confirmed",
                        details={"order_id": str(order.id)},
                    )

            AuthorizationService.cancel_authorizations(order_id, reason or "Order cancelled")

            with transaction.atomic():
                order = lock_order_row(order_id)
                for request in PriceAdjustmentRequest.objects.select_for_update().filter(
                    order=order, status=AdjustmentStatus.PENDING
                ):
                    request.cancel()
                    request.save()
                order.cancel(reason)
                order.save()
                EscrowEventService.record_event(
                    order,
                    EscrowEventType.ORDER_CANCELLED,
                    recipients=[order.customer_id, order.provider_id],
                    payload={"reason": reason},
                )
            cls.get_logger().info("Order cancelled", extra={"order_id": str(order.id), "reason": reason})
            return order

        return cls._locked(order_id, "Cancellation failed", run)

    @classmethod
    def update_refund_policy(
        cls,
        order_id: uuid.UUID,
        refund_policy: str,
        expected_version: int,
        changed_by=None,
    ) -> ServiceResult[Order]:
        """
        Change the refund policy if the order is still at ``expected_version``.

        After capture the customer has paid under the current policy, so a
        ``changed_by`` user must be staff. Calls without a user are trusted.
        """

        def run():
            if refund_policy not in RefundPolicy.values:
                raise ValidationError(
                    f"Unknown refund policy '{refund_policy}'",
                    details={"refund_policy": refund_policy},
                )
            with transaction.atomic():
                order = check_version(Order, order_id, expected_version)
                if order.status in (OrderState.REFUNDED, OrderState.CANCELLED):
                    raise OrderNotEligible(
                        f"A {order.get_status_display().lower()} order cannot change its refund policy",
                        details={"order_id": str(order.id), "status": order.status},
                    )
                if (
                    order.status not in OPEN_STATES
                    and changed_by is not None
                    and not getattr(changed_by, "is_staff", False)
                ):
                    raise PermissionDeniedError(
                        "Only staff can change the refund policy of a captured order",
                        details={"order_id": str(order.id), "status": order.status},
                    )
                order.refund_policy = refund_policy
                order.save(update_fields=["refund_policy", "version", "updated_at"])
            return order

        return cls._locked(order_id, "Refund policy update failed", run)

    @classmethod
    def get_order_status(cls, order_id: uuid.UUID) -> ServiceResult[OrderStatusSnapshot]:
        """Snapshot of the order. Takes no lock."""
        try:
            order = Order.objects.filter(pk=uuid.UUID(str(order_id))).first()
        except ValueError:
            order = None
        if order is None:
            return cls.handle_exception(
                OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)}),
                "Status lookup failed",
            )

        pending = order.price_adjustments.filter(status=AdjustmentStatus.PENDING).first()
        payout = order.payout_schedules.exclude(status=PayoutStatus.CANCELLED).order_by("-created_at").first()
        captured = CaptureService.captured_total(order)
        remaining = RefundService.remaining_refundable(order)

        return ServiceResult.success(
            OrderStatusSnapshot(
                order_id=order.id,
                status=order.status,
                version=order.version,
                currency=order.currency,
                original_price_cents=order.original_price_cents,
                current_price_cents=order.current_price_cents,
                refund_policy=order.refund_policy,
                fulfillment_trigger=order.fulfillment_trigger,
                fulfilled_at=order.fulfilled_at,
                captured_cents=captured,
                refunded_cents=captured - remaining,
                remaining_refundable_cents=remaining,
                holds=[
                    {
                        "id": hold.id,
                        "amount_cents": hold.amount_cents,
                        "status": hold.status,
                        "is_supplementary": hold.is_supplementary,
                        "expires_at": hold.expires_at,
                    }
                    for hold in order.authorization_holds.capture_order()
                ],
                pending_adjustment=(
                    {
                        "id": pending.id,
                        "adjusted_price_cents": pending.adjusted_price_cents,
                        "adjustment_amount_cents": pending.adjustment_amount_cents,
                        "response_deadline": pending.response_deadline,
                    }
                    if pending
                    else None
                ),
                payout=(
                    {
                        "id": payout.id,
                        "amount_cents": payout.amount_cents,
                        "status": payout.status,
                        "scheduled_release_at": payout.scheduled_release_at,
                    }
                    if payout
                    else None
                ),
            )
        )

    # =========================================================================
    # Authorization
    # =========================================================================

    @classmethod
    def authorize(
        cls,
        order_id: uuid.UUID,
        amount_cents: int | None = None,
        payment_instrument_id: uuid.UUID | None = None,
    ) -> ServiceResult[AuthorizationHold]:
        """Place (or re-place after expiry) the order's primary hold."""
        return cls._locked(
            order_id,
            "Authorization failed",
            AuthorizationService.authorize,
            order_id,
            amount_cents,
            payment_instrument_id,
        )

    @classmethod
    def expire_hold(cls, hold_id: uuid.UUID, blocking: bool = True) -> ServiceResult[AuthorizationHold | None]:
        order_id = AuthorizationHold.objects.filter(pk=hold_id).values_list("order_id", flat=True).first()
        if order_id is None:
            return ServiceResult.success(None)
        return cls._locked(order_id, "Hold expiry failed", AuthorizationService.expire_hold, hold_id, blocking=blocking)

    @classmethod
    def sync_hold(cls, hold: AuthorizationHold, intent: PaymentIntentResult) -> ServiceResult[AuthorizationHold]:
        """Apply a PaymentIntent status reported by a processor webhook."""
        return cls._locked(hold.order_id, "Hold sync failed", AuthorizationService.sync_hold, hold.id, intent)

    # =========================================================================
    # Price adjustments
    # =========================================================================

    @classmethod
    def request_adjustment(
        cls,
        order_id: uuid.UUID,
        new_price_cents: int,
        justification: str,
        requested_by_id,
    ) -> ServiceResult[PriceAdjustmentRequest]:
        return cls._locked(
            order_id,
            "Price adjustment request failed",
            AdjustmentService.request_adjustment,
            order_id,
            new_price_cents,
            justification,
            requested_by_id,
        )

    @classmethod
    def respond_to_adjustment(
        cls,
        request_id: uuid.UUID,
        decision: str,
        responder_id,
    ) -> ServiceResult[PriceAdjustmentRequest]:
        try:
            order_id = AdjustmentService.order_id_for(request_id)
        except NotFoundError as e:
            return cls.handle_exception(e, "Price adjustment response failed")
        return cls._locked(
            order_id,
            "Price adjustment response failed",
            AdjustmentService.respond_to_adjustment,
            request_id,
            decision,
            responder_id,
        )

    @classmethod
    def cancel_adjustment(cls, request_id: uuid.UUID, provider_id) -> ServiceResult[PriceAdjustmentRequest]:
        try:
            order_id = AdjustmentService.order_id_for(request_id)
        except NotFoundError as e:
            return cls.handle_exception(e, "Price adjustment withdrawal failed")
        return cls._locked(
            order_id,
            "Price adjustment withdrawal failed",
            AdjustmentService.cancel_adjustment,
            request_id,
            provider_id,
        )

    @classmethod
    def expire_adjustment(cls, request_id: uuid.UUID, blocking: bool = True) -> ServiceResult:
        try:
            order_id = AdjustmentService.order_id_for(request_id)
        except NotFoundError as e:
            return cls.handle_exception(e, "Price adjustment expiry failed")
        return cls._locked(
            order_id,
            "Price adjustment expiry failed",
            AdjustmentService.expire_adjustment,
            request_id,
            blocking=blocking,
        )

    # =========================================================================
    # Capture and payout
    # =========================================================================

    @classmethod
    def capture(cls, order_id: uuid.UUID, amount_cents: int | None = None) -> ServiceResult[CaptureResult]:
        """
        Capture the order and schedule the provider's payout.

        Both steps run under one lock so no refund can slip in between.
        """

        def run():
            amount = amount_cents
            if amount is None:
                amount = Order.objects.filter(pk=order_id).values_list("current_price_cents", flat=True).first()
                if amount is None:
                    raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
            result = CaptureService.capture(order_id, amount)
            result.payout = cls._ensure_payout(order_id) or result.payout
            return result

        return cls._locked(order_id, "Capture failed", run)

    @classmethod
    def release_payout(cls, schedule_id: uuid.UUID, blocking: bool = True) -> ServiceResult[PayoutSchedule]:
        try:
            order_id = PayoutScheduler.order_id_for(schedule_id)
        except NotFoundError as e:
            return cls.handle_exception(e, "Payout release failed")
        return cls._locked(order_id, "Payout release failed", PayoutScheduler.release, schedule_id, blocking=blocking)

    # =========================================================================
    # Refunds
    # =========================================================================

    @classmethod
    def refund(
        cls,
        order_id: uuid.UUID,
        amount_cents: int,
        reason: str = RefundReason.OTHER,
        initiated_by_id=None,
        note: str = "",
    ) -> ServiceResult[RefundOutcome]:
        return cls._locked(
            order_id,
            "Refund failed",
            RefundService.refund,
            order_id,
            amount_cents,
            reason,
            initiated_by_id,
            note,
        )

    # =========================================================================
    # Disputes
    # =========================================================================

    @classmethod
    def open_dispute(
        cls,
        order_id: uuid.UUID,
        filed_by_id,
        dispute_type: str,
        description: str,
    ) -> ServiceResult[Dispute]:
        return cls._locked(
            order_id,
            "Dispute could not be opened",
            DisputeService.open_dispute,
            order_id,
            filed_by_id,
            dispute_type,
            description,
        )

    @classmethod
    def resolve_dispute(
        cls,
        dispute_id: uuid.UUID,
        resolution: str,
        resolved_by_id,
        refund_amount_cents: int | None = None,
        note: str = "",
    ) -> ServiceResult[Dispute]:
        """Close a dispute, refunding first when the resolution calls for it."""
        try:
            order_id = DisputeService.order_id_for(dispute_id)
        except NotFoundError as e:
            return cls.handle_exception(e, "Dispute resolution failed")
        return cls._locked(
            order_id,
            "Dispute resolution failed",
            DisputeService.resolve_dispute,
            dispute_id,
            resolution,
            resolved_by_id,
            refund_amount_cents,
            note,
        )

    @classmethod
    def withdraw_dispute(cls, dispute_id: uuid.UUID, user_id) -> ServiceResult[Dispute]:
        try:
            order_id = DisputeService.order_id_for(dispute_id)
        except NotFoundError as e:
            return cls.handle_exception(e, "Dispute withdrawal failed")
        return cls._locked(order_id, "Dispute withdrawal failed", DisputeService.withdraw_dispute, dispute_id, user_id)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    @classmethod
    def reconcile_order_payments(cls, order_id: uuid.UUID, blocking: bool = True) -> ServiceResult[dict]:
        """
        Confirm Pending captures and refunds with the processor.

        Also schedules the payout of a captured order that is missing one.
        """

        def run():
            summary = CaptureService.reconcile(order_id)
            summary.update(RefundService.reconcile_refunds(order_id))
            summary["payout_scheduled"] = cls._ensure_payout(order_id) is not None
            return summary

        return cls._locked(order_id, "Reconciliation failed", run, blocking=blocking)

    # =========================================================================
    # Internals
    # =========================================================================

    @classmethod
    def check_participant(cls, order: Order, user, roles: tuple[str, ...] = ("customer", "provider")) -> None:
        """
        Raise PermissionDeniedError unless ``user`` plays one of ``roles``
        on the order. Staff always pass.
        """
        if user is None:
            raise PermissionDeniedError("Authentication required")
        if getattr(user, "is_staff", False):
            return
        if "customer" in roles and order.customer_id == user.pk:
            return
        if "provider" in roles and order.provider_id == user.pk:
            return
        raise PermissionDeniedError(
            "You are not allowed to perform this action on the order",
            details={"order_id": str(order.id)},
        )

    @classmethod
    def _ensure_payout(cls, order_id: uuid.UUID) -> PayoutSchedule | None:
        order = Order.objects.get(pk=order_id)
        if order.status != OrderState.CAPTURED:
            return None
        amount = PayoutScheduler.payable_amount(order)
        if amount <= 0:
            return None
        return PayoutScheduler.schedule(order.id, order.provider_id, amount, order.captured_at)

    @classmethod
    def _locked(
        cls,
        order_id,
        context: str,
        func: Callable[..., Any],
        *args: Any,
        blocking: bool = True,
        **kwargs: Any,
    ) -> ServiceResult:
        try:
            with order_lock(order_id, blocking=blocking):
                data = func(*args, **kwargs)
        except TransitionNotAllowed as e:
            return cls.handle_exception(
                InvalidStateTransitionError(
                    "The order changed while the request was processed. Please try again",
                    details={"order_id": str(order_id), "transition": str(e)},
                ),
                context,
            )
        except BaseApplicationError as e:
            return cls.handle_exception(e, context)
        return ServiceResult.success(data)

