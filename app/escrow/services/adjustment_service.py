"""
Price adjustment negotiation.

A provider proposes a new price with a justification; the customer
approves or rejects it before the response deadline. Approved increases
are backed by a supplementary hold for the difference, so the original
hold is never touched. The order sits in Price Negotiating while a
request is pending and capture is blocked.

Callers must hold escrow.locks.order_lock() for the order.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.utils import timezone

from core.exceptions import PermissionDeniedError, ValidationError
from escrow.conf import get_escrow_settings
from escrow.exceptions import (
    AdjustmentAlreadyPending,
    AdjustmentExpired,
    AdjustmentLimitReached,
    AdjustmentNotFound,
    InvalidAmount,
    InvalidJustification,
    InvalidStateTransitionError,
    OrderNotEligible,
)
from escrow.models import AuthorizationHold, PriceAdjustmentRequest
from escrow.services.authorization_service import AuthorizationService
from escrow.services.base import ProcessorBackedService, lock_order_row
from escrow.services.event_service import EscrowEventService
from escrow.state_machines import (
    AdjustmentDecision,
    AdjustmentStatus,
    AdjustmentType,
    CaptureStatus,
    EscrowEventType,
    OrderState,
)

if TYPE_CHECKING:
    from escrow.models import Order

NEGOTIABLE_STATES = frozenset([OrderState.AUTHORIZED, OrderState.FULFILLMENT_PENDING])


class AdjustmentService(ProcessorBackedService):
    """Request, answer, withdraw and expire price adjustments."""

    @classmethod
    def request_adjustment(
        cls,
        order_id: uuid.UUID,
        new_price_cents: int,
        justification: str,
        requested_by_id,
    ) -> PriceAdjustmentRequest:
        """
        Propose a new price for an order.

        Raises:
            PermissionDeniedError: requester is not the order's provider
            InvalidJustification: blank justification
            InvalidAmount: non-positive price, or the price does not change
            AdjustmentAlreadyPending: another request awaits an answer
            OrderNotEligible: order captured, cancelled or not yet authorized
            AdjustmentLimitReached: per-order limit hit (enforcement on)
        """
        with transaction.atomic():
            order = lock_order_row(order_id)

            if str(order.provider_id) != str(requested_by_id):
                raise PermissionDeniedError(
                    "Only the order's provider can request a price adjustment",
                    details={"order_id": str(order.id)},
                )
            if not justification or not justification.strip():
                raise InvalidJustification("Please explain why the price is changing")
            if new_price_cents <= 0:
                raise InvalidAmount(
                    "The new price must be positive",
                    details={"new_price_cents": new_price_cents},
                )
            if new_price_cents == order.current_price_cents:
                raise InvalidAmount(
                    "The new price is the same as the current price",
                    details={"new_price_cents": new_price_cents},
                )
            if order.price_adjustments.filter(status=AdjustmentStatus.PENDING).exists():
                raise AdjustmentAlreadyPending(
                    "A price adjustment is already waiting for the customer's answer",
                    details={"order_id": str(order.id)},
                )
            if order.status not in NEGOTIABLE_STATES:
                raise OrderNotEligible(
                    f"The price cannot change while the order is {order.get_status_display().lower()}",
                    details={"order_id": str(order.id), "status": order.status},
                )
            if order.captures.exclude(status=CaptureStatus.FAILED).exists():
                raise OrderNotEligible(
                    "The price cannot change while a capture is in progress",
                    details={"order_id": str(order.id)},
                )

            conf = get_escrow_settings()
            if conf.enforcement_enabled:
                made = order.price_adjustments.count()
                if made >= conf.max_adjustments_per_order:
                    raise AdjustmentLimitReached(
                        f"An order can have at most {conf.max_adjustments_per_order} price adjustments",
                        details={"order_id": str(order.id), "count": made},
                    )

            delta = new_price_cents - order.current_price_cents
            now = timezone.now()
            try:
                with transaction.atomic():
                    request = PriceAdjustmentRequest.objects.create(
                        order=order,
                        original_price_cents=order.current_price_cents,
                        adjusted_price_cents=new_price_cents,
                        adjustment_amount_cents=delta,
                        adjustment_type=AdjustmentType.INCREASE if delta > 0 else AdjustmentType.DECREASE,
                        justification=justification.strip(),
                        requested_by_id=requested_by_id,
                        requested_at=now,
                        response_deadline=now + conf.adjustment_response_window,
                    )
            except IntegrityError:
                raise AdjustmentAlreadyPending(
                    "A price adjustment is already waiting for the customer's answer",
                    details={"order_id": str(order.id)},
                )

            order.begin_negotiation()
            order.save()

            EscrowEventService.record_event(
                order,
                EscrowEventType.PRICE_ADJUSTMENT_REQUESTED,
                recipients=[order.customer_id],
                payload=cls._payload(request),
            )

        cls.get_logger().info(
            "Price adjustment requested",
            extra={
                "order_id": str(order.id),
                "adjustment_id": str(request.id),
                "adjustment_amount_cents": delta,
            },
        )
        return request

    @classmethod
    def respond_to_adjustment(
        cls,
        request_id: uuid.UUID,
        decision: str,
        responder_id,
    ) -> PriceAdjustmentRequest:
        """
        Approve or reject a pending request.

        An approved increase places a supplementary hold for the
        difference first; if that hold is declined the request stays
        Pending and the price is unchanged.

        Raises:
            AdjustmentNotFound: unknown request
            ValidationError: unknown decision
            PermissionDeniedError: responder is not the customer or staff
            InvalidStateTransitionError: request already resolved
            AdjustmentExpired: deadline passed (request is expired)
            ProcessorDeclined / ProcessorUnavailable: increase not authorized
        """
        if decision not in AdjustmentDecision.values:
            raise ValidationError(
                f"Unknown decision '{decision}'",
                details={"decision": decision},
            )

        order_id = cls.order_id_for(request_id)
        responder = get_user_model().objects.filter(pk=responder_id).first()

        with transaction.atomic():
            order = lock_order_row(order_id)
            request = PriceAdjustmentRequest.objects.select_for_update().get(pk=request_id)
            cls._check_responder(order, responder)

            if request.status != AdjustmentStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"This price adjustment was already {request.get_status_display().lower()}",
                    details={"adjustment_id": str(request.id), "status": request.status},
                )
            expired = request.is_past_deadline
            if expired:
                cls._expire(order, request)
            elif decision == AdjustmentDecision.REJECT or not request.is_increase:
                cls._resolve(order, request, decision, responder)
                return request

        if expired:
            raise AdjustmentExpired(
                "The response window for this price adjustment has closed",
                details={"adjustment_id": str(request_id)},
            )

        # Approved increase: the delta must be held before the price moves
        hold = AuthorizationService.authorize_supplementary(order_id, request.adjustment_amount_cents)

        with transaction.atomic():
            order = lock_order_row(order_id)
            request = PriceAdjustmentRequest.objects.select_for_update().get(pk=request_id)
            still_pending = request.status == AdjustmentStatus.PENDING
            if still_pending:
                request.supplementary_hold = hold
                cls._resolve(order, request, AdjustmentDecision.APPROVE, responder)

        if not still_pending:
            # Resolved elsewhere while the hold was being placed
            AuthorizationService.cancel_holds(
                order, [AuthorizationHold.objects.get(pk=hold.pk)], "Adjustment no longer pending"
            )
            raise InvalidStateTransitionError(
                f"This price adjustment was already {request.get_status_display().lower()}",
                details={"adjustment_id": str(request.id), "status": request.status},
            )
        return request

    @classmethod
    def cancel_adjustment(cls, request_id: uuid.UUID, provider_id) -> PriceAdjustmentRequest:
        """Withdraw a pending request (provider only)."""
        order_id = cls.order_id_for(request_id)

        with transaction.atomic():
            order = lock_order_row(order_id)
            request = PriceAdjustmentRequest.objects.select_for_update().get(pk=request_id)
            if str(order.provider_id) != str(provider_id):
                raise PermissionDeniedError(
                    "Only the order's provider can withdraw a price adjustment",
                    details={"adjustment_id": str(request.id)},
                )
            if request.status != AdjustmentStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"This price adjustment was already {request.get_status_display().lower()}",
                    details={"adjustment_id": str(request.id), "status": request.status},
                )

            request.cancel()
            request.save()
            cls._leave_negotiation(order)
            EscrowEventService.record_event(
                order,
                EscrowEventType.PRICE_ADJUSTMENT_CANCELLED,
                recipients=[order.customer_id],
                payload=cls._payload(request),
            )

        cls.get_logger().info(
            "Price adjustment withdrawn",
            extra={"order_id": str(order.id), "adjustment_id": str(request.id)},
        )
        return request

    @classmethod
    def expire_adjustment(cls, request_id: uuid.UUID) -> PriceAdjustmentRequest | None:
        """
        Expire a request whose deadline passed.

        Status and deadline are re-checked under the row lock; returns None
        if the request was answered or is not due yet.
        """
        order_id = cls.order_id_for(request_id)

        with transaction.atomic():
            order = lock_order_row(order_id)
            request = PriceAdjustmentRequest.objects.select_for_update().get(pk=request_id)
            if request.status != AdjustmentStatus.PENDING or not request.is_past_deadline:
                return None
            cls._expire(order, request)
        return request

    # =========================================================================
    # Internals
    # =========================================================================

    @classmethod
    def order_id_for(cls, request_id: uuid.UUID) -> uuid.UUID:
        try:
            return PriceAdjustmentRequest.objects.values_list("order_id", flat=True).get(
                pk=uuid.UUID(str(request_id))
            )
        except (PriceAdjustmentRequest.DoesNotExist, ValueError):
            raise AdjustmentNotFound(
                f"Price adjustment {request_id} not found",
                details={"adjustment_id": str(request_id)},
            )

    @staticmethod
    def _check_responder(order: Order, responder) -> None:
        if responder is None:
            raise PermissionDeniedError("Only the customer can answer a price adjustment")
        if responder.pk == order.customer_id or responder.is_staff:
            return
        raise PermissionDeniedError(
            "Only the customer can answer a price adjustment",
            details={"order_id": str(order.id)},
        )

    @classmethod
    def _resolve(cls, order: Order, request: PriceAdjustmentRequest, decision: str, responder) -> None:
        if decision == AdjustmentDecision.APPROVE:
            request.approve(responder)
            request.save()
            order.current_price_cents = request.adjusted_price_cents
            event_type = EscrowEventType.PRICE_ADJUSTMENT_APPROVED
        else:
            request.reject(responder)
            request.save()
            event_type = EscrowEventType.PRICE_ADJUSTMENT_REJECTED

        cls._leave_negotiation(order)
        EscrowEventService.record_event(
            order,
            event_type,
            recipients=[order.provider_id, order.customer_id],
            payload=cls._payload(request),
        )
        cls.get_logger().info(
            "Price adjustment resolved",
            extra={
                "order_id": str(order.id),
                "adjustment_id": str(request.id),
                "decision": decision,
                "current_price_cents": order.current_price_cents,
            },
        )

    @classmethod
    def _expire(cls, order: Order, request: PriceAdjustmentRequest) -> None:
        request.expire()
        request.save()
        cls._leave_negotiation(order)
        EscrowEventService.record_event(
            order,
            EscrowEventType.PRICE_ADJUSTMENT_EXPIRED,
            recipients=[order.provider_id, order.customer_id],
            payload=cls._payload(request),
        )
        cls.get_logger().info(
            "Price adjustment expired",
            extra={"order_id": str(order.id), "adjustment_id": str(request.id)},
        )

    @staticmethod
    def _leave_negotiation(order: Order) -> None:
        if order.status == OrderState.PRICE_NEGOTIATING:
            order.end_negotiation()
        order.save()

    @staticmethod
    def _payload(request: PriceAdjustmentRequest) -> dict:
        return {
            "adjustment_id": str(request.id),
            "adjustment_type": request.adjustment_type,
            "original_price_cents": request.original_price_cents,
            "adjusted_price_cents": request.adjusted_price_cents,
            "adjustment_amount_cents": request.adjustment_amount_cents,
            "justification": request.justification,
            "response_deadline": request.response_deadline,
            "status": request.status,
        }
