"""
Authorization service: placing, confirming, cancelling and expiring holds.

Every hold follows the same three steps:

1. Reserve (transaction): validate, create the AuthorizationHold row and a
   Pending EscrowHold wallet debit for the customer
2. Submit (no transaction): create the manual-capture PaymentIntent,
   retrying transient failures with the same idempotency key
3. Apply (transaction): store the PaymentIntent id and move the hold to
   Requires Capture (wallet row Completed) or Failed (wallet row Failed)

A hold that stays Pending Confirmation is confirmed later by the
``payment_intent.amount_capturable_updated`` webhook.

Callers must hold escrow.locks.order_lock() for the order.

Usage:
    from escrow.services import AuthorizationService

    with order_lock(order.id):
        hold = AuthorizationService.authorize(order.id)
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from escrow.adapters import IdempotencyKeyGenerator, PaymentIntentResult, call_with_retry
from escrow.conf import get_escrow_settings
from escrow.exceptions import (
    AmountMismatch,
    InvalidAmount,
    NoPaymentMethod,
    OrderNotEligible,
    ProcessorDeclined,
    ProcessorError,
    ProcessorInvalidRequest,
)
from escrow.locks import extend_order_lock
from escrow.models import AuthorizationHold, PaymentInstrument
from escrow.models.authorization import ACTIVE_HOLD_STATES
from escrow.services.base import ProcessorBackedService, lock_order_row
from escrow.services.event_service import EscrowEventService
from escrow.state_machines import EscrowEventType, HoldStatus, OrderState
from escrow.wallet.models import WalletTransactionKind, WalletTransactionStatus
from escrow.wallet.services import wallet
from escrow.wallet.types import RecordTransactionParams

if TYPE_CHECKING:
    from escrow.models import Order

# Order states in which a primary hold may be (re)placed
AUTHORIZABLE_STATES = frozenset(
    [OrderState.CREATED, OrderState.AUTHORIZED, OrderState.FULFILLMENT_PENDING]
)

# PaymentIntent statuses that mean the hold will never be usable
DEAD_INTENT_STATUSES = frozenset(["requires_payment_method", "canceled"])


def hold_key(hold: AuthorizationHold) -> str:
    return f"escrow_hold:{hold.id}"


def hold_release_key(hold: AuthorizationHold) -> str:
    return f"escrow_hold_release:{hold.id}"


class AuthorizationService(ProcessorBackedService):
    """Holds funds on the customer's card for an escrow order."""

    # =========================================================================
    # Public operations
    # =========================================================================

    @classmethod
    def authorize(
        cls,
        order_id: uuid.UUID,
        amount_cents: int | None = None,
        payment_instrument_id: uuid.UUID | None = None,
    ) -> AuthorizationHold:
        """
        Place the order's primary hold.

        Also used to re-authorize after a hold expired: allowed while the
        order is Authorized or Fulfillment Pending and has no active
        primary hold. A primary hold left Pending Confirmation without a
        processor reference (transient failure) is resubmitted with its
        original idempotency key instead of creating a new one.

        Raises:
            InvalidAmount: amount <= 0
            AmountMismatch: amount differs from the order's current price
            NoPaymentMethod: no usable instrument for the customer
            OrderNotEligible: order state forbids a new hold
            ProcessorDeclined: card declined (hold Failed)
            ProcessorUnavailable: processor unreachable after retries
        """
        with transaction.atomic():
            order = lock_order_row(order_id)
            amount = order.current_price_cents if amount_cents is None else amount_cents
            if amount <= 0:
                raise InvalidAmount(
                    "Authorization amount must be positive",
                    details={"amount_cents": amount},
                )
            if amount != order.current_price_cents:
                raise AmountMismatch(
                    "Authorization amount must equal the order's current price",
                    details={"amount_cents": amount, "current_price_cents": order.current_price_cents},
                )
            if order.status not in AUTHORIZABLE_STATES:
                raise OrderNotEligible(
                    f"Payment cannot be authorized while the order is {order.get_status_display().lower()}",
                    details={"order_id": str(order.id), "status": order.status},
                )

            hold = cls._resumable_primary_hold(order)
            if hold is None:
                instrument = cls.resolve_instrument(order.customer_id, payment_instrument_id)
                hold = cls._reserve(order, instrument, amount, supplementary=False)

        result = cls._submit(hold)

        with transaction.atomic():
            order = lock_order_row(order_id)
            hold = AuthorizationHold.objects.select_for_update().get(pk=hold.pk)
            hold = cls.apply_processor_status(order, hold, result)

        if hold.status == HoldStatus.FAILED:
            raise ProcessorDeclined(
                "The payment method could not be authorized",
                details={"hold_id": str(hold.id), "processor_status": result.status},
            )
        return hold

    @classmethod
    def authorize_supplementary(cls, order_id: uuid.UUID, amount_cents: int) -> AuthorizationHold:
        """
        Hold the delta of an approved price increase.

        Uses the instrument of the order's primary hold. The hold must be
        confirmed synchronously; anything else is treated as a decline so
        the approval is not applied.

        Raises:
            InvalidAmount: amount <= 0
            NoPaymentMethod: no usable instrument
            ProcessorDeclined / ProcessorUnavailable: hold not placed
        """
        if amount_cents <= 0:
            raise InvalidAmount(
                "Supplementary authorization amount must be positive",
                details={"amount_cents": amount_cents},
            )

        with transaction.atomic():
            order = lock_order_row(order_id)
            primary = (
                AuthorizationHold.objects.filter(order=order, is_supplementary=False)
                .order_by("-authorized_at")
                .select_related("instrument")
                .first()
            )
            instrument_id = primary.instrument_id if primary and primary.instrument.is_usable else None
            instrument = cls.resolve_instrument(order.customer_id, instrument_id)
            hold = cls._reserve(order, instrument, amount_cents, supplementary=True)

        result = cls._submit(hold)

        with transaction.atomic():
            order = lock_order_row(order_id)
            hold = AuthorizationHold.objects.select_for_update().get(pk=hold.pk)
            hold = cls.apply_processor_status(order, hold, result)
            if hold.status == HoldStatus.PENDING_CONFIRMATION:
                hold.fail("Supplementary authorization was not confirmed")
                hold.save()
                wallet.settle_by_key(hold_key(hold), WalletTransactionStatus.FAILED)

        if hold.status != HoldStatus.REQUIRES_CAPTURE:
            cls._cancel_at_processor(hold)
            raise ProcessorDeclined(
                "The additional amount could not be authorized",
                details={"hold_id": str(hold.id), "processor_status": result.status},
            )
        return hold

    @classmethod
    def cancel_authorizations(cls, order_id: uuid.UUID, reason: str = "") -> list[AuthorizationHold]:
        """
        Release every active hold of an order.

        Processor cancellation happens first, outside any transaction;
        the holds are then marked Canceled and their wallet debits
        reversed.
        """
        holds = list(AuthorizationHold.objects.filter(order_id=order_id).active())
        for hold in holds:
            cls._cancel_at_processor(hold)

        cancelled: list[AuthorizationHold] = []
        with transaction.atomic():
            order = lock_order_row(order_id)
            for hold in AuthorizationHold.objects.select_for_update().filter(
                pk__in=[h.pk for h in holds], status__in=ACTIVE_HOLD_STATES
            ):
                hold.cancel(reason)
                hold.save()
                cls.release_hold_funds(order, hold)
                cancelled.append(hold)

            if cancelled:
                EscrowEventService.record_event(
                    order,
                    EscrowEventType.AUTHORIZATION_CANCELLED,
                    recipients=[order.customer_id],
                    payload={
                        "released_cents": sum(h.amount_cents for h in cancelled),
                        "reason": reason,
                    },
                )

        cls.get_logger().info(
            "Authorization holds cancelled",
            extra={"order_id": str(order_id), "hold_count": len(cancelled)},
        )
        return cancelled

    @classmethod
    def cancel_holds(cls, order: Order, holds: list[AuthorizationHold], reason: str) -> None:
        """
        Cancel specific holds at the processor and mark them Canceled.

        Used by capture for holds that received no allocation. Must be
        called outside a transaction.
        """
        for hold in holds:
            try:
                cls._cancel_at_processor(hold)
            except ProcessorError as e:
                # The hold lapses on its own; the expiry sweep releases the funds
                cls.get_logger().warning(
                    "Unused hold could not be cancelled",
                    extra={"hold_id": str(hold.id), "error_code": e.error_code},
                )
                continue

            with transaction.atomic():
                locked = AuthorizationHold.objects.select_for_update().get(pk=hold.pk)
                if locked.status in ACTIVE_HOLD_STATES:
                    locked.cancel(reason)
                    locked.save()
                    cls.release_hold_funds(order, locked)

    @classmethod
    def expire_hold(cls, hold_id: uuid.UUID) -> AuthorizationHold | None:
        """
        Move a lapsed hold to Expired and reverse its wallet debit.

        Status and deadline are re-checked under the row lock; returns None
        when there is nothing to do (already resolved or not yet due).
        """
        with transaction.atomic():
            hold = AuthorizationHold.objects.filter(pk=hold_id).first()
            if hold is None:
                return None
            order = lock_order_row(hold.order_id)
            hold = AuthorizationHold.objects.select_for_update().get(pk=hold_id)

            if hold.status not in ACTIVE_HOLD_STATES or hold.expires_at > timezone.now():
                return None

            hold.expire()
            hold.save()
            cls.release_hold_funds(order, hold)
            EscrowEventService.record_event(
                order,
                EscrowEventType.AUTHORIZATION_EXPIRED,
                recipients=[order.customer_id, order.provider_id],
                payload={"hold_id": str(hold.id), "amount_cents": hold.amount_cents},
            )

        cls.get_logger().info(
            "Authorization hold expired",
            extra={"hold_id": str(hold_id), "order_id": str(order.id)},
        )
        return hold

    @classmethod
    def sync_hold(cls, hold_id: uuid.UUID, result: PaymentIntentResult) -> AuthorizationHold:
        """
        Apply a processor status pushed by a webhook.

        A capturable hold the processor cancelled on its own (its
        authorization lapsed) is expired and its funds released.
        """
        with transaction.atomic():
            hold = AuthorizationHold.objects.get(pk=hold_id)
            order = lock_order_row(hold.order_id)
            hold = AuthorizationHold.objects.select_for_update().get(pk=hold_id)

            if hold.status == HoldStatus.REQUIRES_CAPTURE and result.status == "canceled":
                hold.expire()
                hold.save()
                cls.release_hold_funds(order, hold)
                EscrowEventService.record_event(
                    order,
                    EscrowEventType.AUTHORIZATION_EXPIRED,
                    recipients=[order.customer_id, order.provider_id],
                    payload={"hold_id": str(hold.id), "amount_cents": hold.amount_cents},
                )
            else:
                cls.apply_processor_status(order, hold, result)

        cls.get_logger().info(
            "Hold synced from processor",
            extra={"hold_id": str(hold.id), "processor_status": result.status, "hold_status": hold.status},
        )
        return hold

    @classmethod
    def check_authorization(cls, hold: AuthorizationHold) -> PaymentIntentResult | None:
        """Read the hold's status at the processor (None if never submitted)."""
        if not hold.processor_reference:
            return None
        extend_order_lock(hold.order_id)
        return call_with_retry(cls.get_processor().get_status, hold.processor_reference)

    # =========================================================================
    # Building blocks (shared with adjustments, capture and webhooks)
    # =========================================================================

    @classmethod
    def resolve_instrument(
        cls,
        customer_id,
        payment_instrument_id: uuid.UUID | None = None,
    ) -> PaymentInstrument:
        """
        Pick the instrument to charge.

        Raises:
            NoPaymentMethod: the given instrument is not the customer's or is
                unusable, or the customer has no valid default
        """
        usable = PaymentInstrument.objects.usable().filter(customer_id=customer_id)
        if payment_instrument_id is not None:
            instrument = usable.filter(pk=payment_instrument_id).first()
        else:
            instrument = usable.filter(is_default=True).first()

        if instrument is None:
            raise NoPaymentMethod(
                "Add a valid payment method to continue",
                details={"customer_id": str(customer_id)},
            )
        return instrument

    @classmethod
    def apply_processor_status(
        cls,
        order: Order,
        hold: AuthorizationHold,
        result: PaymentIntentResult,
    ) -> AuthorizationHold:
        """
        Record what the processor says about a hold.

        Idempotent: webhooks and the synchronous path may both apply the
        same status. Must run inside a transaction with both rows locked.
        """
        if not hold.processor_reference:
            hold.processor_reference = result.id

        if hold.status == HoldStatus.PENDING_CONFIRMATION:
            if result.is_capturable:
                hold.confirm()
                hold.save()
                wallet.settle_by_key(hold_key(hold), WalletTransactionStatus.COMPLETED)
                if not hold.is_supplementary:
                    cls._mark_order_authorized(order, hold)
            elif result.status in DEAD_INTENT_STATUSES:
                hold.fail(f"Processor status: {result.status}")
                hold.save()
                wallet.settle_by_key(hold_key(hold), WalletTransactionStatus.FAILED)
            else:
                hold.save()
        return hold

    @classmethod
    def release_hold_funds(cls, order: Order, hold: AuthorizationHold) -> None:
        """
        Reverse a hold's wallet debit.

        A debit that was never confirmed is marked Failed instead of being
        offset by a credit.
        """
        if hold.confirmed_at is None:
            wallet.settle_by_key(hold_key(hold), WalletTransactionStatus.FAILED)
            return
        wallet.record(
            RecordTransactionParams(
                user_id=order.customer_id,
                amount_cents=hold.amount_cents,
                kind=WalletTransactionKind.ESCROW_HOLD,
                idempotency_key=hold_release_key(hold),
                order_id=order.id,
                currency=order.currency,
                description="Authorization hold released",
                metadata={"hold_id": str(hold.id)},
            )
        )

    # =========================================================================
    # Internals
    # =========================================================================

    @classmethod
    def _resumable_primary_hold(cls, order: Order) -> AuthorizationHold | None:
        active = AuthorizationHold.objects.filter(order=order, is_supplementary=False).active().first()
        if active is None:
            return None
        if active.status == HoldStatus.PENDING_CONFIRMATION and not active.processor_reference:
            return active
        raise OrderNotEligible(
            "This order already has an active payment authorization",
            details={"order_id": str(order.id), "hold_id": str(active.id)},
        )

    @classmethod
    def _reserve(
        cls,
        order: Order,
        instrument: PaymentInstrument,
        amount_cents: int,
        supplementary: bool,
    ) -> AuthorizationHold:
        now = timezone.now()
        hold = AuthorizationHold.objects.create(
            order=order,
            instrument=instrument,
            amount_cents=amount_cents,
            currency=order.currency,
            is_supplementary=supplementary,
            authorized_at=now,
            expires_at=now + get_escrow_settings().authorization_ttl,
        )
        wallet.record(
            RecordTransactionParams(
                user_id=order.customer_id,
                amount_cents=-amount_cents,
                kind=WalletTransactionKind.ESCROW_HOLD,
                idempotency_key=hold_key(hold),
                order_id=order.id,
                status=WalletTransactionStatus.PENDING,
                currency=order.currency,
                description="Funds held for order",
                metadata={"hold_id": str(hold.id), "supplementary": supplementary},
            )
        )
        return hold

    @classmethod
    def _submit(cls, hold: AuthorizationHold) -> PaymentIntentResult:
        """
        Send the hold to the processor.

        Declines fail the hold and propagate. Transient errors propagate
        after retries and leave the hold Pending Confirmation so it can be
        resubmitted with the same key.
        """
        instrument = hold.instrument
        extend_order_lock(hold.order_id)
        try:
            return call_with_retry(
                cls.get_processor().authorize,
                customer_id=instrument.processor_customer_id,
                payment_method_id=instrument.processor_payment_method_id,
                amount_cents=hold.amount_cents,
                currency=hold.currency,
                idempotency_key=IdempotencyKeyGenerator.generate("authorize", hold.id),
                metadata={
                    "hold_id": str(hold.id),
                    "order_id": str(hold.order_id),
                    "supplementary": "true" if hold.is_supplementary else "false",
                },
            )
        except (ProcessorDeclined, ProcessorInvalidRequest) as e:
            with transaction.atomic():
                locked = AuthorizationHold.objects.select_for_update().get(pk=hold.pk)
                if locked.status == HoldStatus.PENDING_CONFIRMATION:
                    locked.fail(e.message)
                    locked.save()
                    wallet.settle_by_key(hold_key(locked), WalletTransactionStatus.FAILED)
            cls.get_logger().warning(
                "Authorization declined",
                extra={"hold_id": str(hold.id), "order_id": str(hold.order_id), "error_code": e.error_code},
            )
            raise

    @classmethod
    def _cancel_at_processor(cls, hold: AuthorizationHold) -> None:
        if not hold.processor_reference:
            return
        extend_order_lock(hold.order_id)
        try:
            call_with_retry(
                cls.get_processor().cancel,
                hold.processor_reference,
                idempotency_key=IdempotencyKeyGenerator.generate("cancel", hold.id),
            )
        except ProcessorInvalidRequest:
            # Already canceled or lapsed at the processor is fine; anything else is not
            status = cls.check_authorization(hold)
            if status is None or status.status != "canceled":
                raise

    @classmethod
    def _mark_order_authorized(cls, order: Order, hold: AuthorizationHold) -> None:
        if order.status == OrderState.CREATED:
            order.authorize()
            order.save()
        EscrowEventService.record_event(
            order,
            EscrowEventType.PAYMENT_AUTHORIZED,
            recipients=[order.customer_id, order.provider_id],
            payload={
                "hold_id": str(hold.id),
                "amount_cents": hold.amount_cents,
                "expires_at": hold.expires_at,
            },
        )
