"""
Escrow capture: charging the customer once the order is fulfilled.

Capture walks every active hold of the order (primary first, then
supplementary holds in the order they were placed), charges each for its
share of the current price and splits the result into the platform fee
and the provider's net.

Each hold goes through:

1. Plan (transaction): validate the order, write a Pending CaptureRecord
2. Charge (no transaction): capture the PaymentIntent with a key derived
   from the record id. A record that was already sent is confirmed with
   get_status() first and never charged blindly twice
3. Finalize (transaction): record Succeeded, hold Captured, wallet rows

The order moves to Captured when every planned record has succeeded.

Callers must hold escrow.locks.order_lock() for the order.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from django.db import transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from escrow.adapters import IdempotencyKeyGenerator, PaymentIntentResult, call_with_retry
from escrow.conf import get_escrow_settings
from escrow.exceptions import (
    AmountMismatch,
    AuthorizationExpired,
    CaptureFailed,
    DoubleCaptureDetected,
    OrderNotEligible,
    ProcessorError,
    ProcessorUnavailable,
)
from escrow.locks import extend_order_lock
from escrow.models import AuthorizationHold, CaptureRecord, Order, PayoutSchedule
from escrow.services.authorization_service import AuthorizationService
from escrow.services.base import ProcessorBackedService, lock_order_row, schedule_reconciliation
from escrow.services.event_service import EscrowEventService
from escrow.state_machines import (
    AdjustmentStatus,
    CaptureStatus,
    EscrowEventType,
    HoldStatus,
    OrderState,
)
from escrow.wallet.models import WalletTransactionKind, WalletTransactionStatus
from escrow.wallet.services import wallet
from escrow.wallet.types import RecordTransactionParams

CAPTURED_STATES = frozenset(
    [OrderState.CAPTURED, OrderState.PAYOUT_SCHEDULED, OrderState.COMPLETED, OrderState.REFUNDED]
)


@dataclass
class CaptureResult:
    """
    Outcome of a capture.

    ``already_captured`` is True when the call replayed a finished capture
    and wrote nothing.
    """

    order: Order
    records: list[CaptureRecord]
    total_captured_cents: int
    platform_fee_cents: int
    provider_net_cents: int
    already_captured: bool = False
    payout: PayoutSchedule | None = field(default=None)


def split_fee(allocations: list[int], total_fee: int) -> list[int]:
    """
    Spread ``total_fee`` over allocations proportionally.

    Shares are floored and the last allocation absorbs the remainder, so
    the result always sums to ``total_fee``.
    """
    total = sum(allocations)
    if not allocations or total == 0:
        return [0] * len(allocations)
    fees = [total_fee * amount // total for amount in allocations[:-1]]
    fees.append(total_fee - sum(fees))
    return fees


class CaptureService(ProcessorBackedService):
    """Captures escrowed funds and splits them between platform and provider."""

    @classmethod
    def capture(cls, order_id: uuid.UUID, amount_cents: int) -> CaptureResult:
        """
        Capture ``amount_cents`` (must equal the current price).

        Replaying a completed capture returns the existing records with
        ``already_captured=True``.

        Raises:
            OrderNotEligible: not fulfilled, adjustment pending, hold unconfirmed
            AmountMismatch: amount differs from the price, or holds fall short
            AuthorizationExpired: an active hold is past its capture ceiling
            CaptureFailed: processor rejected the capture (order unchanged)
            ProcessorUnavailable: outcome unknown, reconciliation scheduled
            DoubleCaptureDetected: more captured than the order's price
        """
        with transaction.atomic():
            order = lock_order_row(order_id)

            if order.status in CAPTURED_STATES:
                return cls._replay(order, amount_cents)

            records, unused_holds = cls._plan(order, amount_cents)

        for record in records:
            if record.status == CaptureStatus.PENDING:
                cls._charge(record)

        if unused_holds:
            for hold in unused_holds:
                if hold.is_expired:
                    AuthorizationService.expire_hold(hold.id)
            live = [hold for hold in unused_holds if not hold.is_expired]
            if live:
                AuthorizationService.cancel_holds(order, live, "Not needed for capture")

        with transaction.atomic():
            order = lock_order_row(order_id)
            cls._complete_if_fully_captured(order)

        result = cls._result(order)
        cls.get_logger().info(
            "Order captured",
            extra={
                "order_id": str(order.id),
                "captured_cents": result.total_captured_cents,
                "platform_fee_cents": result.platform_fee_cents,
                "provider_net_cents": result.provider_net_cents,
            },
        )
        return result

    @classmethod
    def reconcile(cls, order_id: uuid.UUID) -> dict:
        """
        Resolve Pending capture records from the processor's view.

        Never issues a capture: a record whose PaymentIntent is still
        capturable is left Pending for the next capture call, which reuses
        its idempotency key.
        """
        resolved = 0
        pending = CaptureRecord.objects.filter(
            order_id=order_id,
            status=CaptureStatus.PENDING,
            processor_attempted_at__isnull=False,
        ).select_related("authorization")

        for record in pending:
            extend_order_lock(order_id)
            status = call_with_retry(cls.get_processor().get_status, record.authorization.processor_reference)
            if status.is_captured:
                cls._finalize(record, status)
                resolved += 1
            elif status.status == "canceled":
                cls._fail(record, "PaymentIntent canceled before capture")
                resolved += 1
            elif status.is_capturable:
                CaptureRecord.objects.filter(pk=record.pk).update(needs_reconciliation=False)

        if resolved:
            with transaction.atomic():
                order = lock_order_row(order_id)
                cls._complete_if_fully_captured(order)

        return {"order_id": str(order_id), "captures_resolved": resolved}

    @classmethod
    def captured_total(cls, order: Order) -> int:
        return order.captures.filter(status=CaptureStatus.SUCCEEDED).aggregate(
            total=Coalesce(Sum("captured_amount_cents"), 0)
        )["total"]

    # =========================================================================
    # Plan
    # =========================================================================

    @classmethod
    def _plan(cls, order: Order, amount_cents: int) -> tuple[list[CaptureRecord], list[AuthorizationHold]]:
        if order.price_adjustments.filter(status=AdjustmentStatus.PENDING).exists():
            raise OrderNotEligible(
                "The order has a price adjustment awaiting the customer's answer",
                details={"order_id": str(order.id)},
            )
        if order.status != OrderState.FULFILLMENT_PENDING:
            raise OrderNotEligible(
                "Payment can only be captured once the order is fulfilled",
                details={"order_id": str(order.id), "status": order.status},
            )
        if amount_cents != order.current_price_cents:
            raise AmountMismatch(
                "Capture amount must equal the order's current price",
                details={"amount_cents": amount_cents, "current_price_cents": order.current_price_cents},
            )

        succeeded = list(order.captures.filter(status=CaptureStatus.SUCCEEDED).select_related("authorization"))
        for record in succeeded:
            if record.authorization.status != HoldStatus.CAPTURED:
                raise DoubleCaptureDetected(
                    "Succeeded capture found for a hold that is not captured",
                    details={"capture_id": str(record.id), "hold_id": str(record.authorization_id)},
                )
        already = sum(r.captured_amount_cents for r in succeeded)
        remaining = amount_cents - already

        holds = list(order.authorization_holds.active().capture_order())
        if not holds and remaining > 0:
            if order.authorization_holds.filter(status=HoldStatus.EXPIRED).exists():
                raise AuthorizationExpired(
                    "The payment authorization has expired. Please re-authorize payment",
                    details={"order_id": str(order.id)},
                )
            raise OrderNotEligible(
                "The order has no active payment authorization",
                details={"order_id": str(order.id)},
            )
        held = sum(h.amount_cents for h in holds)
        if held < remaining:
            raise AmountMismatch(
                "Authorized funds do not cover the order's current price",
                details={"held_cents": held, "required_cents": remaining},
            )

        allocations: list[tuple[AuthorizationHold, int]] = []
        left = remaining
        for hold in holds:
            share = min(hold.amount_cents, left)
            allocations.append((hold, share))
            left -= share

        used = [(hold, share) for hold, share in allocations if share > 0]
        unused = [hold for hold, share in allocations if share == 0]

        # Only holds that are charged need to be live
        for hold, _ in used:
            if hold.is_expired:
                raise AuthorizationExpired(
                    "The payment authorization has expired. Please re-authorize payment",
                    details={"order_id": str(order.id), "hold_id": str(hold.id)},
                )
            if hold.status != HoldStatus.REQUIRES_CAPTURE:
                raise OrderNotEligible(
                    "The payment authorization is not confirmed yet",
                    details={"order_id": str(order.id), "hold_id": str(hold.id)},
                )

        conf = get_escrow_settings()
        total_fee = conf.platform_fee_for(amount_cents)
        fees = split_fee([share for _, share in used], total_fee - sum(r.platform_fee_cents for r in succeeded))

        records = []
        for (hold, share), fee in zip(used, fees):
            records.append(cls._pending_record(order, hold, share, fee, conf.platform_fee_percent))

        if already + sum(r.captured_amount_cents for r in records) > order.current_price_cents:
            raise DoubleCaptureDetected(
                "Planned capture exceeds the order's price",
                details={"order_id": str(order.id), "already_captured_cents": already},
            )
        return records, unused

    @classmethod
    def _pending_record(cls, order, hold, amount_cents, fee_cents, fee_percent) -> CaptureRecord:
        """Reuse the hold's live Pending record, or write a new one."""
        existing = (
            CaptureRecord.objects.select_for_update()
            .filter(order=order, authorization=hold, status=CaptureStatus.PENDING)
            .first()
        )
        if existing is not None:
            if existing.captured_amount_cents == amount_cents:
                return existing
            if existing.processor_attempted_at is not None:
                raise OrderNotEligible(
                    "A previous capture attempt is still being confirmed",
                    details={"order_id": str(order.id), "capture_id": str(existing.id)},
                )
            existing.fail("Superseded before reaching the processor")
            existing.save()

        return CaptureRecord.objects.create(
            order=order,
            authorization=hold,
            captured_amount_cents=amount_cents,
            platform_fee_cents=fee_cents,
            provider_net_cents=amount_cents - fee_cents,
            fee_percent=fee_percent,
        )

    # =========================================================================
    # Charge
    # =========================================================================

    @classmethod
    def _charge(cls, record: CaptureRecord) -> None:
        hold = record.authorization
        processor = cls.get_processor()
        extend_order_lock(record.order_id)

        if record.processor_attempted_at is not None:
            status = call_with_retry(processor.get_status, hold.processor_reference)
            if status.is_captured:
                cls._finalize(record, status)
                return
            if status.status == "canceled":
                cls._fail(record, "PaymentIntent canceled before capture")
                raise AuthorizationExpired(
                    "The payment authorization is no longer valid. Please re-authorize payment",
                    details={"capture_id": str(record.id), "hold_id": str(hold.id)},
                )
            if not status.is_capturable:
                raise cls._defer(record, f"Processor status: {status.status}")

        CaptureRecord.objects.filter(pk=record.pk).update(processor_attempted_at=timezone.now())

        try:
            result = processor.capture(
                hold.processor_reference,
                record.captured_amount_cents,
                idempotency_key=IdempotencyKeyGenerator.generate("capture", record.id),
            )
        except ProcessorError as e:
            if e.is_retryable or e.outcome_unknown:
                raise cls._defer(record, e.message) from e
            cls._fail(record, e.message)
            raise CaptureFailed(
                "The payment could not be captured",
                processor_code=e.processor_code,
                decline_code=e.decline_code,
                details={"capture_id": str(record.id), "order_id": str(record.order_id)},
            ) from e

        if not result.is_captured:
            raise cls._defer(record, f"Processor status: {result.status}")
        cls._finalize(record, result)

    @classmethod
    def _defer(cls, record: CaptureRecord, reason: str) -> ProcessorUnavailable:
        """Leave the record Pending for reconciliation; returns the error to raise."""
        CaptureRecord.objects.filter(pk=record.pk).update(needs_reconciliation=True)
        schedule_reconciliation(record.order_id)
        cls.get_logger().warning(
            "Capture outcome unknown",
            extra={"capture_id": str(record.id), "order_id": str(record.order_id), "reason": reason},
        )
        return ProcessorUnavailable(
            "The payment processor is not responding. The capture will be confirmed shortly",
            details={"capture_id": str(record.id), "order_id": str(record.order_id)},
        )

    @classmethod
    def _fail(cls, record: CaptureRecord, reason: str) -> None:
        with transaction.atomic():
            locked = CaptureRecord.objects.select_for_update().get(pk=record.pk)
            if locked.status == CaptureStatus.PENDING:
                locked.fail(reason)
                locked.save()
        cls.get_logger().warning(
            "Capture failed",
            extra={"capture_id": str(record.id), "order_id": str(record.order_id), "reason": reason},
        )

    # =========================================================================
    # Finalize
    # =========================================================================

    @classmethod
    def _finalize(cls, record: CaptureRecord, status: PaymentIntentResult) -> None:
        """Mark one record Succeeded and write its wallet rows."""
        if status.amount_received and status.amount_received > record.captured_amount_cents:
            raise DoubleCaptureDetected(
                "Processor captured more than the capture record",
                details={
                    "capture_id": str(record.id),
                    "amount_received": status.amount_received,
                    "captured_amount_cents": record.captured_amount_cents,
                },
            )

        with transaction.atomic():
            order = lock_order_row(record.order_id)
            record = CaptureRecord.objects.select_for_update().get(pk=record.pk)
            if record.status != CaptureStatus.PENDING:
                return
            hold = AuthorizationHold.objects.select_for_update().get(pk=record.authorization_id)

            record.succeed()
            record.save()
            hold.mark_captured()
            hold.save()

            AuthorizationService.release_hold_funds(order, hold)
            wallet.record_many(
                [
                    RecordTransactionParams(
                        user_id=order.customer_id,
                        amount_cents=-record.captured_amount_cents,
                        kind=WalletTransactionKind.CAPTURE_DEBIT,
                        idempotency_key=f"capture_debit:{record.id}",
                        order_id=order.id,
                        currency=order.currency,
                        description="Payment captured",
                        metadata={"capture_id": str(record.id)},
                    ),
                    RecordTransactionParams(
                        user_id=order.provider_id,
                        amount_cents=record.provider_net_cents,
                        kind=WalletTransactionKind.CAPTURE_CREDIT,
                        idempotency_key=f"capture_credit:{record.id}",
                        order_id=order.id,
                        status=WalletTransactionStatus.PENDING,
                        currency=order.currency,
                        description="Earnings held until payout",
                        metadata={
                            "capture_id": str(record.id),
                            "platform_fee_cents": record.platform_fee_cents,
                        },
                    ),
                ]
            )

    @classmethod
    def _complete_if_fully_captured(cls, order: Order) -> bool:
        if order.status != OrderState.FULFILLMENT_PENDING:
            return False
        captured = cls.captured_total(order)
        if captured < order.current_price_cents:
            return False
        if captured > order.current_price_cents:
            raise DoubleCaptureDetected(
                "Captured more than the order's price",
                details={"order_id": str(order.id), "captured_cents": captured},
            )

        order.capture()
        order.save()
        result = cls._result(order)
        EscrowEventService.record_event(
            order,
            EscrowEventType.PAYMENT_CAPTURED,
            recipients=[order.customer_id, order.provider_id],
            payload={
                "captured_cents": result.total_captured_cents,
                "platform_fee_cents": result.platform_fee_cents,
                "provider_net_cents": result.provider_net_cents,
            },
        )
        return True

    # =========================================================================
    # Results
    # =========================================================================

    @classmethod
    def _replay(cls, order: Order, amount_cents: int) -> CaptureResult:
        result = cls._result(order, already_captured=True)
        if not result.records:
            raise OrderNotEligible(
                f"The order is {order.get_status_display().lower()} and cannot be captured",
                details={"order_id": str(order.id), "status": order.status},
            )
        if amount_cents != result.total_captured_cents:
            raise AmountMismatch(
                "The order was already captured for a different amount",
                details={"amount_cents": amount_cents, "captured_cents": result.total_captured_cents},
            )
        cls.get_logger().info("Capture replayed", extra={"order_id": str(order.id)})
        return result

    @staticmethod
    def _result(order: Order, already_captured: bool = False) -> CaptureResult:
        records = list(order.captures.filter(status=CaptureStatus.SUCCEEDED).order_by("created_at"))
        return CaptureResult(
            order=order,
            records=records,
            total_captured_cents=sum(r.captured_amount_cents for r in records),
            platform_fee_cents=sum(r.platform_fee_cents for r in records),
            provider_net_cents=sum(r.provider_net_cents for r in records),
            already_captured=already_captured,
            payout=order.payout_schedules.order_by("-created_at").first(),
        )
