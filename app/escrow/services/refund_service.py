"""
Refunds against captured orders.

A refund is spread over the order's captures newest first, one
RefundRecord per capture touched. The provider gives back their share
(``refund * provider_net / captured``, floored; the refund that empties a
capture takes the rest of its net) and the platform absorbs the rest of
its fee.

Where the provider's share comes from depends on the payout:

- Payout still scheduled: cancelled and replaced by one for the
  remainder; the clawback row stays Pending and settles with the payout
- Payout released: a Completed adjustment debit; the released payout row
  is never modified

Callers must hold escrow.locks.order_lock() for the order.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from django.db import transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from core.exceptions import ValidationError
from escrow.adapters import IdempotencyKeyGenerator, call_with_retry
from escrow.conf import get_escrow_settings
from escrow.exceptions import (
    InvalidAmount,
    OrderNotEligible,
    ProcessorError,
    ProcessorUnavailable,
    RefundExceedsCaptured,
    RefundFailed,
    RefundNotAllowed,
)
from escrow.locks import extend_order_lock
from escrow.models import Order, RefundRecord
from escrow.models.order import REFUNDABLE_STATES
from escrow.services.base import ProcessorBackedService, lock_order_row, schedule_reconciliation
from escrow.services.event_service import EscrowEventService
from escrow.services.payout_scheduler import PayoutScheduler
from escrow.state_machines import (
    CaptureStatus,
    EscrowEventType,
    OrderState,
    PayoutStatus,
    RefundPolicy,
    RefundReason,
    RefundStatus,
)
from escrow.wallet.models import WalletTransactionKind, WalletTransactionStatus
from escrow.wallet.services import wallet
from escrow.wallet.types import RecordTransactionParams

# Refund rows that count against the refundable amount
LIVE_REFUND_STATES = (RefundStatus.PENDING, RefundStatus.SUCCEEDED)


@dataclass
class RefundOutcome:
    order: Order
    records: list[RefundRecord]
    refunded_cents: int
    remaining_refundable_cents: int


class RefundService(ProcessorBackedService):
    """Issues and reconciles refunds."""

    @classmethod
    def refund(
        cls,
        order_id: uuid.UUID,
        amount_cents: int,
        reason: str = RefundReason.OTHER,
        initiated_by_id=None,
        note: str = "",
    ) -> RefundOutcome:
        """
        Refund ``amount_cents`` to the customer.

        Partial refunds leave the order's state alone; the order becomes
        Refunded once nothing refundable remains.

        Raises:
            OrderNotEligible: order not captured (cancel it instead) or closed
            InvalidAmount: amount <= 0
            RefundNotAllowed: refund policy forbids it
            RefundExceedsCaptured: more than the remaining refundable amount
            RefundFailed: processor rejected the refund
            ProcessorUnavailable: outcome unknown, reconciliation scheduled
        """
        if reason not in RefundReason.values:
            raise ValidationError(f"Unknown refund reason '{reason}'", details={"reason": reason})

        with transaction.atomic():
            order = lock_order_row(order_id)
            records = cls._plan(order, amount_cents, reason, initiated_by_id, note)

        for record in records:
            cls._issue(record)

        with transaction.atomic():
            order = lock_order_row(order_id)
            cls._settle_order(order)

        outcome = RefundOutcome(
            order=order,
            records=[RefundRecord.objects.get(pk=r.pk) for r in records],
            refunded_cents=amount_cents,
            remaining_refundable_cents=cls.remaining_refundable(order),
        )
        cls.get_logger().info(
            "Refund issued",
            extra={
                "order_id": str(order.id),
                "refund_cents": amount_cents,
                "remaining_refundable_cents": outcome.remaining_refundable_cents,
                "reason": reason,
            },
        )
        return outcome

    @classmethod
    def reconcile_refunds(cls, order_id: uuid.UUID) -> dict:
        """
        Resolve Pending refunds by looking them up at the processor.

        A refund the processor never received is marked Failed so the
        amount becomes refundable again.
        """
        resolved = 0
        pending = RefundRecord.objects.filter(
            order_id=order_id,
            status=RefundStatus.PENDING,
            processor_attempted_at__isnull=False,
        ).select_related("capture__authorization")

        for record in pending:
            extend_order_lock(order_id)
            found = call_with_retry(
                cls.get_processor().find_refund,
                record.capture.authorization.processor_reference,
                str(record.id),
            )
            if found is None:
                cls._fail(record, "Refund not found at the processor")
            elif found.is_failed:
                cls._fail(record, f"Processor status: {found.status}")
            else:
                cls._apply_success(record, found.id)
            resolved += 1

        if resolved:
            with transaction.atomic():
                order = lock_order_row(order_id)
                cls._settle_order(order)

        return {"order_id": str(order_id), "refunds_resolved": resolved}

    @classmethod
    def remaining_refundable(cls, order: Order) -> int:
        captured = order.captures.filter(status=CaptureStatus.SUCCEEDED).aggregate(
            total=Coalesce(Sum("captured_amount_cents"), 0)
        )["total"]
        return captured - cls._refunded(order, LIVE_REFUND_STATES)

    @staticmethod
    def _refunded(order_or_capture, statuses) -> int:
        return order_or_capture.refunds.filter(status__in=statuses).aggregate(
            total=Coalesce(Sum("refund_amount_cents"), 0)
        )["total"]

    # =========================================================================
    # Plan
    # =========================================================================

    @classmethod
    def _plan(cls, order: Order, amount_cents: int, reason, initiated_by_id, note) -> list[RefundRecord]:
        if order.status not in REFUNDABLE_STATES:
            hint = " Cancel the order instead." if order.is_open else ""
            raise OrderNotEligible(
                f"A {order.get_status_display().lower()} order cannot be refunded.{hint}",
                details={"order_id": str(order.id), "status": order.status},
            )
        if amount_cents <= 0:
            raise InvalidAmount(
                "Refund amount must be positive",
                details={"amount_cents": amount_cents},
            )
        if order.refund_policy == RefundPolicy.NON_REFUNDABLE:
            raise RefundNotAllowed(
                "This order is not refundable",
                details={"order_id": str(order.id)},
            )

        captures = list(order.captures.filter(status=CaptureStatus.SUCCEEDED).order_by("-created_at"))
        captured = sum(c.captured_amount_cents for c in captures)
        already = cls._refunded(order, LIVE_REFUND_STATES)
        remaining = captured - already
        if amount_cents > remaining:
            raise RefundExceedsCaptured(
                f"At most {remaining / 100:.2f} {order.currency.upper()} can still be refunded",
                details={"amount_cents": amount_cents, "remaining_refundable_cents": remaining},
            )
        if order.refund_policy == RefundPolicy.PARTIALLY_REFUNDABLE:
            ceiling = get_escrow_settings().partial_refund_ceiling(captured)
            if already + amount_cents > ceiling:
                raise RefundNotAllowed(
                    "This order is only partially refundable",
                    details={"ceiling_cents": ceiling, "already_refunded_cents": already},
                )

        records = []
        left = amount_cents
        for capture in captures:
            if left == 0:
                break
            capacity = capture.captured_amount_cents - cls._refunded(capture, LIVE_REFUND_STATES)
            part = min(capacity, left)
            if part <= 0:
                continue
            records.append(
                RefundRecord.objects.create(
                    order=order,
                    capture=capture,
                    refund_amount_cents=part,
                    provider_clawback_cents=cls._clawback_for(capture, part, exhausts=part == capacity),
                    reason=reason,
                    note=note,
                    initiated_by_id=initiated_by_id,
                )
            )
            left -= part
        return records

    @staticmethod
    def _clawback_for(capture, part: int, exhausts: bool) -> int:
        """
        Provider share of ``part`` refunded from ``capture``.

        Floored per refund. The refund that empties a capture takes whatever
        net is left, so a capture refunded in pieces claws back exactly its
        provider net.
        """
        if not exhausts:
            return part * capture.provider_net_cents // capture.captured_amount_cents
        prior = capture.refunds.filter(status__in=LIVE_REFUND_STATES).aggregate(
            total=Coalesce(Sum("provider_clawback_cents"), 0)
        )["total"]
        return max(capture.provider_net_cents - prior, 0)

    # =========================================================================
    # Issue
    # =========================================================================

    @classmethod
    def _issue(cls, record: RefundRecord) -> None:
        RefundRecord.objects.filter(pk=record.pk).update(processor_attempted_at=timezone.now())
        extend_order_lock(record.order_id)
        try:
            result = cls.get_processor().refund(
                record.capture.authorization.processor_reference,
                record.refund_amount_cents,
                idempotency_key=IdempotencyKeyGenerator.generate("refund", record.id),
                metadata={"refund_record_id": str(record.id), "order_id": str(record.order_id)},
            )
        except ProcessorError as e:
            if e.is_retryable or e.outcome_unknown:
                RefundRecord.objects.filter(pk=record.pk).update(needs_reconciliation=True)
                schedule_reconciliation(record.order_id)
                cls.get_logger().warning(
                    "Refund outcome unknown",
                    extra={"refund_id": str(record.id), "order_id": str(record.order_id)},
                )
                raise ProcessorUnavailable(
                    "The payment processor is not responding. The refund will be confirmed shortly",
                    details={"refund_id": str(record.id), "order_id": str(record.order_id)},
                ) from e
            cls._fail(record, e.message)
            raise RefundFailed(
                "The refund could not be processed",
                processor_code=e.processor_code,
                details={"refund_id": str(record.id), "order_id": str(record.order_id)},
            ) from e

        if result.is_failed:
            cls._fail(record, f"Processor status: {result.status}")
            raise RefundFailed(
                "The refund could not be processed",
                details={"refund_id": str(record.id), "processor_status": result.status},
            )
        cls._apply_success(record, result.id)

    @classmethod
    def _fail(cls, record: RefundRecord, reason: str) -> None:
        with transaction.atomic():
            locked = RefundRecord.objects.select_for_update().get(pk=record.pk)
            if locked.status == RefundStatus.PENDING:
                locked.fail(reason)
                locked.save()
        cls.get_logger().warning(
            "Refund failed",
            extra={"refund_id": str(record.id), "order_id": str(record.order_id), "reason": reason},
        )

    # =========================================================================
    # Apply
    # =========================================================================

    @classmethod
    def _apply_success(cls, record: RefundRecord, processor_refund_reference: str | None) -> None:
        """Mark one record Succeeded, write wallet rows and net the clawback."""
        with transaction.atomic():
            order = lock_order_row(record.order_id)
            record = RefundRecord.objects.select_for_update().get(pk=record.pk)
            if record.status != RefundStatus.PENDING:
                return

            record.succeed(processor_refund_reference)
            record.save()
            wallet.record(
                RecordTransactionParams(
                    user_id=order.customer_id,
                    amount_cents=record.refund_amount_cents,
                    kind=WalletTransactionKind.REFUND,
                    idempotency_key=f"refund:{record.id}",
                    order_id=order.id,
                    currency=order.currency,
                    description="Refund issued",
                    metadata={"refund_id": str(record.id), "reason": record.reason},
                )
            )
            if record.provider_clawback_cents:
                cls._claw_back(order, record)

            EscrowEventService.record_event(
                order,
                EscrowEventType.REFUND_ISSUED,
                recipients=[order.customer_id, order.provider_id],
                payload={
                    "refund_id": str(record.id),
                    "refund_cents": record.refund_amount_cents,
                    "provider_clawback_cents": record.provider_clawback_cents,
                    "reason": record.reason,
                },
            )

    @classmethod
    def _claw_back(cls, order: Order, record: RefundRecord) -> None:
        clawback = record.provider_clawback_cents
        scheduled = order.payout_schedules.select_for_update().filter(status=PayoutStatus.SCHEDULED).first()
        released = order.payout_schedules.filter(status=PayoutStatus.RELEASED).exists()
        netted = scheduled is not None or not released

        wallet.record(
            RecordTransactionParams(
                user_id=order.provider_id,
                amount_cents=-clawback,
                kind=WalletTransactionKind.ADJUSTMENT,
                idempotency_key=f"clawback:{record.id}",
                order_id=order.id,
                status=WalletTransactionStatus.PENDING if netted else WalletTransactionStatus.COMPLETED,
                currency=order.currency,
                description="Provider share of refund",
                metadata={"refund_id": str(record.id)},
            )
        )

        if scheduled is None:
            return
        PayoutScheduler.cancel_locked(scheduled, "Reduced by refund")
        remainder = scheduled.amount_cents - clawback
        if remainder > 0:
            PayoutScheduler.reschedule_remaining(scheduled, remainder)
        else:
            # Refunds offset the whole payout
            wallet.settle_pending_for_order(order.provider_id, order.id)

    @classmethod
    def _settle_order(cls, order: Order) -> None:
        """Move the order once refunds leave nothing refundable or nothing to pay out."""
        if order.status not in REFUNDABLE_STATES:
            return
        captured = order.captures.filter(status=CaptureStatus.SUCCEEDED).aggregate(
            total=Coalesce(Sum("captured_amount_cents"), 0)
        )["total"]
        if captured and cls._refunded(order, [RefundStatus.SUCCEEDED]) >= captured:
            for schedule in order.payout_schedules.select_for_update().filter(status=PayoutStatus.SCHEDULED):
                PayoutScheduler.cancel_locked(schedule, "Order fully refunded")
            wallet.settle_pending_for_order(order.provider_id, order.id)
            order.refund_full()
            order.save()
            return
        if (
            order.status == OrderState.PAYOUT_SCHEDULED
            and not order.payout_schedules.filter(status=PayoutStatus.SCHEDULED).exists()
        ):
            order.complete()
            order.save()

