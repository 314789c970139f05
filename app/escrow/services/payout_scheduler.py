"""
Provider payout scheduling and release.

A captured order gets one payout schedule for the provider's net,
released after the holding period. Refunds that land before the release
cancel the schedule and replace it with one for the reduced amount.
An open dispute freezes the release until it is resolved or withdrawn.

Callers must hold escrow.locks.order_lock() for the order.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from django.db import transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from core.services import BaseService
from escrow.conf import get_escrow_settings
from escrow.exceptions import (
    InvalidAmount,
    OrderNotEligible,
    OrphanedPayoutSchedule,
    PayoutFrozen,
    PayoutScheduleNotFound,
)
from escrow.models import Order, PayoutSchedule
from escrow.services.base import lock_order_row
from escrow.services.event_service import EscrowEventService
from escrow.state_machines import (
    CaptureStatus,
    DisputeStatus,
    EscrowEventType,
    OrderState,
    PayoutStatus,
    RefundStatus,
)
from escrow.wallet.models import WalletTransactionKind
from escrow.wallet.services import wallet
from escrow.wallet.types import RecordTransactionParams


class PayoutScheduler(BaseService):
    """Schedules, releases and cancels provider payouts."""

    @classmethod
    def schedule(
        cls,
        order_id: uuid.UUID,
        provider_id,
        amount_cents: int,
        capture_time: datetime,
        holding_period: timedelta | None = None,
    ) -> PayoutSchedule:
        """
        Schedule the provider's payout for a captured order.

        Idempotent: returns the order's Scheduled payout if one exists.
        ``holding_period`` overrides the configured delay (trusted providers).

        Raises:
            InvalidAmount: amount <= 0
            OrderNotEligible: order is not Captured
        """
        if amount_cents <= 0:
            raise InvalidAmount(
                "Payout amount must be positive",
                details={"amount_cents": amount_cents},
            )
        if holding_period is None:
            holding_period = get_escrow_settings().payout_holding_period

        with transaction.atomic():
            order = lock_order_row(order_id)
            existing = order.payout_schedules.filter(status=PayoutStatus.SCHEDULED).first()
            if existing is not None:
                return existing
            if order.status != OrderState.CAPTURED:
                raise OrderNotEligible(
                    "A payout can only be scheduled for a captured order",
                    details={"order_id": str(order.id), "status": order.status},
                )

            schedule = PayoutSchedule.objects.create(
                provider_id=provider_id,
                order=order,
                amount_cents=amount_cents,
                currency=order.currency,
                scheduled_release_at=capture_time + holding_period,
            )
            order.schedule_payout()
            order.save()
            EscrowEventService.record_event(
                order,
                EscrowEventType.PAYOUT_SCHEDULED,
                recipients=[provider_id],
                payload={
                    "payout_id": str(schedule.id),
                    "amount_cents": amount_cents,
                    "scheduled_release_at": schedule.scheduled_release_at,
                },
            )

        cls.get_logger().info(
            "Payout scheduled",
            extra={
                "order_id": str(order.id),
                "payout_id": str(schedule.id),
                "amount_cents": amount_cents,
                "scheduled_release_at": schedule.scheduled_release_at.isoformat(),
            },
        )
        return schedule

    @classmethod
    def release(cls, schedule_id: uuid.UUID) -> PayoutSchedule:
        """
        Release a due payout to the provider.

        Released or Cancelled schedules are returned unchanged. A schedule
        whose order was refunded is cancelled and reported as orphaned.

        Raises:
            PayoutScheduleNotFound: unknown schedule
            PayoutFrozen: the order has an open dispute
            OrderNotEligible: not due yet
        """
        order_id = cls.order_id_for(schedule_id)

        with transaction.atomic():
            order = lock_order_row(order_id)
            schedule = PayoutSchedule.objects.select_for_update().get(pk=schedule_id)

            if schedule.status != PayoutStatus.SCHEDULED:
                return schedule

            if order.status == OrderState.REFUNDED:
                schedule.cancel("Order refunded")
                schedule.save()
                error = OrphanedPayoutSchedule(
                    "Payout schedule found for a refunded order",
                    details={"payout_id": str(schedule.id), "order_id": str(order.id)},
                )
                cls.get_logger().critical(
                    error.message,
                    extra={"error_code": error.error_code, **error.details},
                )
                return schedule

            if order.disputes.filter(status=DisputeStatus.OPEN).exists():
                raise PayoutFrozen(
                    "This payout is frozen while the order is disputed",
                    details={"payout_id": str(schedule.id), "order_id": str(order.id)},
                )

            if not schedule.is_due:
                raise OrderNotEligible(
                    "This payout is not due yet",
                    details={
                        "payout_id": str(schedule.id),
                        "scheduled_release_at": schedule.scheduled_release_at.isoformat(),
                    },
                )

            schedule.release()
            schedule.save()
            wallet.record(
                RecordTransactionParams(
                    user_id=schedule.provider_id,
                    amount_cents=-schedule.amount_cents,
                    kind=WalletTransactionKind.PAYOUT,
                    idempotency_key=f"payout:{schedule.id}",
                    order_id=order.id,
                    currency=schedule.currency,
                    description="Payout released",
                    metadata={"payout_id": str(schedule.id)},
                )
            )
            wallet.settle_pending_for_order(schedule.provider_id, order.id)

            if order.status == OrderState.PAYOUT_SCHEDULED:
                order.complete()
                order.save()
            EscrowEventService.record_event(
                order,
                EscrowEventType.PAYOUT_RELEASED,
                recipients=[schedule.provider_id],
                payload={"payout_id": str(schedule.id), "amount_cents": schedule.amount_cents},
            )

        cls.get_logger().info(
            "Payout released",
            extra={
                "order_id": str(order.id),
                "payout_id": str(schedule.id),
                "amount_cents": schedule.amount_cents,
            },
        )
        return schedule

    @classmethod
    def cancel(cls, schedule_id: uuid.UUID, reason: str = "") -> PayoutSchedule:
        """Cancel a Scheduled payout. Released payouts are left untouched."""
        order_id = cls.order_id_for(schedule_id)
        with transaction.atomic():
            lock_order_row(order_id)
            schedule = PayoutSchedule.objects.select_for_update().get(pk=schedule_id)
            cls.cancel_locked(schedule, reason)
        return schedule

    @classmethod
    def cancel_locked(cls, schedule: PayoutSchedule, reason: str) -> bool:
        """Cancel inside the caller's transaction. Returns whether it changed."""
        if schedule.status != PayoutStatus.SCHEDULED:
            return False
        schedule.cancel(reason)
        schedule.save()
        cls.get_logger().info(
            "Payout cancelled",
            extra={"payout_id": str(schedule.id), "order_id": str(schedule.order_id), "reason": reason},
        )
        return True

    @classmethod
    def reschedule_remaining(cls, schedule: PayoutSchedule, amount_cents: int) -> PayoutSchedule:
        """
        Replace a cancelled schedule with one for ``amount_cents``.

        Keeps the original release time. Must run in the caller's
        transaction, after the original was cancelled.
        """
        return PayoutSchedule.objects.create(
            provider_id=schedule.provider_id,
            order_id=schedule.order_id,
            amount_cents=amount_cents,
            currency=schedule.currency,
            scheduled_release_at=schedule.scheduled_release_at,
            replaces=schedule,
        )

    @staticmethod
    def payable_amount(order: Order) -> int:
        """Provider net captured on the order minus clawbacks of succeeded refunds."""
        net = order.captures.filter(status=CaptureStatus.SUCCEEDED).aggregate(
            total=Coalesce(Sum("provider_net_cents"), 0)
        )["total"]
        clawed = order.refunds.filter(status=RefundStatus.SUCCEEDED).aggregate(
            total=Coalesce(Sum("provider_clawback_cents"), 0)
        )["total"]
        return net - clawed

    @staticmethod
    def due_schedules(now: datetime | None = None):
        return (
            PayoutSchedule.objects.filter(
                status=PayoutStatus.SCHEDULED,
                scheduled_release_at__lte=now or timezone.now(),
            )
            .exclude(order__disputes__status=DisputeStatus.OPEN)
            .order_by("scheduled_release_at")
        )

    @staticmethod
    def order_id_for(schedule_id: uuid.UUID) -> uuid.UUID:
        try:
            return PayoutSchedule.objects.values_list("order_id", flat=True).get(
                pk=uuid.UUID(str(schedule_id))
            )
        except (PayoutSchedule.DoesNotExist, ValueError):
            raise PayoutScheduleNotFound(
                f"Payout schedule {schedule_id} not found",
                details={"payout_id": str(schedule_id)},
            )
