"""
Tests for provider payout scheduling and release.
"""

import logging
from datetime import timedelta

import pytest
from freezegun import freeze_time

from escrow.exceptions import InvalidAmount, OrderNotEligible
from escrow.locks import order_lock
from escrow.models import EscrowEvent, PayoutSchedule
from escrow.services import EscrowOrchestrator, PayoutScheduler
from escrow.state_machines import EscrowEventType, OrderState, PayoutStatus
from escrow.tests.conftest import reload
from escrow.wallet.models import WalletTransaction, WalletTransactionKind, WalletTransactionStatus
from escrow.wallet.services import wallet


def due(schedule):
    return freeze_time(schedule.scheduled_release_at + timedelta(minutes=1))


class TestSchedule:
    def test_scheduling_twice_returns_existing(self, paid_order, provider):
        schedule = PayoutSchedule.objects.get(order=paid_order)

        with order_lock(paid_order.id):
            again = PayoutScheduler.schedule(paid_order.id, provider.id, 21250, reload(paid_order).captured_at)

        assert again == schedule
        assert PayoutSchedule.objects.filter(order=paid_order).count() == 1

    def test_only_captured_orders(self, fulfilled_order, provider):
        with order_lock(fulfilled_order.id), pytest.raises(OrderNotEligible):
            PayoutScheduler.schedule(fulfilled_order.id, provider.id, 21250, reload(fulfilled_order).fulfilled_at)

    def test_amount_must_be_positive(self, paid_order, provider):
        with order_lock(paid_order.id), pytest.raises(InvalidAmount):
            PayoutScheduler.schedule(paid_order.id, provider.id, 0, reload(paid_order).captured_at)


class TestRelease:
    def test_release_pays_provider_and_completes_order(self, paid_order, provider):
        schedule = PayoutSchedule.objects.get(order=paid_order)

        with due(schedule):
            result = EscrowOrchestrator.release_payout(schedule.id)

        assert result.success
        released = PayoutSchedule.objects.get(pk=schedule.pk)
        assert released.status == PayoutStatus.RELEASED
        assert released.released_at is not None

        order = reload(paid_order)
        assert order.status == OrderState.COMPLETED
        assert order.completed_at is not None

        payout_row = WalletTransaction.objects.get(idempotency_key=f"payout:{schedule.id}")
        assert payout_row.amount_cents == -21250
        assert payout_row.kind == WalletTransactionKind.PAYOUT
        assert not WalletTransaction.objects.filter(
            user=provider, related_order=order, status=WalletTransactionStatus.PENDING
        ).exists()
        # Credit settled and paid out in the same step
        assert wallet.balance(provider.id).cents == 0
        assert wallet.pending_balance(provider.id).cents == 0

        event = EscrowEvent.objects.get(order=order, event_type=EscrowEventType.PAYOUT_RELEASED)
        assert event.recipient == provider
        assert event.payload["amount_cents"] == 21250

    def test_not_due_yet(self, paid_order):
        schedule = PayoutSchedule.objects.get(order=paid_order)

        result = EscrowOrchestrator.release_payout(schedule.id)

        assert result.error_code == "ORDER_NOT_ELIGIBLE"
        assert PayoutSchedule.objects.get(pk=schedule.pk).status == PayoutStatus.SCHEDULED
        assert reload(paid_order).status == OrderState.PAYOUT_SCHEDULED

    def test_release_is_idempotent(self, paid_order):
        schedule = PayoutSchedule.objects.get(order=paid_order)

        with due(schedule):
            EscrowOrchestrator.release_payout(schedule.id)
            second = EscrowOrchestrator.release_payout(schedule.id)

        assert second.success
        assert second.data.status == PayoutStatus.RELEASED
        assert WalletTransaction.objects.filter(kind=WalletTransactionKind.PAYOUT).count() == 1
        assert EscrowEvent.objects.filter(event_type=EscrowEventType.PAYOUT_RELEASED).count() == 1

    def test_unknown_schedule(self, db):
        result = EscrowOrchestrator.release_payout("00000000-0000-0000-0000-000000000000")

        assert result.error_code == "PAYOUT_SCHEDULE_NOT_FOUND"

    def test_schedule_of_refunded_order_is_cancelled(self, paid_order, provider, caplog):
        EscrowOrchestrator.refund(paid_order.id, 25000)
        order = reload(paid_order)
        assert order.status == OrderState.REFUNDED
        orphan = PayoutSchedule.objects.create(
            provider=provider,
            order=order,
            amount_cents=21250,
            scheduled_release_at=order.captured_at,
        )

        with caplog.at_level(logging.CRITICAL):
            result = EscrowOrchestrator.release_payout(orphan.id)

        assert result.success
        orphan = PayoutSchedule.objects.get(pk=orphan.pk)
        assert orphan.status == PayoutStatus.CANCELLED
        assert orphan.cancellation_reason == "Order refunded"
        assert not WalletTransaction.objects.filter(idempotency_key=f"payout:{orphan.id}").exists()
        assert any(record.levelno == logging.CRITICAL for record in caplog.records)


class TestCancel:
    def test_cancel_scheduled_payout(self, paid_order):
        schedule = PayoutSchedule.objects.get(order=paid_order)

        with order_lock(paid_order.id):
            cancelled = PayoutScheduler.cancel(schedule.id, "Dispute")

        assert cancelled.status == PayoutStatus.CANCELLED
        assert cancelled.cancellation_reason == "Dispute"

    def test_released_payout_is_untouched(self, paid_order):
        schedule = PayoutSchedule.objects.get(order=paid_order)
        with due(schedule):
            EscrowOrchestrator.release_payout(schedule.id)

        with order_lock(paid_order.id):
            result = PayoutScheduler.cancel(schedule.id, "Too late")

        assert result.status == PayoutStatus.RELEASED


class TestPayableAmount:
    def test_net_minus_refund_clawbacks(self, paid_order):
        EscrowOrchestrator.refund(paid_order.id, 10000)

        # 10000 * 21250 // 25000
        assert PayoutScheduler.payable_amount(reload(paid_order)) == 21250 - 8500

    def test_due_schedules(self, paid_order):
        schedule = PayoutSchedule.objects.get(order=paid_order)

        assert list(PayoutScheduler.due_schedules()) == []
        with due(schedule):
            assert list(PayoutScheduler.due_schedules()) == [schedule]
