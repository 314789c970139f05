"""
Tests for refunds and provider clawbacks.

Test Classes:
    TestRefundBeforePayout: Refunds netted against a scheduled payout
    TestRefundAfterPayout: Refunds clawed back from a released payout
    TestRefundPolicy: Refund policy ceilings
    TestRefundGuards: Validation before any money moves
    TestRefundFailures: Processor rejections and unknown outcomes
"""

from datetime import timedelta

import pytest
from freezegun import freeze_time

from escrow.exceptions import ProcessorInvalidRequest, ProcessorTimeout
from escrow.models import EscrowEvent, PayoutSchedule, RefundRecord
from escrow.services import EscrowOrchestrator
from escrow.state_machines import (
    AdjustmentDecision,
    EscrowEventType,
    FulfillmentTrigger,
    OrderState,
    PayoutStatus,
    RefundPolicy,
    RefundReason,
    RefundStatus,
)
from escrow.tests.conftest import reload
from escrow.tests.factories import OrderFactory
from escrow.wallet.models import WalletTransaction, WalletTransactionKind, WalletTransactionStatus
from escrow.wallet.services import wallet


@pytest.fixture
def released_order(paid_order):
    """COMPLETED: the provider's payout has been released."""
    schedule = PayoutSchedule.objects.get(order=paid_order)
    with freeze_time(schedule.scheduled_release_at + timedelta(minutes=1)):
        result = EscrowOrchestrator.release_payout(schedule.id)
    assert result.success, result.error
    return reload(paid_order)


def set_policy(order, policy):
    result = EscrowOrchestrator.update_refund_policy(order.id, policy, expected_version=reload(order).version)
    assert result.success, result.error


class TestRefundBeforePayout:
    def test_partial_refund(self, paid_order, customer, provider, fake_processor):
        result = EscrowOrchestrator.refund(paid_order.id, 10000, RefundReason.QUALITY_ISSUE, customer.id)

        assert result.success
        outcome = result.data
        assert outcome.refunded_cents == 10000
        assert outcome.remaining_refundable_cents == 15000
        [record] = outcome.records
        assert record.status == RefundStatus.SUCCEEDED
        assert record.provider_clawback_cents == 8500
        assert record.processor_refund_reference.startswith("re_fake_")
        assert record.reason == RefundReason.QUALITY_ISSUE
        assert fake_processor.calls_for("refund")[0]["amount_cents"] == 10000

        # Partial refunds keep the order where it was
        assert reload(paid_order).status == OrderState.PAYOUT_SCHEDULED

    def test_partial_refund_reschedules_reduced_payout(self, paid_order):
        original = PayoutSchedule.objects.get(order=paid_order)

        EscrowOrchestrator.refund(paid_order.id, 10000)

        original = PayoutSchedule.objects.get(pk=original.pk)
        assert original.status == PayoutStatus.CANCELLED
        assert original.cancellation_reason == "Reduced by refund"
        replacement = PayoutSchedule.objects.get(order=paid_order, status=PayoutStatus.SCHEDULED)
        assert replacement.amount_cents == 12750
        assert replacement.replaces == original
        assert replacement.scheduled_release_at == original.scheduled_release_at

    def test_partial_refund_wallet_rows(self, paid_order, customer, provider):
        record = EscrowOrchestrator.refund(paid_order.id, 10000).data.records[0]

        refund_row = WalletTransaction.objects.get(idempotency_key=f"refund:{record.id}")
        assert refund_row.user == customer
        assert refund_row.amount_cents == 10000
        assert refund_row.kind == WalletTransactionKind.REFUND

        clawback = WalletTransaction.objects.get(idempotency_key=f"clawback:{record.id}")
        assert clawback.user == provider
        assert clawback.amount_cents == -8500
        assert clawback.kind == WalletTransactionKind.ADJUSTMENT
        assert clawback.status == WalletTransactionStatus.PENDING

        assert wallet.balance(customer.id).cents == -15000
        assert wallet.pending_balance(provider.id).cents == 12750

    def test_reduced_payout_releases_remainder(self, paid_order, provider):
        EscrowOrchestrator.refund(paid_order.id, 10000)
        replacement = PayoutSchedule.objects.get(order=paid_order, status=PayoutStatus.SCHEDULED)

        with freeze_time(replacement.scheduled_release_at + timedelta(minutes=1)):
            EscrowOrchestrator.release_payout(replacement.id)

        assert reload(paid_order).status == OrderState.COMPLETED
        assert wallet.pending_balance(provider.id).cents == 0
        assert wallet.balance(provider.id).cents == 0

    def test_full_refund(self, paid_order, customer, provider):
        result = EscrowOrchestrator.refund(paid_order.id, 25000, RefundReason.SERVICE_NOT_PROVIDED)

        assert result.data.remaining_refundable_cents == 0
        order = reload(paid_order)
        assert order.status == OrderState.REFUNDED
        assert order.refunded_at is not None
        assert not PayoutSchedule.objects.filter(order=order, status=PayoutStatus.SCHEDULED).exists()
        assert wallet.balance(customer.id).cents == 0
        assert wallet.balance(provider.id).cents == 0
        assert wallet.pending_balance(provider.id).cents == 0

    def test_refunds_add_up_to_full(self, paid_order):
        EscrowOrchestrator.refund(paid_order.id, 15000)
        EscrowOrchestrator.refund(paid_order.id, 10000)

        assert reload(paid_order).status == OrderState.REFUNDED
        assert RefundRecord.objects.filter(order=paid_order, status=RefundStatus.SUCCEEDED).count() == 2

    def test_uneven_price_refunded_in_two_parts(self, customer, provider, card):
        # 15% of 10001 rounds to 1500, leaving a provider net of 8501
        order = OrderFactory(customer=customer, provider=provider, original_price_cents=10001)
        EscrowOrchestrator.authorize(order.id)
        EscrowOrchestrator.record_fulfillment(order.id, FulfillmentTrigger.SERVICE_COMPLETED)
        EscrowOrchestrator.capture(order.id)

        first = EscrowOrchestrator.refund(order.id, 5000).data.records[0]
        second = EscrowOrchestrator.refund(order.id, 5001).data.records[0]

        assert first.provider_clawback_cents == 4250
        assert second.provider_clawback_cents == 4251
        assert reload(order).status == OrderState.REFUNDED
        assert not PayoutSchedule.objects.filter(order=order, status=PayoutStatus.SCHEDULED).exists()
        assert wallet.pending_balance(provider.id).cents == 0
        assert wallet.balance(provider.id).cents == 0
        assert wallet.balance(customer.id).cents == 0

    def test_refund_event(self, paid_order, customer, provider):
        EscrowOrchestrator.refund(paid_order.id, 10000)

        events = EscrowEvent.objects.filter(order=paid_order, event_type=EscrowEventType.REFUND_ISSUED)
        assert {e.recipient_id for e in events} == {customer.id, provider.id}
        assert events[0].payload["refund_cents"] == 10000
        assert events[0].payload["provider_clawback_cents"] == 8500

    def test_refund_across_supplementary_capture(self, authorized_order, customer, provider):
        request = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Scope changed", provider.id).data
        EscrowOrchestrator.respond_to_adjustment(request.id, AdjustmentDecision.APPROVE, customer.id)
        EscrowOrchestrator.record_fulfillment(authorized_order.id, FulfillmentTrigger.SERVICE_COMPLETED)
        EscrowOrchestrator.capture(authorized_order.id)

        outcome = EscrowOrchestrator.refund(authorized_order.id, 8000).data

        assert sum(r.refund_amount_cents for r in outcome.records) == 8000
        assert sum(r.provider_clawback_cents for r in outcome.records) == 6800
        assert outcome.remaining_refundable_cents == 22000


class TestRefundAfterPayout:
    def test_clawback_is_completed_debit(self, released_order, provider):
        record = EscrowOrchestrator.refund(released_order.id, 10000).data.records[0]

        clawback = WalletTransaction.objects.get(idempotency_key=f"clawback:{record.id}")
        assert clawback.status == WalletTransactionStatus.COMPLETED
        assert wallet.balance(provider.id).cents == -8500

    def test_released_payout_is_not_modified(self, released_order):
        schedule = PayoutSchedule.objects.get(order=released_order)

        EscrowOrchestrator.refund(released_order.id, 10000)

        schedule = PayoutSchedule.objects.get(pk=schedule.pk)
        assert schedule.status == PayoutStatus.RELEASED
        assert schedule.amount_cents == 21250
        assert reload(released_order).status == OrderState.COMPLETED

    def test_full_refund_of_completed_order(self, released_order):
        EscrowOrchestrator.refund(released_order.id, 25000)

        assert reload(released_order).status == OrderState.REFUNDED

    def test_refunded_order_accepts_no_more_refunds(self, released_order):
        EscrowOrchestrator.refund(released_order.id, 25000)

        result = EscrowOrchestrator.refund(released_order.id, 100)

        assert result.error_code == "ORDER_NOT_ELIGIBLE"


class TestRefundPolicy:
    def test_non_refundable(self, paid_order, fake_processor):
        set_policy(paid_order, RefundPolicy.NON_REFUNDABLE)

        result = EscrowOrchestrator.refund(paid_order.id, 1000)

        assert result.error_code == "REFUND_NOT_ALLOWED"
        assert fake_processor.calls_for("refund") == []

    def test_partially_refundable_ceiling(self, paid_order):
        set_policy(paid_order, RefundPolicy.PARTIALLY_REFUNDABLE)

        assert EscrowOrchestrator.refund(paid_order.id, 12500).success
        result = EscrowOrchestrator.refund(paid_order.id, 1)

        assert result.error_code == "REFUND_NOT_ALLOWED"
        assert result.details["ceiling_cents"] == 12500

    def test_partial_ceiling_is_configurable(self, paid_order, settings):
        settings.ESCROW_PARTIAL_REFUND_PERCENT = 20
        set_policy(paid_order, RefundPolicy.PARTIALLY_REFUNDABLE)

        result = EscrowOrchestrator.refund(paid_order.id, 6000)

        assert result.error_code == "REFUND_NOT_ALLOWED"
        assert EscrowOrchestrator.refund(paid_order.id, 5000).success


class TestRefundGuards:
    def test_cannot_exceed_captured(self, paid_order):
        result = EscrowOrchestrator.refund(paid_order.id, 25001)

        assert result.error_code == "REFUND_EXCEEDS_CAPTURED"
        assert result.details["remaining_refundable_cents"] == 25000
        assert not RefundRecord.objects.exists()

    def test_cumulative_refunds_cannot_exceed_captured(self, paid_order):
        EscrowOrchestrator.refund(paid_order.id, 20000)

        result = EscrowOrchestrator.refund(paid_order.id, 5001)

        assert result.error_code == "REFUND_EXCEEDS_CAPTURED"
        assert result.details["remaining_refundable_cents"] == 5000

    def test_uncaptured_order_must_be_cancelled(self, authorized_order):
        result = EscrowOrchestrator.refund(authorized_order.id, 1000)

        assert result.error_code == "ORDER_NOT_ELIGIBLE"
        assert "Cancel the order instead" in result.error

    @pytest.mark.parametrize("amount", [0, -500])
    def test_amount_must_be_positive(self, paid_order, amount):
        result = EscrowOrchestrator.refund(paid_order.id, amount)

        assert result.error_code == "INVALID_AMOUNT"

    def test_unknown_reason(self, paid_order):
        result = EscrowOrchestrator.refund(paid_order.id, 1000, reason="bored")

        assert result.error_code == "VALIDATION_ERROR"


class TestRefundFailures:
    def test_processor_rejection(self, paid_order, fake_processor):
        fake_processor.fail_next("refund", ProcessorInvalidRequest("Charge already refunded"))

        result = EscrowOrchestrator.refund(paid_order.id, 10000)

        assert result.error_code == "REFUND_FAILED"
        record = RefundRecord.objects.get(order=paid_order)
        assert record.status == RefundStatus.FAILED
        assert record.failure_reason == "Charge already refunded"
        assert PayoutSchedule.objects.get(order=paid_order).status == PayoutStatus.SCHEDULED
        assert EscrowOrchestrator.get_order_status(paid_order.id).data.remaining_refundable_cents == 25000

    def test_failed_refund_status(self, paid_order, fake_processor):
        fake_processor.refund_status = "failed"

        result = EscrowOrchestrator.refund(paid_order.id, 10000)

        assert result.error_code == "REFUND_FAILED"
        assert not WalletTransaction.objects.filter(kind=WalletTransactionKind.REFUND).exists()

    def test_timeout_holds_amount_pending(self, paid_order, fake_processor, queued_reconciliation):
        fake_processor.fail_next("refund", ProcessorTimeout("Read timed out"), after=True)

        result = EscrowOrchestrator.refund(paid_order.id, 10000)

        assert result.error_code == "PROCESSOR_UNAVAILABLE"
        record = RefundRecord.objects.get(order=paid_order)
        assert record.status == RefundStatus.PENDING
        assert record.needs_reconciliation is True
        queued_reconciliation.assert_called_once()

        # Pending refunds still count against the refundable amount
        again = EscrowOrchestrator.refund(paid_order.id, 20000)
        assert again.error_code == "REFUND_EXCEEDS_CAPTURED"

    def test_reconcile_completes_refund_that_reached_processor(self, paid_order, customer, fake_processor):
        fake_processor.fail_next("refund", ProcessorTimeout("Read timed out"), after=True)
        EscrowOrchestrator.refund(paid_order.id, 10000)

        result = EscrowOrchestrator.reconcile_order_payments(paid_order.id)

        assert result.data["refunds_resolved"] == 1
        record = RefundRecord.objects.get(order=paid_order)
        assert record.status == RefundStatus.SUCCEEDED
        assert record.processor_refund_reference.startswith("re_fake_")
        assert wallet.balance(customer.id).cents == -15000
        assert len(fake_processor.calls_for("refund")) == 1

    def test_reconcile_fails_refund_processor_never_saw(self, paid_order, fake_processor):
        fake_processor.fail_next("refund", ProcessorTimeout("Connect timed out"))
        EscrowOrchestrator.refund(paid_order.id, 10000)

        EscrowOrchestrator.reconcile_order_payments(paid_order.id)

        assert RefundRecord.objects.get(order=paid_order).status == RefundStatus.FAILED
        assert EscrowOrchestrator.get_order_status(paid_order.id).data.remaining_refundable_cents == 25000
        assert len(fake_processor.calls_for("refund")) == 1
