"""
Tests for price adjustment negotiation.

Test Classes:
    TestRequestAdjustment: Provider proposals and their validation
    TestRespondToAdjustment: Customer approval and rejection
    TestAdjustmentDeadline: Expiry of unanswered requests
    TestWithdrawAdjustment: Provider withdrawal
"""

from datetime import timedelta

import pytest
from freezegun import freeze_time

from escrow.exceptions import ProcessorDeclined
from escrow.models import AuthorizationHold, EscrowEvent, PriceAdjustmentRequest
from escrow.services import EscrowOrchestrator
from escrow.state_machines import (
    AdjustmentDecision,
    AdjustmentStatus,
    AdjustmentType,
    EscrowEventType,
    FulfillmentTrigger,
    HoldStatus,
    OrderState,
)
from escrow.tests.conftest import reload
from escrow.wallet.services import wallet


@pytest.fixture
def increase(authorized_order, provider):
    """Pending request raising the price from $250 to $300."""
    result = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Two extra hours on site", provider.id)
    assert result.success, result.error
    return result.data


@pytest.fixture
def decrease(authorized_order, provider):
    """Pending request lowering the price from $250 to $200."""
    result = EscrowOrchestrator.request_adjustment(authorized_order.id, 20000, "Finished early", provider.id)
    assert result.success, result.error
    return result.data


class TestRequestAdjustment:
    def test_increase_request(self, increase, authorized_order, customer):
        assert increase.status == AdjustmentStatus.PENDING
        assert increase.adjustment_type == AdjustmentType.INCREASE
        assert increase.original_price_cents == 25000
        assert increase.adjusted_price_cents == 30000
        assert increase.adjustment_amount_cents == 5000
        assert increase.response_deadline - increase.requested_at == timedelta(hours=72)

        order = reload(authorized_order)
        assert order.status == OrderState.PRICE_NEGOTIATING
        assert order.current_price_cents == 25000

        event = EscrowEvent.objects.get(event_type=EscrowEventType.PRICE_ADJUSTMENT_REQUESTED)
        assert event.recipient == customer
        assert event.payload["adjustment_amount_cents"] == 5000

    def test_decrease_request(self, decrease):
        assert decrease.adjustment_type == AdjustmentType.DECREASE
        assert decrease.adjustment_amount_cents == -5000

    def test_only_provider_can_request(self, authorized_order, customer):
        result = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Please", customer.id)

        assert result.error_code == "PERMISSION_DENIED"

    def test_justification_is_required(self, authorized_order, provider):
        result = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "   ", provider.id)

        assert result.error_code == "INVALID_JUSTIFICATION"
        assert not PriceAdjustmentRequest.objects.exists()

    def test_price_must_change(self, authorized_order, provider):
        result = EscrowOrchestrator.request_adjustment(authorized_order.id, 25000, "Same again", provider.id)

        assert result.error_code == "INVALID_AMOUNT"

    def test_price_must_be_positive(self, authorized_order, provider):
        result = EscrowOrchestrator.request_adjustment(authorized_order.id, 0, "Free", provider.id)

        assert result.error_code == "INVALID_AMOUNT"

    def test_one_pending_request_at_a_time(self, increase, authorized_order, provider):
        result = EscrowOrchestrator.request_adjustment(authorized_order.id, 35000, "Even more work", provider.id)

        assert result.error_code == "ADJUSTMENT_ALREADY_PENDING"
        assert PriceAdjustmentRequest.objects.count() == 1

    def test_unauthorized_order_cannot_negotiate(self, order, provider):
        result = EscrowOrchestrator.request_adjustment(order.id, 30000, "Extra work", provider.id)

        assert result.error_code == "ORDER_NOT_ELIGIBLE"

    def test_captured_order_price_is_frozen(self, paid_order, provider):
        result = EscrowOrchestrator.request_adjustment(paid_order.id, 30000, "Extra work", provider.id)

        assert result.error_code == "ORDER_NOT_ELIGIBLE"
        assert reload(paid_order).current_price_cents == 25000

    def test_fulfilled_order_can_still_negotiate(self, fulfilled_order, provider):
        result = EscrowOrchestrator.request_adjustment(fulfilled_order.id, 30000, "Extra work", provider.id)

        assert result.success
        assert reload(fulfilled_order).status == OrderState.PRICE_NEGOTIATING

    def test_adjustment_limit(self, authorized_order, customer, provider, settings):
        settings.ESCROW_MAX_ADJUSTMENTS_PER_ORDER = 1
        first = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Extra work", provider.id)
        EscrowOrchestrator.respond_to_adjustment(first.data.id, AdjustmentDecision.REJECT, customer.id)

        result = EscrowOrchestrator.request_adjustment(authorized_order.id, 28000, "Smaller ask", provider.id)

        assert result.error_code == "ADJUSTMENT_LIMIT_REACHED"

    def test_limit_not_applied_without_enforcement(self, authorized_order, customer, provider, settings):
        settings.ESCROW_MAX_ADJUSTMENTS_PER_ORDER = 1
        settings.ESCROW_ENFORCEMENT_ENABLED = False
        first = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Extra work", provider.id)
        EscrowOrchestrator.respond_to_adjustment(first.data.id, AdjustmentDecision.REJECT, customer.id)

        result = EscrowOrchestrator.request_adjustment(authorized_order.id, 28000, "Smaller ask", provider.id)

        assert result.success


class TestRespondToAdjustment:
    def test_approved_increase_adds_supplementary_hold(self, increase, authorized_order, customer, fake_processor):
        result = EscrowOrchestrator.respond_to_adjustment(increase.id, AdjustmentDecision.APPROVE, customer.id)

        assert result.success
        request = result.data
        assert request.status == AdjustmentStatus.APPROVED
        assert request.responded_by == customer

        supplementary = request.supplementary_hold
        assert supplementary.is_supplementary is True
        assert supplementary.amount_cents == 5000
        assert supplementary.status == HoldStatus.REQUIRES_CAPTURE

        primary = AuthorizationHold.objects.get(order=authorized_order, is_supplementary=False)
        assert primary.amount_cents == 25000
        assert primary.status == HoldStatus.REQUIRES_CAPTURE

        order = reload(authorized_order)
        assert order.current_price_cents == 30000
        assert order.original_price_cents == 25000
        assert order.status == OrderState.AUTHORIZED
        assert wallet.balance(customer.id).cents == -30000
        assert [call["amount_cents"] for call in fake_processor.calls_for("authorize")] == [25000, 5000]

    def test_approved_decrease_needs_no_new_hold(self, decrease, authorized_order, customer, fake_processor):
        result = EscrowOrchestrator.respond_to_adjustment(decrease.id, AdjustmentDecision.APPROVE, customer.id)

        assert result.success
        assert result.data.supplementary_hold is None
        assert reload(authorized_order).current_price_cents == 20000
        assert AuthorizationHold.objects.filter(order=authorized_order).count() == 1
        assert len(fake_processor.calls_for("authorize")) == 1

    def test_rejection_keeps_price(self, increase, authorized_order, customer, provider):
        result = EscrowOrchestrator.respond_to_adjustment(increase.id, AdjustmentDecision.REJECT, customer.id)

        assert result.data.status == AdjustmentStatus.REJECTED
        order = reload(authorized_order)
        assert order.current_price_cents == 25000
        assert order.status == OrderState.AUTHORIZED
        rejected = EscrowEvent.objects.filter(event_type=EscrowEventType.PRICE_ADJUSTMENT_REJECTED)
        assert {e.recipient_id for e in rejected} == {customer.id, provider.id}

    def test_declined_supplementary_hold_leaves_request_pending(
        self, increase, authorized_order, customer, fake_processor
    ):
        fake_processor.fail_next(
            "authorize", ProcessorDeclined("Insufficient funds", decline_code="insufficient_funds")
        )

        result = EscrowOrchestrator.respond_to_adjustment(increase.id, AdjustmentDecision.APPROVE, customer.id)

        assert result.error_code == "PROCESSOR_DECLINED"
        assert PriceAdjustmentRequest.objects.get(pk=increase.pk).status == AdjustmentStatus.PENDING
        order = reload(authorized_order)
        assert order.current_price_cents == 25000
        assert order.status == OrderState.PRICE_NEGOTIATING
        assert wallet.balance(customer.id).cents == -25000

    def test_unconfirmed_supplementary_hold_is_a_decline(self, increase, authorized_order, customer, fake_processor):
        fake_processor.authorize_status = "processing"

        result = EscrowOrchestrator.respond_to_adjustment(increase.id, AdjustmentDecision.APPROVE, customer.id)

        assert result.error_code == "PROCESSOR_DECLINED"
        supplementary = AuthorizationHold.objects.get(order=authorized_order, is_supplementary=True)
        assert supplementary.status == HoldStatus.FAILED
        assert fake_processor.calls_for("cancel")

    def test_provider_cannot_answer(self, increase, provider):
        result = EscrowOrchestrator.respond_to_adjustment(increase.id, AdjustmentDecision.APPROVE, provider.id)

        assert result.error_code == "PERMISSION_DENIED"

    def test_staff_can_answer(self, decrease, staff_user):
        result = EscrowOrchestrator.respond_to_adjustment(decrease.id, AdjustmentDecision.APPROVE, staff_user.id)

        assert result.success

    def test_cannot_answer_twice(self, decrease, customer):
        EscrowOrchestrator.respond_to_adjustment(decrease.id, AdjustmentDecision.APPROVE, customer.id)

        result = EscrowOrchestrator.respond_to_adjustment(decrease.id, AdjustmentDecision.REJECT, customer.id)

        assert result.error_code == "INVALID_STATE_TRANSITION"

    def test_unknown_decision_is_bad_input(self, increase, customer):
        result = EscrowOrchestrator.respond_to_adjustment(increase.id, "maybe", customer.id)

        assert result.error_code == "VALIDATION_ERROR"
        assert PriceAdjustmentRequest.objects.get(pk=increase.id).status == AdjustmentStatus.PENDING

    def test_unknown_request(self, db, customer):
        result = EscrowOrchestrator.respond_to_adjustment(
            "00000000-0000-0000-0000-000000000000", AdjustmentDecision.APPROVE, customer.id
        )

        assert result.error_code == "ADJUSTMENT_NOT_FOUND"

    def test_fulfillment_during_negotiation_is_resumed(self, increase, authorized_order, customer):
        EscrowOrchestrator.record_fulfillment(authorized_order.id, FulfillmentTrigger.SERVICE_COMPLETED)
        negotiating = reload(authorized_order)
        assert negotiating.status == OrderState.PRICE_NEGOTIATING
        assert negotiating.fulfilled_at is not None

        EscrowOrchestrator.respond_to_adjustment(increase.id, AdjustmentDecision.REJECT, customer.id)

        assert reload(authorized_order).status == OrderState.FULFILLMENT_PENDING


class TestAdjustmentDeadline:
    def test_late_answer_expires_request(self, increase, authorized_order, customer):
        with freeze_time(increase.response_deadline + timedelta(seconds=1)):
            result = EscrowOrchestrator.respond_to_adjustment(increase.id, AdjustmentDecision.APPROVE, customer.id)

        assert result.error_code == "ADJUSTMENT_EXPIRED"
        assert PriceAdjustmentRequest.objects.get(pk=increase.pk).status == AdjustmentStatus.EXPIRED
        order = reload(authorized_order)
        assert order.status == OrderState.AUTHORIZED
        assert order.current_price_cents == 25000

    def test_expiry_before_deadline_does_nothing(self, increase):
        result = EscrowOrchestrator.expire_adjustment(increase.id)

        assert result.success
        assert result.data is None
        assert PriceAdjustmentRequest.objects.get(pk=increase.pk).status == AdjustmentStatus.PENDING

    def test_expiry_after_deadline(self, increase, authorized_order, customer, provider):
        with freeze_time(increase.response_deadline + timedelta(minutes=5)):
            result = EscrowOrchestrator.expire_adjustment(increase.id)

        assert result.data.status == AdjustmentStatus.EXPIRED
        assert reload(authorized_order).status == OrderState.AUTHORIZED
        expired = EscrowEvent.objects.filter(event_type=EscrowEventType.PRICE_ADJUSTMENT_EXPIRED)
        assert {e.recipient_id for e in expired} == {customer.id, provider.id}

    def test_answered_request_is_not_expired(self, decrease, customer):
        EscrowOrchestrator.respond_to_adjustment(decrease.id, AdjustmentDecision.APPROVE, customer.id)

        with freeze_time(decrease.response_deadline + timedelta(minutes=5)):
            result = EscrowOrchestrator.expire_adjustment(decrease.id)

        assert result.data is None
        assert PriceAdjustmentRequest.objects.get(pk=decrease.pk).status == AdjustmentStatus.APPROVED


class TestWithdrawAdjustment:
    def test_provider_withdraws(self, increase, authorized_order, provider):
        result = EscrowOrchestrator.cancel_adjustment(increase.id, provider.id)

        assert result.data.status == AdjustmentStatus.CANCELLED
        assert reload(authorized_order).status == OrderState.AUTHORIZED

    def test_customer_cannot_withdraw(self, increase, customer):
        result = EscrowOrchestrator.cancel_adjustment(increase.id, customer.id)

        assert result.error_code == "PERMISSION_DENIED"
