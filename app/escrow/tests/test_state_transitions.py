"""
Tests for escrow state machines using django-fsm.

Covers the Order lifecycle, price adjustment outcomes and payout
schedules, plus the database constraints that back them.
"""

from datetime import timedelta

import pytest
from django.db import IntegrityError, transaction
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from escrow.models import Order, PayoutSchedule, PriceAdjustmentRequest
from escrow.state_machines import AdjustmentStatus, AdjustmentType, OrderState, PayoutStatus
from escrow.tests.factories import OrderFactory


@pytest.fixture
def created_order(db):
    return OrderFactory()


def walk(order, *steps):
    for step in steps:
        getattr(order, step)()
        order.save()
    return order


# =============================================================================
# Order
# =============================================================================


class TestOrderTransitions:
    """Tests for Order state machine transitions."""

    def test_happy_path(self, created_order):
        order = walk(created_order, "authorize", "mark_fulfilled", "capture", "schedule_payout", "complete")

        assert order.status == OrderState.COMPLETED
        assert order.authorized_at is not None
        assert order.fulfilled_at is not None
        assert order.captured_at is not None
        assert order.completed_at is not None

    def test_save_increments_version(self, created_order):
        assert created_order.version == 1

        walk(created_order, "authorize")

        assert created_order.version == 2
        assert Order.objects.get(pk=created_order.pk).version == 2

    def test_negotiation_returns_to_authorized(self, created_order):
        order = walk(created_order, "authorize", "begin_negotiation")
        assert order.status == OrderState.PRICE_NEGOTIATING

        walk(order, "end_negotiation")

        assert order.status == OrderState.AUTHORIZED

    def test_negotiation_returns_to_fulfillment_pending_once_fulfilled(self, created_order):
        order = walk(created_order, "authorize", "mark_fulfilled", "begin_negotiation", "end_negotiation")

        assert order.status == OrderState.FULFILLMENT_PENDING

    def test_capture_requires_fulfillment(self, created_order):
        walk(created_order, "authorize")

        with pytest.raises(TransitionNotAllowed):
            created_order.capture()

    def test_capture_blocked_during_negotiation(self, created_order):
        walk(created_order, "authorize", "mark_fulfilled", "begin_negotiation")

        with pytest.raises(TransitionNotAllowed):
            created_order.capture()

    @pytest.mark.parametrize(
        "steps",
        [
            (),
            ("authorize",),
            ("authorize", "begin_negotiation"),
            ("authorize", "mark_fulfilled"),
        ],
    )
    def test_open_orders_can_be_cancelled(self, created_order, steps):
        order = walk(created_order, *steps)

        order.cancel(reason="Customer changed their mind")
        order.save()

        assert order.status == OrderState.CANCELLED
        assert order.cancellation_reason == "Customer changed their mind"
        assert order.cancelled_at is not None

    def test_captured_order_cannot_be_cancelled(self, created_order):
        walk(created_order, "authorize", "mark_fulfilled", "capture")

        assert created_order.is_price_frozen
        with pytest.raises(TransitionNotAllowed):
            created_order.cancel()

    @pytest.mark.parametrize(
        "steps",
        [
            ("authorize", "mark_fulfilled", "capture"),
            ("authorize", "mark_fulfilled", "capture", "schedule_payout"),
            ("authorize", "mark_fulfilled", "capture", "schedule_payout", "complete"),
        ],
    )
    def test_captured_orders_can_be_refunded(self, created_order, steps):
        order = walk(created_order, *steps, "refund_full")

        assert order.status == OrderState.REFUNDED
        assert order.refunded_at is not None

    def test_open_order_cannot_be_refunded(self, created_order):
        walk(created_order, "authorize")

        with pytest.raises(TransitionNotAllowed):
            created_order.refund_full()

    def test_cancelled_is_terminal(self, created_order):
        walk(created_order, "cancel")

        assert not created_order.is_open
        with pytest.raises(TransitionNotAllowed):
            created_order.authorize()

    def test_status_cannot_be_assigned_directly(self, created_order):
        with pytest.raises(AttributeError):
            created_order.status = OrderState.CAPTURED

    def test_prices_must_be_positive(self, db):
        with pytest.raises(IntegrityError), transaction.atomic():
            OrderFactory(original_price_cents=0, current_price_cents=0)


# =============================================================================
# PriceAdjustmentRequest
# =============================================================================


def make_request(order, adjusted_price_cents=30000, **kwargs):
    amount = adjusted_price_cents - order.current_price_cents
    default_type = AdjustmentType.INCREASE if amount > 0 else AdjustmentType.DECREASE
    return PriceAdjustmentRequest.objects.create(
        order=order,
        original_price_cents=order.current_price_cents,
        adjusted_price_cents=adjusted_price_cents,
        adjustment_amount_cents=amount,
        adjustment_type=kwargs.pop("adjustment_type", default_type),
        justification="Extra hour on site",
        requested_by=order.provider,
        response_deadline=timezone.now() + timedelta(hours=72),
        **kwargs,
    )


class TestPriceAdjustmentTransitions:
    def test_approve_records_responder(self, created_order):
        request = make_request(created_order)

        request.approve(created_order.customer)
        request.save()

        assert request.status == AdjustmentStatus.APPROVED
        assert request.responded_by == created_order.customer
        assert request.responded_at is not None

    def test_reject_records_responder(self, created_order):
        request = make_request(created_order)

        request.reject(created_order.customer)
        request.save()

        assert request.status == AdjustmentStatus.REJECTED
        assert request.responded_by == created_order.customer

    @pytest.mark.parametrize("outcome", ["approve", "reject"])
    def test_resolved_request_cannot_be_expired(self, created_order, outcome):
        request = make_request(created_order)
        getattr(request, outcome)(created_order.customer)
        request.save()

        with pytest.raises(TransitionNotAllowed):
            request.expire()

    def test_cancelled_request_cannot_be_approved(self, created_order):
        request = make_request(created_order)
        request.cancel()
        request.save()

        with pytest.raises(TransitionNotAllowed):
            request.approve(created_order.customer)

    def test_is_increase(self, created_order):
        assert make_request(created_order, 30000).is_increase

    def test_is_decrease(self, created_order):
        assert not make_request(created_order, 20000).is_increase

    def test_one_pending_request_per_order(self, created_order):
        make_request(created_order)

        with pytest.raises(IntegrityError), transaction.atomic():
            make_request(created_order, 28000)

    def test_resolved_requests_do_not_block_a_new_one(self, created_order):
        first = make_request(created_order)
        first.expire()
        first.save()

        second = make_request(created_order, 28000)

        assert second.status == AdjustmentStatus.PENDING

    def test_sign_must_match_type(self, created_order):
        with pytest.raises(IntegrityError), transaction.atomic():
            make_request(created_order, 20000, adjustment_type=AdjustmentType.INCREASE)


# =============================================================================
# PayoutSchedule
# =============================================================================


class TestPayoutScheduleTransitions:
    @pytest.fixture
    def schedule(self, created_order):
        return PayoutSchedule.objects.create(
            provider=created_order.provider,
            order=created_order,
            amount_cents=21250,
            scheduled_release_at=timezone.now() + timedelta(days=14),
        )

    def test_not_due_before_release_time(self, schedule):
        assert not schedule.is_due

    def test_release(self, schedule):
        schedule.release()
        schedule.save()

        assert schedule.status == PayoutStatus.RELEASED
        assert schedule.released_at is not None
        assert not schedule.is_due

    def test_released_schedule_cannot_be_cancelled(self, schedule):
        schedule.release()
        schedule.save()

        with pytest.raises(TransitionNotAllowed):
            schedule.cancel(reason="Refunded")

    def test_one_scheduled_payout_per_order(self, schedule):
        with pytest.raises(IntegrityError), transaction.atomic():
            PayoutSchedule.objects.create(
                provider=schedule.provider,
                order=schedule.order,
                amount_cents=100,
                scheduled_release_at=schedule.scheduled_release_at,
            )

    def test_cancelled_schedule_can_be_replaced(self, schedule):
        schedule.cancel(reason="Partial refund")
        schedule.save()

        replacement = PayoutSchedule.objects.create(
            provider=schedule.provider,
            order=schedule.order,
            amount_cents=12750,
            scheduled_release_at=schedule.scheduled_release_at,
            replaces=schedule,
        )

        assert schedule.replaced_by == replacement
