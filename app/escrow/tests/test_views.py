"""
Tests for the escrow API.

Each endpoint is checked for its happy path, the caller's role and the
HTTP status an error code maps to. Service behaviour itself is covered
by the service tests.
"""

from datetime import timedelta

import pytest
from django.urls import reverse
from freezegun import freeze_time
from rest_framework import status
from rest_framework.test import APIClient

from escrow.models import AuthorizationHold, Dispute, Order, PayoutSchedule, PriceAdjustmentRequest
from escrow.services import EscrowOrchestrator
from escrow.state_machines import (
    AdjustmentStatus,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    FulfillmentTrigger,
    OrderState,
    RefundPolicy,
)
from escrow.tests.conftest import reload
from escrow.tests.factories import OrderFactory
from escrow.views import error_status_codes


def order_url(name, order):
    return reverse(f"escrow:order-{name}", args=[order.id])


@pytest.fixture
def staff_client(staff_user):
    client = APIClient()
    client.force_authenticate(user=staff_user)
    return client


class TestErrorStatusCodes:
    @pytest.mark.parametrize(
        "error_code,http_status",
        [
            ("ORDER_NOT_FOUND", 404),
            ("PERMISSION_DENIED", 403),
            ("INVALID_AMOUNT", 400),
            ("STALE_RECORD", 409),
            ("REFUND_EXCEEDS_CAPTURED", 409),
            ("PROCESSOR_DECLINED", 502),
            ("PROCESSOR_UNAVAILABLE", 503),
            ("PAYOUT_FROZEN", 409),
            ("DISPUTE_NOT_FOUND", 404),
        ],
    )
    def test_code_maps_to_exception_status(self, error_code, http_status):
        assert error_status_codes()[error_code] == http_status


class TestCreateOrder:
    def test_customer_opens_order(self, customer_client, customer, provider):
        response = customer_client.post(
            reverse("escrow:order-list"),
            {"provider_id": provider.id, "price_cents": 25000, "refund_policy": RefundPolicy.NON_REFUNDABLE},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["status"] == OrderState.CREATED
        assert response.data["customer"] == customer.id
        assert response.data["provider"] == provider.id
        assert Order.objects.get(pk=response.data["id"]).refund_policy == RefundPolicy.NON_REFUNDABLE

    def test_cannot_order_from_self(self, customer_client, customer):
        response = customer_client.post(
            reverse("escrow:order-list"), {"provider_id": customer.id, "price_cents": 25000}, format="json"
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert not Order.objects.exists()

    def test_price_must_be_positive(self, customer_client, provider):
        response = customer_client.post(
            reverse("escrow:order-list"), {"provider_id": provider.id, "price_cents": 0}, format="json"
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_provider_limit(self, customer_client, provider, settings):
        settings.ESCROW_MAX_OPEN_ORDERS_PER_PROVIDER = 0

        response = customer_client.post(
            reverse("escrow:order-list"), {"provider_id": provider.id, "price_cents": 1000}, format="json"
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["error_code"] == "PROVIDER_LIMIT_REACHED"

    def test_requires_authentication(self, api_client, provider):
        response = api_client.post(
            reverse("escrow:order-list"), {"provider_id": provider.id, "price_cents": 1000}, format="json"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestRetrieveOrder:
    def test_participants_see_status(self, customer_client, provider_client, paid_order):
        for client in (customer_client, provider_client):
            response = client.get(reverse("escrow:order-detail", args=[paid_order.id]))

            assert response.status_code == status.HTTP_200_OK
            assert response.data["status"] == OrderState.PAYOUT_SCHEDULED
            assert response.data["captured_cents"] == 25000
            assert response.data["remaining_refundable_cents"] == 25000
            assert response.data["payout"]["amount_cents"] == 21250
            assert len(response.data["holds"]) == 1

    def test_stranger_is_forbidden(self, stranger_client, order):
        response = stranger_client.get(reverse("escrow:order-detail", args=[order.id]))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data["error_code"] == "PERMISSION_DENIED"

    def test_unknown_order(self, customer_client):
        response = customer_client.get(
            reverse("escrow:order-detail", args=["00000000-0000-0000-0000-000000000000"])
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.data["error_code"] == "ORDER_NOT_FOUND"


class TestAuthorize:
    def test_customer_authorizes(self, customer_client, order):
        response = customer_client.post(order_url("authorize", order), {}, format="json")

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["amount_cents"] == 25000
        assert response.data["is_supplementary"] is False
        assert reload(order).status == OrderState.AUTHORIZED

    def test_provider_cannot_authorize(self, provider_client, order, fake_processor):
        response = provider_client.post(order_url("authorize", order), {}, format="json")

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert fake_processor.calls == []

    def test_decline_is_bad_gateway(self, customer_client, order, fake_processor):
        fake_processor.authorize_status = "requires_payment_method"

        response = customer_client.post(order_url("authorize", order), {}, format="json")

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.data["error_code"] == "PROCESSOR_DECLINED"


class TestAdjustments:
    def test_provider_requests_adjustment(self, provider_client, authorized_order):
        response = provider_client.post(
            order_url("adjustments", authorized_order),
            {"new_price_cents": 30000, "justification": "Extra hour"},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["adjustment_amount_cents"] == 5000
        assert reload(authorized_order).status == OrderState.PRICE_NEGOTIATING

    def test_customer_cannot_request(self, customer_client, authorized_order):
        response = customer_client.post(
            order_url("adjustments", authorized_order),
            {"new_price_cents": 20000, "justification": "Discount please"},
            format="json",
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_customer_approves(self, customer_client, authorized_order, provider):
        request = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Extra hour", provider.id).data

        response = customer_client.post(
            reverse("escrow:adjustment-respond", args=[request.id]), {"decision": "approve"}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == AdjustmentStatus.APPROVED
        assert response.data["supplementary_hold"] is not None
        assert reload(authorized_order).current_price_cents == 30000

    def test_provider_cannot_approve_own_request(self, provider_client, authorized_order, provider):
        request = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Extra hour", provider.id).data

        response = provider_client.post(
            reverse("escrow:adjustment-respond", args=[request.id]), {"decision": "approve"}, format="json"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert PriceAdjustmentRequest.objects.get(pk=request.pk).status == AdjustmentStatus.PENDING

    def test_late_response_is_rejected(self, customer_client, authorized_order, provider):
        request = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Extra hour", provider.id).data

        with freeze_time(request.response_deadline + timedelta(minutes=1)):
            response = customer_client.post(
                reverse("escrow:adjustment-respond", args=[request.id]), {"decision": "approve"}, format="json"
            )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["error_code"] == "ADJUSTMENT_EXPIRED"

    def test_invalid_decision(self, customer_client, authorized_order, provider):
        request = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Extra hour", provider.id).data

        response = customer_client.post(
            reverse("escrow:adjustment-respond", args=[request.id]), {"decision": "maybe"}, format="json"
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_provider_withdraws(self, provider_client, authorized_order, provider):
        request = EscrowOrchestrator.request_adjustment(authorized_order.id, 30000, "Extra hour", provider.id).data

        response = provider_client.post(reverse("escrow:adjustment-cancel", args=[request.id]))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == AdjustmentStatus.CANCELLED

    def test_unknown_adjustment(self, customer_client):
        response = customer_client.post(
            reverse("escrow:adjustment-respond", args=["00000000-0000-0000-0000-000000000000"]),
            {"decision": "approve"},
            format="json",
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestFulfillmentAndCapture:
    def test_either_party_records_fulfillment(self, customer_client, authorized_order):
        response = customer_client.post(
            order_url("fulfillment", authorized_order), {"trigger": "service_completed"}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == OrderState.FULFILLMENT_PENDING

    def test_provider_cannot_approve_own_proof(self, provider_client, customer, provider, card, fake_processor):
        order = OrderFactory(
            customer=customer, provider=provider, fulfillment_trigger=FulfillmentTrigger.PROOF_APPROVED
        )
        EscrowOrchestrator.authorize(order.id)

        response = provider_client.post(
            order_url("fulfillment", order), {"trigger": FulfillmentTrigger.PROOF_APPROVED}, format="json"
        )
        capture = provider_client.post(order_url("capture", order), {}, format="json")

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert capture.status_code == status.HTTP_400_BAD_REQUEST
        assert reload(order).status == OrderState.AUTHORIZED
        assert fake_processor.calls_for("capture") == []

    @pytest.mark.parametrize("trigger", [FulfillmentTrigger.PROOF_APPROVED, FulfillmentTrigger.DELIVERY_CONFIRMED])
    def test_customer_confirms_delivery_or_proof(self, customer_client, customer, provider, card, trigger):
        order = OrderFactory(customer=customer, provider=provider, fulfillment_trigger=trigger)
        EscrowOrchestrator.authorize(order.id)

        response = customer_client.post(order_url("fulfillment", order), {"trigger": trigger}, format="json")

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == OrderState.FULFILLMENT_PENDING

    def test_staff_reports_any_trigger(self, staff_client, customer, provider, card):
        order = OrderFactory(
            customer=customer, provider=provider, fulfillment_trigger=FulfillmentTrigger.DELIVERY_CONFIRMED
        )
        EscrowOrchestrator.authorize(order.id)

        response = staff_client.post(
            order_url("fulfillment", order), {"trigger": FulfillmentTrigger.DELIVERY_CONFIRMED}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK

    def test_provider_captures(self, provider_client, fulfilled_order):
        response = provider_client.post(order_url("capture", fulfilled_order), {}, format="json")

        assert response.status_code == status.HTTP_200_OK
        assert response.data["total_captured_cents"] == 25000
        assert response.data["platform_fee_cents"] == 3750
        assert response.data["provider_net_cents"] == 21250
        assert response.data["payout"]["amount_cents"] == 21250
        assert response.data["order"]["status"] == OrderState.PAYOUT_SCHEDULED

    def test_staff_captures(self, staff_client, fulfilled_order):
        response = staff_client.post(order_url("capture", fulfilled_order), {}, format="json")

        assert response.status_code == status.HTTP_200_OK

    def test_customer_cannot_capture(self, customer_client, fulfilled_order, fake_processor):
        response = customer_client.post(order_url("capture", fulfilled_order), {}, format="json")

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert fake_processor.calls_for("capture") == []

    def test_capture_before_fulfillment(self, provider_client, authorized_order):
        response = provider_client.post(order_url("capture", authorized_order), {}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["error_code"] == "ORDER_NOT_ELIGIBLE"

    def test_wrong_amount(self, provider_client, fulfilled_order):
        response = provider_client.post(order_url("capture", fulfilled_order), {"amount_cents": 100}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["error_code"] == "AMOUNT_MISMATCH"


class TestRefunds:
    def test_provider_refunds(self, provider_client, paid_order):
        response = provider_client.post(
            order_url("refunds", paid_order),
            {"amount_cents": 10000, "reason": "quality_issue", "note": "Arrived late"},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["refunded_cents"] == 10000
        assert response.data["remaining_refundable_cents"] == 15000
        assert response.data["records"][0]["amount_cents"] == 10000

    def test_customer_cannot_refund_themselves(self, customer_client, paid_order):
        response = customer_client.post(order_url("refunds", paid_order), {"amount_cents": 10000}, format="json")

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_refund_over_captured(self, provider_client, paid_order):
        response = provider_client.post(order_url("refunds", paid_order), {"amount_cents": 30000}, format="json")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["error_code"] == "REFUND_EXCEEDS_CAPTURED"


class TestCancel:
    def test_customer_cancels(self, customer_client, authorized_order):
        response = customer_client.post(
            order_url("cancel", authorized_order), {"reason": "Plans changed"}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == OrderState.CANCELLED
        assert AuthorizationHold.objects.get(order=authorized_order).released_at is not None

    def test_captured_order(self, customer_client, paid_order):
        response = customer_client.post(order_url("cancel", paid_order), {}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert PayoutSchedule.objects.filter(order=paid_order).exists()


class TestRefundPolicy:
    def test_provider_updates_policy(self, provider_client, order):
        response = provider_client.patch(
            order_url("refund-policy", order),
            {"refund_policy": RefundPolicy.PARTIALLY_REFUNDABLE, "expected_version": 1},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["refund_policy"] == RefundPolicy.PARTIALLY_REFUNDABLE
        assert response.data["version"] == 2

    def test_stale_version_conflicts(self, provider_client, authorized_order):
        response = provider_client.patch(
            order_url("refund-policy", authorized_order),
            {"refund_policy": RefundPolicy.NON_REFUNDABLE, "expected_version": 1},
            format="json",
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["details"]["current_version"] == 2

    def test_provider_cannot_change_policy_after_capture(self, provider_client, paid_order):
        response = provider_client.patch(
            order_url("refund-policy", paid_order),
            {"refund_policy": RefundPolicy.NON_REFUNDABLE, "expected_version": reload(paid_order).version},
            format="json",
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert reload(paid_order).refund_policy == RefundPolicy.FULLY_REFUNDABLE

    def test_staff_changes_policy_after_capture(self, staff_client, paid_order):
        response = staff_client.patch(
            order_url("refund-policy", paid_order),
            {"refund_policy": RefundPolicy.PARTIALLY_REFUNDABLE, "expected_version": reload(paid_order).version},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert reload(paid_order).refund_policy == RefundPolicy.PARTIALLY_REFUNDABLE


class TestDisputes:
    @pytest.fixture
    def dispute(self, paid_order, customer):
        result = EscrowOrchestrator.open_dispute(paid_order.id, customer.id, DisputeType.NO_SHOW, "Nobody came")
        assert result.success, result.error
        return result.data

    def test_customer_opens_dispute(self, customer_client, paid_order):
        response = customer_client.post(
            order_url("disputes", paid_order),
            {"dispute_type": DisputeType.QUALITY, "description": "Stains left on the carpet"},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["status"] == DisputeStatus.OPEN
        assert Dispute.objects.filter(order=paid_order).count() == 1

    def test_stranger_cannot_dispute(self, stranger_client, paid_order):
        response = stranger_client.post(
            order_url("disputes", paid_order),
            {"dispute_type": DisputeType.QUALITY, "description": "Not mine"},
            format="json",
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_second_dispute_conflicts(self, provider_client, paid_order, dispute):
        response = provider_client.post(
            order_url("disputes", paid_order),
            {"dispute_type": DisputeType.PAYMENT, "description": "Customer blocked the door"},
            format="json",
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["error_code"] == "DISPUTE_ALREADY_OPEN"

    def test_staff_resolves_with_partial_refund(self, staff_client, dispute, paid_order):
        response = staff_client.post(
            reverse("escrow:dispute-resolve", args=[dispute.id]),
            {"resolution": DisputeResolution.PARTIAL_REFUND, "refund_amount_cents": 5000, "note": "Late arrival"},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == DisputeStatus.RESOLVED
        assert response.data["refund_amount_cents"] == 5000
        assert reload(paid_order).refunds.count() == 1

    def test_partial_refund_without_amount_is_rejected(self, staff_client, dispute):
        response = staff_client.post(
            reverse("escrow:dispute-resolve", args=[dispute.id]),
            {"resolution": DisputeResolution.PARTIAL_REFUND},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_customer_cannot_resolve(self, customer_client, dispute):
        response = customer_client.post(
            reverse("escrow:dispute-resolve", args=[dispute.id]),
            {"resolution": DisputeResolution.FULL_REFUND},
            format="json",
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert Dispute.objects.get(pk=dispute.pk).status == DisputeStatus.OPEN

    def test_filer_withdraws(self, customer_client, dispute):
        response = customer_client.post(reverse("escrow:dispute-withdraw", args=[dispute.id]))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == DisputeStatus.WITHDRAWN

    def test_unknown_dispute(self, customer_client, db):
        response = customer_client.post(
            reverse("escrow:dispute-withdraw", args=["00000000-0000-0000-0000-000000000000"])
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestWallet:
    def test_balance_and_rows(self, customer_client, paid_order):
        response = customer_client.get(reverse("escrow:wallet"))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["currency"] == "usd"
        assert response.data["balance_cents"] == -25000
        assert response.data["pending_cents"] == 0
        assert len(response.data["transactions"]) == 3

    def test_provider_sees_pending_credit(self, provider_client, paid_order):
        response = provider_client.get(reverse("escrow:wallet"))

        assert response.data["balance_cents"] == 0
        assert response.data["pending_cents"] == 21250
