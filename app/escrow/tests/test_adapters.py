"""
Tests for the Stripe adapter.

The Stripe SDK is patched at the module boundary; nothing here talks to
the network.
"""

import pytest
import stripe

from escrow.adapters.stripe_adapter import (
    IdempotencyKeyGenerator,
    StripeAdapter,
    backoff_delay,
    call_with_retry,
)
from escrow.exceptions import (
    ProcessorDeclined,
    ProcessorInvalidRequest,
    ProcessorRateLimited,
    ProcessorTimeout,
    ProcessorUnavailable,
)

SDK = "escrow.adapters.stripe_adapter.stripe"


def fake_intent(mocker, status="requires_capture", amount=25000, **extra):
    intent = mocker.Mock(
        id="pi_123",
        status=status,
        amount=amount,
        currency="usd",
        amount_capturable=extra.get("amount_capturable", amount),
        amount_received=extra.get("amount_received", 0),
        metadata=extra.get("metadata", {"order_id": "o1"}),
    )
    intent.to_dict.return_value = {"id": "pi_123", "status": status}
    return intent


@pytest.fixture(autouse=True)
def offline_stripe(mocker):
    mocker.patch.object(StripeAdapter, "_configure_stripe")


class TestIdempotencyKeyGenerator:
    def test_stable_for_same_input(self):
        first = IdempotencyKeyGenerator.generate("capture", "abc")
        second = IdempotencyKeyGenerator.generate("capture", "abc")

        assert first == second
        assert first.startswith("capture:abc:1:")

    def test_differs_by_operation_and_attempt(self):
        keys = {
            IdempotencyKeyGenerator.generate("capture", "abc"),
            IdempotencyKeyGenerator.generate("refund", "abc"),
            IdempotencyKeyGenerator.generate("capture", "abc", attempt=2),
        }

        assert len(keys) == 3


class TestRetryHelpers:
    def test_backoff_grows_and_is_capped(self):
        assert 1.0 <= backoff_delay(0) <= 1.25
        assert 4.0 <= backoff_delay(2) <= 5.0
        assert backoff_delay(20) <= 75.0

    def test_transient_errors_are_retried(self, mocker):
        mocker.patch("escrow.adapters.stripe_adapter.time.sleep")
        func = mocker.Mock(side_effect=[ProcessorUnavailable("busy"), ProcessorRateLimited("slow down"), "ok"])

        assert call_with_retry(func, max_retries=3) == "ok"
        assert func.call_count == 3

    def test_gives_up_after_max_retries(self, mocker):
        mocker.patch("escrow.adapters.stripe_adapter.time.sleep")
        func = mocker.Mock(side_effect=ProcessorUnavailable("busy"))

        with pytest.raises(ProcessorUnavailable):
            call_with_retry(func, max_retries=2)

        assert func.call_count == 3

    def test_permanent_errors_are_not_retried(self, mocker):
        sleep = mocker.patch("escrow.adapters.stripe_adapter.time.sleep")
        func = mocker.Mock(side_effect=ProcessorDeclined("Card declined"))

        with pytest.raises(ProcessorDeclined):
            call_with_retry(func, max_retries=3)

        func.assert_called_once()
        sleep.assert_not_called()

    def test_retry_count_defaults_to_setting(self, mocker, settings):
        settings.STRIPE_MAX_RETRIES = 1
        mocker.patch("escrow.adapters.stripe_adapter.time.sleep")
        func = mocker.Mock(side_effect=ProcessorUnavailable("busy"))

        with pytest.raises(ProcessorUnavailable):
            call_with_retry(func)

        assert func.call_count == 2


class TestHoldOperations:
    def test_authorize_places_manual_capture_hold(self, mocker):
        create = mocker.patch(f"{SDK}.PaymentIntent.create", return_value=fake_intent(mocker))

        result = StripeAdapter.authorize("cus_1", "pm_1", 25000, "usd", "authorize:o1:1:abcd", {"order_id": "o1"})

        kwargs = create.call_args.kwargs
        assert kwargs["capture_method"] == "manual"
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "authorize:o1:1:abcd"
        assert result.id == "pi_123"
        assert result.status == "requires_capture"
        assert result.amount_capturable == 25000
        assert result.metadata == {"order_id": "o1"}
        assert result.raw_response["id"] == "pi_123"

    def test_capture_passes_amount(self, mocker):
        capture = mocker.patch(
            f"{SDK}.PaymentIntent.capture",
            return_value=fake_intent(mocker, status="succeeded", amount_capturable=0, amount_received=20000),
        )

        result = StripeAdapter.capture("pi_123", 20000, "capture:h1:1:abcd")

        capture.assert_called_once_with("pi_123", amount_to_capture=20000, idempotency_key="capture:h1:1:abcd")
        assert result.amount_received == 20000

    def test_cancel(self, mocker):
        mocker.patch(f"{SDK}.PaymentIntent.cancel", return_value=fake_intent(mocker, status="canceled"))

        assert StripeAdapter.cancel("pi_123", "cancel:h1:1:abcd").status == "canceled"

    def test_get_status(self, mocker):
        retrieve = mocker.patch(f"{SDK}.PaymentIntent.retrieve", return_value=fake_intent(mocker))

        StripeAdapter.get_status("pi_123")

        retrieve.assert_called_once_with("pi_123")


class TestRefundOperations:
    def fake_refund(self, mocker, record_id="r1", status="succeeded"):
        refund = mocker.Mock(
            id=f"re_{record_id}",
            status=status,
            amount=10000,
            currency="usd",
            payment_intent="pi_123",
            metadata={"refund_record_id": record_id},
        )
        refund.to_dict.return_value = {"id": refund.id}
        return refund

    def test_refund(self, mocker):
        create = mocker.patch(f"{SDK}.Refund.create", return_value=self.fake_refund(mocker))

        result = StripeAdapter.refund("pi_123", 10000, "refund:r1:1:abcd", {"refund_record_id": "r1"})

        assert create.call_args.kwargs["payment_intent"] == "pi_123"
        assert result.amount_cents == 10000
        assert not result.is_failed

    def test_failed_refund(self, mocker):
        mocker.patch(f"{SDK}.Refund.create", return_value=self.fake_refund(mocker, status="failed"))

        assert StripeAdapter.refund("pi_123", 10000, "refund:r1:1:abcd").is_failed

    def test_find_refund_by_record_id(self, mocker):
        listing = mocker.Mock()
        listing.auto_paging_iter.return_value = iter([self.fake_refund(mocker, "r0"), self.fake_refund(mocker, "r1")])
        mocker.patch(f"{SDK}.Refund.list", return_value=listing)

        assert StripeAdapter.find_refund("pi_123", "r1").id == "re_r1"

    def test_find_refund_missing(self, mocker):
        listing = mocker.Mock()
        listing.auto_paging_iter.return_value = iter([])
        mocker.patch(f"{SDK}.Refund.list", return_value=listing)

        assert StripeAdapter.find_refund("pi_123", "r1") is None


class TestErrorTranslation:
    @pytest.mark.parametrize(
        ("sdk_error", "expected", "retryable"),
        [
            (stripe.CardError("Your card was declined.", None, "card_declined"), ProcessorDeclined, False),
            (stripe.InvalidRequestError("No such payment_intent", "id"), ProcessorInvalidRequest, False),
            (stripe.AuthenticationError("Invalid API key"), ProcessorInvalidRequest, False),
            (stripe.RateLimitError("Too many requests"), ProcessorRateLimited, True),
            (stripe.APIConnectionError("Read timed out"), ProcessorTimeout, True),
            (stripe.APIError("Internal error"), ProcessorUnavailable, True),
            (RuntimeError("socket closed"), ProcessorUnavailable, True),
        ],
    )
    def test_sdk_errors_are_translated(self, mocker, sdk_error, expected, retryable):
        mocker.patch(f"{SDK}.PaymentIntent.retrieve", side_effect=sdk_error)

        with pytest.raises(expected) as exc_info:
            StripeAdapter.get_status("pi_123")

        assert exc_info.value.is_retryable is retryable

    def test_connection_error_outcome_is_unknown(self, mocker):
        mocker.patch(f"{SDK}.PaymentIntent.capture", side_effect=stripe.APIConnectionError("Read timed out"))

        with pytest.raises(ProcessorTimeout) as exc_info:
            StripeAdapter.capture("pi_123", 25000, "capture:h1:1:abcd")

        assert exc_info.value.processor_code == "api_connection_error"

    def test_decline_keeps_processor_code(self, mocker):
        mocker.patch(
            f"{SDK}.PaymentIntent.create",
            side_effect=stripe.CardError("Your card has insufficient funds.", None, "card_declined"),
        )

        with pytest.raises(ProcessorDeclined) as exc_info:
            StripeAdapter.authorize("cus_1", "pm_1", 25000, "usd", "authorize:o1:1:abcd")

        assert exc_info.value.processor_code == "card_declined"
        assert exc_info.value.error_code == "PROCESSOR_DECLINED"


class TestWebhookSignature:
    def test_valid_signature(self, mocker):
        event = mocker.Mock()
        event.to_dict.return_value = {"id": "evt_1", "type": "charge.refunded"}
        construct = mocker.patch(f"{SDK}.Webhook.construct_event", return_value=event)

        assert StripeAdapter.verify_webhook_signature(b"{}", "t=1,v1=abc") == {
            "id": "evt_1",
            "type": "charge.refunded",
        }
        assert construct.call_args.args[2] == "whsec_test"

    def test_invalid_signature(self, mocker):
        mocker.patch(
            f"{SDK}.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc"),
        )

        with pytest.raises(ProcessorInvalidRequest) as exc_info:
            StripeAdapter.verify_webhook_signature(b"{}", "t=1,v1=abc")

        assert exc_info.value.processor_code == "signature_verification_failed"

    def test_malformed_payload(self, mocker):
        mocker.patch(f"{SDK}.Webhook.construct_event", side_effect=ValueError("Expecting value"))

        with pytest.raises(ProcessorInvalidRequest):
            StripeAdapter.verify_webhook_signature(b"not json", "t=1,v1=abc")
