"""
Pytest fixtures for escrow tests.

Every test gets:
- A mocked Redis connection for the order lock (always acquirable)
- A FakeProcessor in place of the Stripe adapter
- Reconciliation and outbox dispatch queueing patched out

Order fixtures walk an order through EscrowOrchestrator so that holds,
capture records and wallet rows are the ones production would write.

Usage:
    def test_capture(fulfilled_order, fake_processor):
        result = EscrowOrchestrator.capture(fulfilled_order.id)
        assert result.success
        assert fake_processor.calls_for("capture")
"""

from __future__ import annotations

import itertools

import pytest
from rest_framework.test import APIClient

from core.tests.factories import UserFactory
from escrow.adapters import PaymentIntentResult, RefundResult
from escrow.models import Order
from escrow.services import EscrowOrchestrator, ProcessorBackedService
from escrow.state_machines import FulfillmentTrigger
from escrow.tests.factories import OrderFactory, PaymentInstrumentFactory


# =============================================================================
# Fake payment processor
# =============================================================================


class FakeProcessor:
    """
    In-memory stand-in for StripeAdapter.

    Keeps PaymentIntents and refunds in dicts and honours idempotency keys
    the way Stripe does: the same key returns the first response.

    Knobs:
        authorize_status: status returned by new intents
        refund_status: status returned by new refunds
        fail_next(operation, exc, after=False): raise ``exc`` on the next
            call; with ``after=True`` the call takes effect first (a
            timeout whose outcome reached the processor)
    """

    def __init__(self) -> None:
        self.authorize_status = "requires_capture"
        self.refund_status = "succeeded"
        self.intents: dict[str, PaymentIntentResult] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.calls: list[tuple[str, dict]] = []
        self._responses: dict[str, object] = {}
        self._failures: dict[str, tuple[Exception, bool]] = {}
        self._ids = itertools.count(1)

    def fail_next(self, operation: str, exc: Exception, after: bool = False) -> None:
        self._failures[operation] = (exc, after)

    def calls_for(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _run(self, operation: str, idempotency_key: str | None, func):
        failure = self._failures.pop(operation, None)
        if failure is not None and not failure[1]:
            raise failure[0]
        if idempotency_key and idempotency_key in self._responses:
            result = self._responses[idempotency_key]
        else:
            result = func()
            if idempotency_key:
                self._responses[idempotency_key] = result
        if failure is not None:
            raise failure[0]
        return result

    # Holds

    def authorize(self, customer_id, payment_method_id, amount_cents, currency, idempotency_key, metadata=None):
        self.calls.append(("authorize", {"amount_cents": amount_cents, "idempotency_key": idempotency_key}))

        def create():
            intent = PaymentIntentResult(
                id=f"pi_fake_{next(self._ids)}",
                status=self.authorize_status,
                amount_cents=amount_cents,
                currency=currency,
                amount_capturable=amount_cents if self.authorize_status == "requires_capture" else 0,
                metadata=dict(metadata or {}),
            )
            self.intents[intent.id] = intent
            return intent

        return self._run("authorize", idempotency_key, create)

    def capture(self, payment_intent_id, amount_cents, idempotency_key):
        self.calls.append(("capture", {"payment_intent_id": payment_intent_id, "amount_cents": amount_cents}))

        def capture():
            intent = self.intents[payment_intent_id]
            intent.status = "succeeded"
            intent.amount_received = amount_cents
            intent.amount_capturable = 0
            return intent

        return self._run("capture", idempotency_key, capture)

    def cancel(self, payment_intent_id, idempotency_key):
        self.calls.append(("cancel", {"payment_intent_id": payment_intent_id}))

        def cancel():
            intent = self.intents[payment_intent_id]
            intent.status = "canceled"
            intent.amount_capturable = 0
            return intent

        return self._run("cancel", idempotency_key, cancel)

    def get_status(self, payment_intent_id):
        self.calls.append(("get_status", {"payment_intent_id": payment_intent_id}))
        return self._run("get_status", None, lambda: self.intents[payment_intent_id])

    # Refunds

    def refund(self, payment_intent_id, amount_cents, idempotency_key, metadata=None):
        self.calls.append(("refund", {"payment_intent_id": payment_intent_id, "amount_cents": amount_cents}))

        def create():
            refund = RefundResult(
                id=f"re_fake_{next(self._ids)}",
                status=self.refund_status,
                amount_cents=amount_cents,
                currency="usd",
                payment_intent_id=payment_intent_id,
                metadata=dict(metadata or {}),
            )
            self.refunds[refund.id] = refund
            return refund

        return self._run("refund", idempotency_key, create)

    def find_refund(self, payment_intent_id, refund_record_id):
        self.calls.append(("find_refund", {"payment_intent_id": payment_intent_id}))
        for refund in self.refunds.values():
            if refund.payment_intent_id == payment_intent_id and refund.metadata.get("refund_record_id") == str(
                refund_record_id
            ):
                return refund
        return None


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis(mocker):
    """Redis client for the order lock; every acquire and release succeeds."""
    client = mocker.MagicMock()
    client.set.return_value = True
    client.eval.return_value = 1
    mocker.patch("escrow.locks.get_redis_connection", return_value=client)
    return client


@pytest.fixture(autouse=True)
def no_processor_retries(settings):
    settings.STRIPE_MAX_RETRIES = 0


@pytest.fixture(autouse=True)
def queued_reconciliation(mocker):
    """Reconciliation tasks queued by capture or refund timeouts."""
    from escrow.workers.reconciliation import reconcile_order_payments

    return mocker.patch.object(reconcile_order_payments, "apply_async")


@pytest.fixture(autouse=True)
def queued_dispatch(mocker):
    from escrow.workers.outbox import dispatch_escrow_events

    return mocker.patch.object(dispatch_escrow_events, "delay")


@pytest.fixture(autouse=True)
def fake_processor():
    processor = FakeProcessor()
    ProcessorBackedService.set_processor(processor)
    yield processor
    ProcessorBackedService.set_processor(None)


# =============================================================================
# Users
# =============================================================================


@pytest.fixture
def customer(db):
    return UserFactory()


@pytest.fixture
def provider(db):
    return UserFactory()


@pytest.fixture
def staff_user(db):
    return UserFactory(is_staff=True)


@pytest.fixture
def stranger(db):
    """A user with no role on any order."""
    return UserFactory()


@pytest.fixture
def card(db, customer):
    """The customer's default, unexpired card."""
    return PaymentInstrumentFactory(customer=customer)


# =============================================================================
# Orders in each lifecycle state
# =============================================================================


def reload(order: Order) -> Order:
    """Fresh copy of an order (FSM fields cannot be refreshed in place)."""
    return Order.objects.get(pk=order.pk)


@pytest.fixture
def order(db, customer, provider, card):
    """A $250.00 order in CREATED."""
    return OrderFactory(customer=customer, provider=provider)


@pytest.fixture
def authorized_order(order):
    """AUTHORIZED with a confirmed $250.00 primary hold."""
    result = EscrowOrchestrator.authorize(order.id)
    assert result.success, result.error
    return reload(order)


@pytest.fixture
def fulfilled_order(authorized_order):
    """FULFILLMENT_PENDING, ready to capture."""
    result = EscrowOrchestrator.record_fulfillment(authorized_order.id, FulfillmentTrigger.SERVICE_COMPLETED)
    assert result.success, result.error
    return reload(authorized_order)


@pytest.fixture
def paid_order(fulfilled_order):
    """Captured in full; the provider's payout is scheduled (PAYOUT_SCHEDULED)."""
    result = EscrowOrchestrator.capture(fulfilled_order.id)
    assert result.success, result.error
    return reload(fulfilled_order)


# =============================================================================
# API clients
# =============================================================================


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def customer_client(customer):
    client = APIClient()
    client.force_authenticate(user=customer)
    return client


@pytest.fixture
def provider_client(provider):
    client = APIClient()
    client.force_authenticate(user=provider)
    return client


@pytest.fixture
def stranger_client(stranger):
    client = APIClient()
    client.force_authenticate(user=stranger)
    return client
