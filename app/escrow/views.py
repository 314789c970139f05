"""
ViewSets for the escrow API.

URL Structure:
    /api/v1/escrow/orders/                        POST
    /api/v1/escrow/orders/{id}/                   GET
    /api/v1/escrow/orders/{id}/authorize/         POST
    /api/v1/escrow/orders/{id}/adjustments/       POST
    /api/v1/escrow/orders/{id}/fulfillment/       POST
    /api/v1/escrow/orders/{id}/capture/           POST
    /api/v1/escrow/orders/{id}/refunds/           POST
    /api/v1/escrow/orders/{id}/cancel/            POST
    /api/v1/escrow/orders/{id}/refund-policy/     PATCH
    /api/v1/escrow/orders/{id}/disputes/          POST
    /api/v1/escrow/adjustments/{id}/respond/      POST
    /api/v1/escrow/adjustments/{id}/cancel/       POST
    /api/v1/escrow/disputes/{id}/resolve/         POST
    /api/v1/escrow/disputes/{id}/withdraw/        POST
    /api/v1/escrow/wallet/                        GET

Design Decisions:
    - Views validate input and check the caller's role on the order
    - Every state change goes through EscrowOrchestrator
    - Failures keep the ServiceResult shape; the HTTP status comes from
      the exception class behind the error code
"""

from __future__ import annotations

import uuid
from functools import lru_cache

from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BaseApplicationError
from core.services import ServiceResult
from escrow.exceptions import AdjustmentNotFound, DisputeNotFound, OrderNotFound
from escrow.models import Dispute, Order, PriceAdjustmentRequest
from escrow.serializers import (
    AdjustmentCreateSerializer,
    AdjustmentResponseSerializer,
    AuthorizationHoldSerializer,
    AuthorizeSerializer,
    CancelOrderSerializer,
    CaptureResultSerializer,
    CaptureSerializer,
    DisputeCreateSerializer,
    DisputeResolveSerializer,
    DisputeSerializer,
    ErrorResponseSerializer,
    FulfillmentSerializer,
    OrderCreateSerializer,
    OrderSerializer,
    OrderStatusSerializer,
    PriceAdjustmentSerializer,
    RefundCreateSerializer,
    RefundOutcomeSerializer,
    RefundPolicyUpdateSerializer,
    WalletSerializer,
    WalletTransactionSerializer,
)
from escrow.services import EscrowOrchestrator
from escrow.state_machines import FulfillmentTrigger
from escrow.wallet.services import wallet

UUID_LOOKUP = r"[0-9a-fA-F-]{36}"

ERROR_RESPONSES = {
    400: ErrorResponseSerializer,
    403: ErrorResponseSerializer,
    404: ErrorResponseSerializer,
    409: ErrorResponseSerializer,
    502: ErrorResponseSerializer,
}


@lru_cache(maxsize=1)
def error_status_codes() -> dict[str, int]:
    """Map every known error code to the HTTP status of its exception class."""
    codes: dict[str, int] = {}
    pending = [BaseApplicationError]
    while pending:
        exc_class = pending.pop()
        codes.setdefault(exc_class.default_error_code, exc_class.http_status)
        pending.extend(exc_class.__subclasses__())
    return codes


def error_response(result: ServiceResult) -> Response:
    """Render a failed ServiceResult with the status matching its error code."""
    http_status = error_status_codes().get(result.error_code, status.HTTP_400_BAD_REQUEST)
    return Response(result.to_response(), status=http_status)


def exception_response(exc: BaseApplicationError) -> Response:
    return error_response(ServiceResult.from_exception(exc))


def parse_adjustment_id(value) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise AdjustmentNotFound(f"Price adjustment {value} not found", details={"adjustment_id": str(value)})


def parse_dispute_id(value) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise DisputeNotFound(f"Dispute {value} not found", details={"dispute_id": str(value)})


class EscrowViewMixin:
    """Shared lookups for views that act on an order."""

    def get_order(self, order_id) -> Order:
        try:
            order = Order.objects.filter(pk=uuid.UUID(str(order_id))).first()
        except ValueError:
            order = None
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
        return order

    def check_role(self, order: Order, *roles: str) -> None:
        EscrowOrchestrator.check_participant(order, self.request.user, roles)


class OrderViewSet(EscrowViewMixin, viewsets.GenericViewSet):
    """
    Escrow orders.

    create:
        Open an order with the caller as customer.

    retrieve:
        Money state of the order: holds, pending adjustment, captured and
        refundable amounts, payout.
    """

    permission_classes = [IsAuthenticated]
    queryset = Order.objects.all()
    lookup_value_regex = UUID_LOOKUP

    def get_serializer_class(self):
        if self.action == "create":
            return OrderCreateSerializer
        return OrderSerializer

    @extend_schema(
        operation_id="create_escrow_order",
        summary="Create order",
        tags=["Escrow - Orders"],
        request=OrderCreateSerializer,
        responses={201: OrderSerializer, **ERROR_RESPONSES},
    )
    def create(self, request):
        serializer = OrderCreateSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = EscrowOrchestrator.create_order(
            customer_id=request.user.id,
            provider_id=data["provider_id"].pk,
            price_cents=data["price_cents"],
            fulfillment_trigger=data["fulfillment_trigger"],
            refund_policy=data["refund_policy"],
            currency=data["currency"],
            metadata=data.get("metadata") or {},
        )
        if not result.success:
            return error_response(result)
        return Response(OrderSerializer(result.data).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="get_escrow_order",
        summary="Get order status",
        tags=["Escrow - Orders"],
        responses={200: OrderStatusSerializer, **ERROR_RESPONSES},
    )
    def retrieve(self, request, pk=None):
        try:
            order = self.get_order(pk)
            self.check_role(order, "customer", "provider")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.get_order_status(order.id)
        if not result.success:
            return error_response(result)
        return Response(OrderStatusSerializer(result.data).data)

    @extend_schema(
        operation_id="authorize_escrow_order",
        summary="Authorize payment",
        description="Place the primary authorization hold. Customer only.",
        tags=["Escrow - Orders"],
        request=AuthorizeSerializer,
        responses={201: AuthorizationHoldSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def authorize(self, request, pk=None):
        serializer = AuthorizeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            self.check_role(order, "customer")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.authorize(
            order.id,
            amount_cents=serializer.validated_data.get("amount_cents"),
            payment_instrument_id=serializer.validated_data.get("payment_instrument_id"),
        )
        if not result.success:
            return error_response(result)
        return Response(AuthorizationHoldSerializer(result.data).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="request_price_adjustment",
        summary="Request price adjustment",
        description="Propose a new price. Provider only.",
        tags=["Escrow - Adjustments"],
        request=AdjustmentCreateSerializer,
        responses={201: PriceAdjustmentSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def adjustments(self, request, pk=None):
        serializer = AdjustmentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            self.check_role(order, "provider")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.request_adjustment(
            order.id,
            new_price_cents=serializer.validated_data["new_price_cents"],
            justification=serializer.validated_data["justification"],
            requested_by_id=request.user.id,
        )
        if not result.success:
            return error_response(result)
        return Response(PriceAdjustmentSerializer(result.data).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="record_escrow_fulfillment",
        summary="Record fulfillment",
        description=(
            "Report the event that makes the order capturable. Delivery confirmation and proof approval "
            "come from the customer; service completion from either party. Staff may report any."
        ),
        tags=["Escrow - Orders"],
        request=FulfillmentSerializer,
        responses={200: OrderSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def fulfillment(self, request, pk=None):
        serializer = FulfillmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            trigger = FulfillmentTrigger(serializer.validated_data["trigger"])
            self.check_role(order, *trigger.reported_by)
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.record_fulfillment(order.id, trigger)
        if not result.success:
            return error_response(result)
        return Response(OrderSerializer(result.data).data)

    @extend_schema(
        operation_id="capture_escrow_order",
        summary="Capture payment",
        description="Capture the authorized funds and schedule the provider payout. Provider or staff.",
        tags=["Escrow - Orders"],
        request=CaptureSerializer,
        responses={200: CaptureResultSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def capture(self, request, pk=None):
        serializer = CaptureSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            self.check_role(order, "provider")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.capture(order.id, serializer.validated_data.get("amount_cents"))
        if not result.success:
            return error_response(result)
        return Response(CaptureResultSerializer(result.data).data)

    @extend_schema(
        operation_id="refund_escrow_order",
        summary="Issue refund",
        description="Refund captured funds to the customer. Provider or staff.",
        tags=["Escrow - Refunds"],
        request=RefundCreateSerializer,
        responses={201: RefundOutcomeSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def refunds(self, request, pk=None):
        serializer = RefundCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            self.check_role(order, "provider")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.refund(
            order.id,
            amount_cents=serializer.validated_data["amount_cents"],
            reason=serializer.validated_data["reason"],
            initiated_by_id=request.user.id,
            note=serializer.validated_data["note"],
        )
        if not result.success:
            return error_response(result)
        return Response(RefundOutcomeSerializer(result.data).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="cancel_escrow_order",
        summary="Cancel order",
        description="Cancel an order that has not been captured and release its holds.",
        tags=["Escrow - Orders"],
        request=CancelOrderSerializer,
        responses={200: OrderSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = CancelOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            self.check_role(order, "customer", "provider")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.cancel_order(order.id, serializer.validated_data["reason"])
        if not result.success:
            return error_response(result)
        return Response(OrderSerializer(result.data).data)

    @extend_schema(
        operation_id="update_escrow_refund_policy",
        summary="Change refund policy",
        description=(
            "Optimistic update: fails with STALE_RECORD if the order version moved on. "
            "Once the order is captured only staff may change the policy."
        ),
        tags=["Escrow - Orders"],
        request=RefundPolicyUpdateSerializer,
        responses={200: OrderSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["patch"], url_path="refund-policy")
    def refund_policy(self, request, pk=None):
        serializer = RefundPolicyUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            self.check_role(order, "provider")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.update_refund_policy(
            order.id,
            serializer.validated_data["refund_policy"],
            serializer.validated_data["expected_version"],
            changed_by=request.user,
        )
        if not result.success:
            return error_response(result)
        return Response(OrderSerializer(result.data).data)

    @extend_schema(
        operation_id="open_escrow_dispute",
        summary="Open dispute",
        description="Customer or provider disputes a captured order. The payout is held until the dispute closes.",
        tags=["Escrow - Disputes"],
        request=DisputeCreateSerializer,
        responses={201: DisputeSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def disputes(self, request, pk=None):
        serializer = DisputeCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            order = self.get_order(pk)
            self.check_role(order, "customer", "provider")
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.open_dispute(
            order.id,
            filed_by_id=request.user.id,
            dispute_type=serializer.validated_data["dispute_type"],
            description=serializer.validated_data["description"],
        )
        if not result.success:
            return error_response(result)
        return Response(DisputeSerializer(result.data).data, status=status.HTTP_201_CREATED)


class AdjustmentViewSet(viewsets.GenericViewSet):
    """
    Responses to price adjustment requests.

    Role checks happen in the adjustment service, which already knows
    the order behind the request.
    """

    permission_classes = [IsAuthenticated]
    queryset = PriceAdjustmentRequest.objects.all()
    serializer_class = PriceAdjustmentSerializer
    lookup_value_regex = UUID_LOOKUP

    @extend_schema(
        operation_id="respond_price_adjustment",
        summary="Approve or reject adjustment",
        description="Customer (or staff) answers a pending adjustment.",
        tags=["Escrow - Adjustments"],
        request=AdjustmentResponseSerializer,
        responses={200: PriceAdjustmentSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def respond(self, request, pk=None):
        serializer = AdjustmentResponseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            request_id = parse_adjustment_id(pk)
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.respond_to_adjustment(
            request_id,
            serializer.validated_data["decision"],
            responder_id=request.user.id,
        )
        if not result.success:
            return error_response(result)
        return Response(PriceAdjustmentSerializer(result.data).data)

    @extend_schema(
        operation_id="cancel_price_adjustment",
        summary="Withdraw adjustment",
        description="Provider withdraws a pending adjustment.",
        tags=["Escrow - Adjustments"],
        request=None,
        responses={200: PriceAdjustmentSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        try:
            request_id = parse_adjustment_id(pk)
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.cancel_adjustment(request_id, provider_id=request.user.id)
        if not result.success:
            return error_response(result)
        return Response(PriceAdjustmentSerializer(result.data).data)


class DisputeViewSet(viewsets.GenericViewSet):
    """
    Closing disputes.

    Staff resolve; the filer may withdraw. The dispute service checks
    both, since it loads the dispute anyway.
    """

    permission_classes = [IsAuthenticated]
    queryset = Dispute.objects.all()
    serializer_class = DisputeSerializer
    lookup_value_regex = UUID_LOOKUP

    @extend_schema(
        operation_id="resolve_escrow_dispute",
        summary="Resolve dispute",
        description="Staff close a dispute, refunding the customer first when the resolution calls for it.",
        tags=["Escrow - Disputes"],
        request=DisputeResolveSerializer,
        responses={200: DisputeSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def resolve(self, request, pk=None):
        serializer = DisputeResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            dispute_id = parse_dispute_id(pk)
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.resolve_dispute(
            dispute_id,
            serializer.validated_data["resolution"],
            resolved_by_id=request.user.id,
            refund_amount_cents=serializer.validated_data.get("refund_amount_cents"),
            note=serializer.validated_data["note"],
        )
        if not result.success:
            return error_response(result)
        return Response(DisputeSerializer(result.data).data)

    @extend_schema(
        operation_id="withdraw_escrow_dispute",
        summary="Withdraw dispute",
        tags=["Escrow - Disputes"],
        request=None,
        responses={200: DisputeSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def withdraw(self, request, pk=None):
        try:
            dispute_id = parse_dispute_id(pk)
        except BaseApplicationError as e:
            return exception_response(e)

        result = EscrowOrchestrator.withdraw_dispute(dispute_id, user_id=request.user.id)
        if not result.success:
            return error_response(result)
        return Response(DisputeSerializer(result.data).data)


class WalletView(APIView):
    """Balance and recent ledger rows for the current user."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_wallet",
        summary="Get wallet",
        tags=["Escrow - Wallet"],
        parameters=[
            OpenApiParameter(name="currency", type=str, description="ISO 4217 code (default usd)"),
        ],
        responses={200: WalletSerializer, 403: OpenApiResponse(description="Not authenticated")},
    )
    def get(self, request):
        currency = request.query_params.get("currency", "usd").lower()
        user_id = request.user.id
        return Response(
            {
                "currency": currency,
                "balance_cents": wallet.balance(user_id, currency).cents,
                "pending_cents": wallet.pending_balance(user_id, currency).cents,
                "transactions": WalletTransactionSerializer(
                    wallet.transactions_for_user(user_id), many=True
                ).data,
            }
        )
