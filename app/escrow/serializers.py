"""
DRF serializers for the escrow API.

Request serializers validate input only; every state change goes through
EscrowOrchestrator. Response serializers render models and the result
dataclasses the orchestrator returns.

Related files:
    - views.py: Escrow API views
    - services/orchestrator.py: Operations these serializers feed

Usage:
    serializer = OrderCreateSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    result = EscrowOrchestrator.create_order(
        customer_id=request.user.id,
        **serializer.validated_data,
    )
"""

from __future__ import annotations

from django.contrib.auth import get_user_model
from rest_framework import serializers

from escrow.models import (
    AuthorizationHold,
    CaptureRecord,
    Dispute,
    Order,
    PayoutSchedule,
    PriceAdjustmentRequest,
    RefundRecord,
)
from escrow.state_machines import (
    AdjustmentDecision,
    DisputeResolution,
    DisputeType,
    FulfillmentTrigger,
    RefundPolicy,
    RefundReason,
)
from escrow.wallet.models import WalletTransaction

User = get_user_model()


# =============================================================================
# Model serializers
# =============================================================================


class OrderSerializer(serializers.ModelSerializer):
    class Meta:
        model = Order
        fields = [
            "id",
            "customer",
            "provider",
            "status",
            "version",
            "currency",
            "original_price_cents",
            "current_price_cents",
            "fulfillment_trigger",
            "refund_policy",
            "fulfilled_at",
            "authorized_at",
            "captured_at",
            "completed_at",
            "refunded_at",
            "cancelled_at",
            "cancellation_reason",
            "metadata",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class AuthorizationHoldSerializer(serializers.ModelSerializer):
    class Meta:
        model = AuthorizationHold
        fields = [
            "id",
            "order",
            "amount_cents",
            "currency",
            "is_supplementary",
            "status",
            "authorized_at",
            "expires_at",
            "confirmed_at",
            "captured_at",
            "released_at",
            "failure_reason",
        ]
        read_only_fields = fields


class PriceAdjustmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = PriceAdjustmentRequest
        fields = [
            "id",
            "order",
            "original_price_cents",
            "adjusted_price_cents",
            "adjustment_amount_cents",
            "adjustment_type",
            "justification",
            "status",
            "requested_by",
            "requested_at",
            "response_deadline",
            "responded_at",
            "responded_by",
            "supplementary_hold",
        ]
        read_only_fields = fields


class CaptureRecordSerializer(serializers.ModelSerializer):
    class Meta:
        model = CaptureRecord
        fields = [
            "id",
            "authorization",
            "captured_amount_cents",
            "platform_fee_cents",
            "provider_net_cents",
            "fee_percent",
            "status",
            "captured_at",
        ]
        read_only_fields = fields


class PayoutScheduleSerializer(serializers.ModelSerializer):
    class Meta:
        model = PayoutSchedule
        fields = [
            "id",
            "provider",
            "order",
            "amount_cents",
            "currency",
            "scheduled_release_at",
            "status",
            "released_at",
        ]
        read_only_fields = fields


class RefundRecordSerializer(serializers.ModelSerializer):
    class Meta:
        model = RefundRecord
        fields = [
            "id",
            "capture",
            "refund_amount_cents",
            "provider_clawback_cents",
            "reason",
            "note",
            "status",
            "completed_at",
            "failure_reason",
            "created_at",
        ]
        read_only_fields = fields


class WalletTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = WalletTransaction
        fields = [
            "id",
            "amount_cents",
            "currency",
            "kind",
            "related_order",
            "status",
            "description",
            "created_at",
            "settled_at",
        ]
        read_only_fields = fields


class DisputeSerializer(serializers.ModelSerializer):
    class Meta:
        model = Dispute
        fields = [
            "id",
            "order",
            "filed_by",
            "dispute_type",
            "description",
            "status",
            "resolution",
            "resolution_note",
            "refund_amount_cents",
            "resolved_by",
            "resolved_at",
            "created_at",
        ]
        read_only_fields = fields


# =============================================================================
# Request serializers
# =============================================================================


class OrderCreateSerializer(serializers.Serializer):
    """
    Input for opening an escrow order. The caller becomes the customer.

    Fields:
        provider_id: User providing the service
        price_cents: Agreed price in the smallest currency unit
        fulfillment_trigger: Event that makes the order capturable
        refund_policy: Policy applied to later refunds
    """

    provider_id = serializers.PrimaryKeyRelatedField(queryset=User.objects.all())
    price_cents = serializers.IntegerField(min_value=1)
    fulfillment_trigger = serializers.ChoiceField(
        choices=FulfillmentTrigger.choices,
        default=FulfillmentTrigger.SERVICE_COMPLETED,
    )
    refund_policy = serializers.ChoiceField(
        choices=RefundPolicy.choices,
        default=RefundPolicy.FULLY_REFUNDABLE,
    )
    currency = serializers.CharField(min_length=3, max_length=3, default="usd")
    metadata = serializers.JSONField(required=False, default=dict)

    def validate(self, attrs):
        request = self.context.get("request")
        if request is not None and attrs["provider_id"].pk == request.user.pk:
            raise serializers.ValidationError({"provider_id": "You cannot order from yourself."})
        return attrs


class AuthorizeSerializer(serializers.Serializer):
    amount_cents = serializers.IntegerField(min_value=1, required=False)
    payment_instrument_id = serializers.UUIDField(required=False)


class AdjustmentCreateSerializer(serializers.Serializer):
    new_price_cents = serializers.IntegerField(min_value=1)
    justification = serializers.CharField(max_length=2000, allow_blank=True)


class AdjustmentResponseSerializer(serializers.Serializer):
    decision = serializers.ChoiceField(choices=AdjustmentDecision.choices)


class FulfillmentSerializer(serializers.Serializer):
    trigger = serializers.ChoiceField(choices=FulfillmentTrigger.choices)


class CaptureSerializer(serializers.Serializer):
    amount_cents = serializers.IntegerField(min_value=1, required=False)


class RefundCreateSerializer(serializers.Serializer):
    amount_cents = serializers.IntegerField(min_value=1)
    reason = serializers.ChoiceField(choices=RefundReason.choices, default=RefundReason.OTHER)
    note = serializers.CharField(max_length=2000, required=False, allow_blank=True, default="")


class CancelOrderSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=2000, required=False, allow_blank=True, default="")


class RefundPolicyUpdateSerializer(serializers.Serializer):
    refund_policy = serializers.ChoiceField(choices=RefundPolicy.choices)
    expected_version = serializers.IntegerField(min_value=1)


class DisputeCreateSerializer(serializers.Serializer):
    dispute_type = serializers.ChoiceField(choices=DisputeType.choices)
    description = serializers.CharField(max_length=5000)


class DisputeResolveSerializer(serializers.Serializer):
    """Staff decision on a dispute. Partial refunds need an amount."""

    resolution = serializers.ChoiceField(choices=DisputeResolution.choices)
    refund_amount_cents = serializers.IntegerField(min_value=1, required=False)
    note = serializers.CharField(max_length=2000, required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["resolution"] == DisputeResolution.PARTIAL_REFUND and "refund_amount_cents" not in attrs:
            raise serializers.ValidationError({"refund_amount_cents": "Required for a partial refund."})
        return attrs


# =============================================================================
# Response serializers
# =============================================================================


class HoldSummarySerializer(serializers.Serializer):
    id = serializers.UUIDField()
    amount_cents = serializers.IntegerField()
    status = serializers.CharField()
    is_supplementary = serializers.BooleanField()
    expires_at = serializers.DateTimeField()


class PendingAdjustmentSummarySerializer(serializers.Serializer):
    id = serializers.UUIDField()
    adjusted_price_cents = serializers.IntegerField()
    adjustment_amount_cents = serializers.IntegerField()
    response_deadline = serializers.DateTimeField()


class PayoutSummarySerializer(serializers.Serializer):
    id = serializers.UUIDField()
    amount_cents = serializers.IntegerField()
    status = serializers.CharField()
    scheduled_release_at = serializers.DateTimeField()


class OrderStatusSerializer(serializers.Serializer):
    """Renders an OrderStatusSnapshot."""

    order_id = serializers.UUIDField()
    status = serializers.CharField()
    version = serializers.IntegerField()
    currency = serializers.CharField()
    original_price_cents = serializers.IntegerField()
    current_price_cents = serializers.IntegerField()
    refund_policy = serializers.CharField()
    fulfillment_trigger = serializers.CharField()
    fulfilled_at = serializers.DateTimeField(allow_null=True)
    captured_cents = serializers.IntegerField()
    refunded_cents = serializers.IntegerField()
    remaining_refundable_cents = serializers.IntegerField()
    holds = HoldSummarySerializer(many=True)
    pending_adjustment = PendingAdjustmentSummarySerializer(allow_null=True)
    payout = PayoutSummarySerializer(allow_null=True)


class CaptureResultSerializer(serializers.Serializer):
    """Renders a CaptureResult."""

    order = OrderSerializer()
    records = CaptureRecordSerializer(many=True)
    total_captured_cents = serializers.IntegerField()
    platform_fee_cents = serializers.IntegerField()
    provider_net_cents = serializers.IntegerField()
    already_captured = serializers.BooleanField()
    payout = PayoutScheduleSerializer(allow_null=True)


class RefundOutcomeSerializer(serializers.Serializer):
    """Renders a RefundOutcome."""

    order = OrderSerializer()
    records = RefundRecordSerializer(many=True)
    refunded_cents = serializers.IntegerField()
    remaining_refundable_cents = serializers.IntegerField()


class WalletSerializer(serializers.Serializer):
    currency = serializers.CharField()
    balance_cents = serializers.IntegerField()
    pending_cents = serializers.IntegerField()
    transactions = WalletTransactionSerializer(many=True)


class ErrorResponseSerializer(serializers.Serializer):
    success = serializers.BooleanField(default=False)
    error = serializers.CharField()
    error_code = serializers.CharField()
    details = serializers.DictField(required=False)
