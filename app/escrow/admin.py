"""
Escrow admin configuration.

Money records are read-only here: every change has to go through
EscrowOrchestrator so locks, ledger rows and outbox events stay in step.
"""

from django.contrib import admin

from escrow.models import (
    AuthorizationHold,
    CaptureRecord,
    Dispute,
    EscrowEvent,
    Order,
    PaymentInstrument,
    PayoutSchedule,
    PriceAdjustmentRequest,
    RefundRecord,
    WalletTransaction,
    WebhookEvent,
)


class ReadOnlyAdmin(admin.ModelAdmin):
    """Admin that lists and shows records but never edits them."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class AuthorizationHoldInline(admin.TabularInline):
    model = AuthorizationHold
    fields = ["id", "amount_cents", "is_supplementary", "status", "expires_at"]
    readonly_fields = fields
    extra = 0
    can_delete = False
    show_change_link = True


class PriceAdjustmentInline(admin.TabularInline):
    model = PriceAdjustmentRequest
    fk_name = "order"
    fields = ["id", "adjusted_price_cents", "adjustment_type", "status", "response_deadline"]
    readonly_fields = fields
    extra = 0
    can_delete = False
    show_change_link = True


@admin.register(Order)
class OrderAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "customer",
        "provider",
        "status",
        "current_price_cents",
        "currency",
        "refund_policy",
        "created_at",
    ]
    list_filter = ["status", "refund_policy", "fulfillment_trigger", "currency"]
    search_fields = ["id", "customer__email", "provider__email"]
    raw_id_fields = ["customer", "provider"]
    inlines = [AuthorizationHoldInline, PriceAdjustmentInline]
    ordering = ["-created_at"]


@admin.register(PaymentInstrument)
class PaymentInstrumentAdmin(admin.ModelAdmin):
    list_display = ["id", "customer", "brand", "last4", "is_default", "is_active"]
    list_filter = ["brand", "is_default", "is_active"]
    search_fields = ["customer__email", "processor_customer_id", "processor_payment_method_id"]
    raw_id_fields = ["customer"]
    readonly_fields = ["id", "created_at", "updated_at"]


@admin.register(AuthorizationHold)
class AuthorizationHoldAdmin(ReadOnlyAdmin):
    list_display = ["id", "order", "amount_cents", "is_supplementary", "status", "expires_at"]
    list_filter = ["status", "is_supplementary"]
    search_fields = ["id", "order__id", "processor_reference"]


@admin.register(PriceAdjustmentRequest)
class PriceAdjustmentRequestAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "order",
        "original_price_cents",
        "adjusted_price_cents",
        "adjustment_type",
        "status",
        "response_deadline",
    ]
    list_filter = ["status", "adjustment_type"]
    search_fields = ["id", "order__id"]


@admin.register(CaptureRecord)
class CaptureRecordAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "order",
        "captured_amount_cents",
        "platform_fee_cents",
        "provider_net_cents",
        "status",
        "needs_reconciliation",
        "captured_at",
    ]
    list_filter = ["status", "needs_reconciliation"]
    search_fields = ["id", "order__id"]


@admin.register(PayoutSchedule)
class PayoutScheduleAdmin(ReadOnlyAdmin):
    list_display = ["id", "order", "provider", "amount_cents", "status", "scheduled_release_at"]
    list_filter = ["status"]
    search_fields = ["id", "order__id", "provider__email"]


@admin.register(RefundRecord)
class RefundRecordAdmin(ReadOnlyAdmin):
    list_display = [
        "id",
        "order",
        "refund_amount_cents",
        "provider_clawback_cents",
        "reason",
        "status",
        "needs_reconciliation",
        "created_at",
    ]
    list_filter = ["status", "reason", "needs_reconciliation"]
    search_fields = ["id", "order__id", "processor_refund_reference"]


@admin.register(Dispute)
class DisputeAdmin(ReadOnlyAdmin):
    list_display = ["id", "order", "filed_by", "dispute_type", "status", "resolution", "created_at"]
    list_filter = ["status", "dispute_type", "resolution"]
    search_fields = ["id", "order__id", "filed_by__email"]


@admin.register(EscrowEvent)
class EscrowEventAdmin(ReadOnlyAdmin):
    list_display = ["id", "order", "recipient", "event_type", "dispatch_status", "attempts", "created_at"]
    list_filter = ["dispatch_status", "event_type"]
    search_fields = ["order__id", "recipient__email"]


@admin.register(WebhookEvent)
class WebhookEventAdmin(ReadOnlyAdmin):
    list_display = ["processor_event_id", "event_type", "status", "retry_count", "processed_at", "created_at"]
    list_filter = ["status", "event_type"]
    search_fields = ["processor_event_id"]


@admin.register(WalletTransaction)
class WalletTransactionAdmin(ReadOnlyAdmin):
    list_display = ["id", "user", "amount_cents", "currency", "kind", "status", "related_order", "created_at"]
    list_filter = ["kind", "status", "currency"]
    search_fields = ["user__email", "idempotency_key", "related_order__id"]
