import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.conf import settings
from django.db import migrations, models


def _uuid_pk():
    return (
        "id",
        models.UUIDField(
            default=uuid.uuid4,
            editable=False,
            help_text="Unique identifier for this record",
            primary_key=True,
            serialize=False,
        ),
    )


def _timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "original_price_cents",
                    models.PositiveBigIntegerField(help_text="Quoted price in cents at order creation"),
                ),
                (
                    "current_price_cents",
                    models.PositiveBigIntegerField(help_text="Price in cents after approved adjustments"),
                ),
                (
                    "currency",
                    models.CharField(default="usd", help_text="ISO 4217 currency code", max_length=3),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("created", "Created"),
                            ("authorized", "Authorized"),
                            ("price_negotiating", "Price Negotiating"),
                            ("fulfillment_pending", "Fulfillment Pending"),
                            ("captured", "Captured"),
                            ("payout_scheduled", "Payout Scheduled"),
                            ("completed", "Completed"),
                            ("refunded", "Refunded"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="created",
                        help_text="Current escrow lifecycle state",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "fulfillment_trigger",
                    models.CharField(
                        choices=[
                            ("delivery_confirmed", "Delivery Confirmed"),
                            ("proof_approved", "Proof Approved"),
                            ("service_completed", "Service Completed"),
                        ],
                        default="service_completed",
                        help_text="Event that makes the order capturable",
                        max_length=32,
                    ),
                ),
                (
                    "fulfilled_at",
                    models.DateTimeField(blank=True, help_text="When the fulfillment trigger fired", null=True),
                ),
                (
                    "refund_policy",
                    models.CharField(
                        choices=[
                            ("fully_refundable", "Fully Refundable"),
                            ("partially_refundable", "Partially Refundable"),
                            ("non_refundable", "Non-Refundable"),
                        ],
                        default="fully_refundable",
                        help_text="Refund policy negotiated for this order",
                        max_length=32,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                ("authorized_at", models.DateTimeField(blank=True, null=True)),
                ("captured_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "cancellation_reason",
                    models.TextField(blank=True, default="", help_text="Why the order was cancelled"),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata (booking or production order refs)",
                    ),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        help_text="User paying for the order",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_orders_as_customer",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "provider",
                    models.ForeignKey(
                        help_text="User delivering the order and receiving the payout",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_orders_as_provider",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow Order",
                "verbose_name_plural": "Escrow Orders",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["customer", "status"], name="escrow_order_cust_status_idx"),
                    models.Index(fields=["provider", "status"], name="escrow_order_prov_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("original_price_cents__gt", 0)),
                        name="escrow_order_original_price_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("current_price_cents__gt", 0)),
                        name="escrow_order_current_price_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentInstrument",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "processor_customer_id",
                    models.CharField(help_text="Stripe Customer ID (cus_xxx)", max_length=255),
                ),
                (
                    "processor_payment_method_id",
                    models.CharField(
                        help_text="Stripe PaymentMethod ID (pm_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("brand", models.CharField(blank=True, default="", max_length=32)),
                ("last4", models.CharField(blank=True, default="", max_length=4)),
                ("exp_month", models.PositiveSmallIntegerField()),
                ("exp_year", models.PositiveSmallIntegerField()),
                ("is_default", models.BooleanField(default=False)),
                ("is_active", models.BooleanField(db_index=True, default=True)),
                (
                    "customer",
                    models.ForeignKey(
                        help_text="Card owner",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_instruments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Instrument",
                "verbose_name_plural": "Payment Instruments",
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_default", True)),
                        fields=("customer",),
                        name="one_default_instrument_per_customer",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuthorizationHold",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                ("amount_cents", models.PositiveBigIntegerField(help_text="Authorized amount in cents")),
                ("currency", models.CharField(default="usd", max_length=3)),
                (
                    "is_supplementary",
                    models.BooleanField(default=False, help_text="Created for an approved price increase"),
                ),
                (
                    "processor_reference",
                    models.CharField(
                        blank=True,
                        help_text="Stripe PaymentIntent ID (pi_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending_confirmation", "Pending Confirmation"),
                            ("requires_capture", "Requires Capture"),
                            ("captured", "Captured"),
                            ("canceled", "Canceled"),
                            ("expired", "Expired"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending_confirmation",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "authorized_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="When the hold was requested",
                    ),
                ),
                ("expires_at", models.DateTimeField(db_index=True, help_text="Processor capture ceiling")),
                ("confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("captured_at", models.DateTimeField(blank=True, null=True)),
                (
                    "released_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the hold was cancelled or expired",
                        null=True,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, default="")),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="authorization_holds",
                        to="escrow.order",
                    ),
                ),
                (
                    "instrument",
                    models.ForeignKey(
                        help_text="Payment method the hold was placed on",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="authorization_holds",
                        to="escrow.paymentinstrument",
                    ),
                ),
            ],
            options={
                "verbose_name": "Authorization Hold",
                "verbose_name_plural": "Authorization Holds",
                "ordering": ["authorized_at"],
                "indexes": [
                    models.Index(fields=["order", "status"], name="escrow_hold_order_status_idx"),
                    models.Index(fields=["status", "expires_at"], name="escrow_hold_status_exp_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="authorization_hold_amount_positive",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(
                            ("is_supplementary", False),
                            ("status__in", ["pending_confirmation", "requires_capture"]),
                        ),
                        fields=("order",),
                        name="one_active_primary_hold_per_order",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PriceAdjustmentRequest",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "original_price_cents",
                    models.PositiveBigIntegerField(help_text="Order price when the request was made"),
                ),
                (
                    "adjusted_price_cents",
                    models.PositiveBigIntegerField(help_text="Price proposed by the provider"),
                ),
                (
                    "adjustment_amount_cents",
                    models.BigIntegerField(help_text="Signed difference (adjusted - original)"),
                ),
                (
                    "adjustment_type",
                    models.CharField(
                        choices=[("increase", "Increase"), ("decrease", "Decrease")],
                        max_length=16,
                    ),
                ),
                ("justification", models.TextField(help_text="Provider's reason for the change")),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("approved", "Approved"),
                            ("rejected", "Rejected"),
                            ("expired", "Expired"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("requested_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "response_deadline",
                    models.DateTimeField(
                        db_index=True,
                        help_text="Customer must respond before this time",
                    ),
                ),
                ("responded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="price_adjustments",
                        to="escrow.order",
                    ),
                ),
                (
                    "requested_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "responded_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "supplementary_hold",
                    models.OneToOneField(
                        blank=True,
                        help_text="Hold created for an approved increase",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="price_adjustment",
                        to="escrow.authorizationhold",
                    ),
                ),
            ],
            options={
                "verbose_name": "Price Adjustment Request",
                "verbose_name_plural": "Price Adjustment Requests",
                "ordering": ["-requested_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "response_deadline"],
                        name="escrow_adj_status_deadline_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "pending")),
                        fields=("order",),
                        name="one_pending_adjustment_per_order",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            (
                                "adjustment_amount_cents",
                                models.F("adjusted_price_cents") - models.F("original_price_cents"),
                            )
                        ),
                        name="adjustment_amount_matches_prices",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("adjustment_type", "increase"), ("adjustment_amount_cents__gt", 0)),
                            models.Q(("adjustment_type", "decrease"), ("adjustment_amount_cents__lt", 0)),
                            _connector="OR",
                        ),
                        name="adjustment_sign_matches_type",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CaptureRecord",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                ("captured_amount_cents", models.PositiveBigIntegerField()),
                ("platform_fee_cents", models.PositiveBigIntegerField()),
                ("provider_net_cents", models.PositiveBigIntegerField()),
                (
                    "fee_percent",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Platform fee rate applied at capture time",
                        max_digits=5,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("pending", "Pending"), ("succeeded", "Succeeded"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "processor_attempted_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Set right before the processor is called",
                        null=True,
                    ),
                ),
                (
                    "needs_reconciliation",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="Processor outcome unknown; confirm remote state before retrying",
                    ),
                ),
                ("captured_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, default="")),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="captures",
                        to="escrow.order",
                    ),
                ),
                (
                    "authorization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="captures",
                        to="escrow.authorizationhold",
                    ),
                ),
            ],
            options={
                "verbose_name": "Capture Record",
                "verbose_name_plural": "Capture Records",
                "ordering": ["created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "failed"), _negated=True),
                        fields=("order", "authorization"),
                        name="one_capture_per_order_authorization",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            (
                                "captured_amount_cents",
                                models.F("platform_fee_cents") + models.F("provider_net_cents"),
                            )
                        ),
                        name="capture_split_sums_to_amount",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PayoutSchedule",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("currency", models.CharField(default="usd", max_length=3)),
                ("scheduled_release_at", models.DateTimeField(db_index=True)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("scheduled", "Scheduled"),
                            ("released", "Released"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="scheduled",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, default="")),
                (
                    "provider",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payout_schedules",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payout_schedules",
                        to="escrow.order",
                    ),
                ),
                (
                    "replaces",
                    models.OneToOneField(
                        blank=True,
                        help_text="Cancelled schedule this one supersedes",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="replaced_by",
                        to="escrow.payoutschedule",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout Schedule",
                "verbose_name_plural": "Payout Schedules",
                "ordering": ["scheduled_release_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "scheduled_release_at"],
                        name="escrow_payout_status_rel_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="payout_schedule_amount_positive",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status", "scheduled")),
                        fields=("order",),
                        name="one_scheduled_payout_per_order",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RefundRecord",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                ("refund_amount_cents", models.PositiveBigIntegerField()),
                (
                    "provider_clawback_cents",
                    models.PositiveBigIntegerField(default=0, help_text="Provider's share of the refund"),
                ),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("cancelled", "Cancelled"),
                            ("disputed", "Disputed"),
                            ("service_not_provided", "Service Not Provided"),
                            ("quality_issue", "Quality Issue"),
                            ("no_show", "No Show"),
                            ("other", "Other"),
                        ],
                        default="other",
                        max_length=32,
                    ),
                ),
                ("note", models.TextField(blank=True, default="")),
                (
                    "processor_refund_reference",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Refund ID (re_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("pending", "Pending"), ("succeeded", "Succeeded"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("processor_attempted_at", models.DateTimeField(blank=True, null=True)),
                ("needs_reconciliation", models.BooleanField(db_index=True, default=False)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, default="")),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="escrow.order",
                    ),
                ),
                (
                    "capture",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="escrow.capturerecord",
                    ),
                ),
                (
                    "initiated_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Refund Record",
                "verbose_name_plural": "Refund Records",
                "ordering": ["created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("refund_amount_cents__gt", 0)),
                        name="refund_record_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("provider_clawback_cents__lte", models.F("refund_amount_cents"))),
                        name="refund_clawback_within_amount",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="EscrowEvent",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("order_created", "Order Created"),
                            ("payment_authorized", "Payment Authorized"),
                            ("authorization_expired", "Authorization Expired"),
                            ("authorization_cancelled", "Authorization Cancelled"),
                            ("price_adjustment_requested", "Price Adjustment Requested"),
                            ("price_adjustment_approved", "Price Adjustment Approved"),
                            ("price_adjustment_rejected", "Price Adjustment Rejected"),
                            ("price_adjustment_expired", "Price Adjustment Expired"),
                            ("price_adjustment_cancelled", "Price Adjustment Cancelled"),
                            ("payment_captured", "Payment Captured"),
                            ("payout_scheduled", "Payout Scheduled"),
                            ("payout_released", "Payout Released"),
                            ("refund_issued", "Refund Issued"),
                            ("order_cancelled", "Order Cancelled"),
                        ],
                        db_index=True,
                        max_length=64,
                    ),
                ),
                ("payload", models.JSONField(blank=True, default=dict)),
                (
                    "dispatch_status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("dispatched", "Dispatched"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("attempts", models.PositiveSmallIntegerField(default=0)),
                ("last_error", models.TextField(blank=True, default="")),
                ("dispatched_at", models.DateTimeField(blank=True, null=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="events",
                        to="escrow.order",
                    ),
                ),
                (
                    "recipient",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="escrow_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow Event",
                "verbose_name_plural": "Escrow Events",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["dispatch_status", "created_at"], name="escrow_event_dispatch_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "processor_event_id",
                    models.CharField(help_text="Stripe Event ID (evt_xxx)", max_length=255, unique=True),
                ),
                ("event_type", models.CharField(db_index=True, max_length=100)),
                ("payload", models.JSONField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, default="")),
                ("retry_count", models.PositiveSmallIntegerField(default=0)),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "retry_count"], name="escrow_webhook_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="WalletTransaction",
            fields=[
                _uuid_pk(),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this transaction was recorded",
                    ),
                ),
                (
                    "amount_cents",
                    models.BigIntegerField(help_text="Signed amount in cents (credit positive, debit negative)"),
                ),
                (
                    "currency",
                    models.CharField(default="usd", help_text="ISO 4217 currency code", max_length=3),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("escrow_hold", "Escrow Hold"),
                            ("capture_debit", "Capture Debit"),
                            ("capture_credit", "Capture Credit"),
                            ("payout", "Payout"),
                            ("refund", "Refund"),
                            ("adjustment", "Adjustment"),
                        ],
                        db_index=True,
                        help_text="Category of this movement",
                        max_length=32,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")],
                        db_index=True,
                        default="completed",
                        help_text="Settlement status",
                        max_length=16,
                    ),
                ),
                (
                    "idempotency_key",
                    models.CharField(
                        help_text="Unique key to prevent duplicate rows",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "description",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Human-readable description",
                        max_length=255,
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON data (hold, capture or refund ids)",
                    ),
                ),
                (
                    "settled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When a pending transaction was finalized",
                        null=True,
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        help_text="Wallet owner",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wallet_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "related_order",
                    models.ForeignKey(
                        blank=True,
                        help_text="Escrow order that caused this movement",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wallet_transactions",
                        to="escrow.order",
                    ),
                ),
            ],
            options={
                "verbose_name": "Wallet Transaction",
                "verbose_name_plural": "Wallet Transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "status"], name="wallet_tx_user_status_idx"),
                    models.Index(fields=["related_order", "kind"], name="wallet_tx_order_kind_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents", 0), _negated=True),
                        name="wallet_transaction_amount_nonzero",
                    ),
                ],
            },
        ),
    ]
