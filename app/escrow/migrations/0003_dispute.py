import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0002_add_celery_beat_schedules"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Dispute",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
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
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "dispute_type",
                    models.CharField(
                        choices=[
                            ("quality", "Service Quality Issue"),
                            ("no_show", "Provider No-Show"),
                            ("cancellation", "Improper Cancellation"),
                            ("payment", "Payment Issue"),
                            ("other", "Other Issue"),
                        ],
                        max_length=32,
                    ),
                ),
                ("description", models.TextField()),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("open", "Open"), ("resolved", "Resolved"), ("withdrawn", "Withdrawn")],
                        db_index=True,
                        default="open",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "resolution",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("full_refund", "Full Refund"),
                            ("partial_refund", "Partial Refund"),
                            ("no_refund", "No Refund"),
                        ],
                        default="",
                        max_length=32,
                    ),
                ),
                ("resolution_note", models.TextField(blank=True, default="")),
                ("refund_amount_cents", models.PositiveBigIntegerField(default=0)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="disputes",
                        to="escrow.order",
                    ),
                ),
                (
                    "filed_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="filed_disputes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "resolved_by",
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
                "verbose_name": "Dispute",
                "verbose_name_plural": "Disputes",
                "ordering": ["created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "open")),
                        fields=("order",),
                        name="one_open_dispute_per_order",
                    ),
                ],
            },
        ),
        migrations.AlterField(
            model_name="escrowevent",
            name="event_type",
            field=models.CharField(
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
                    ("dispute_opened", "Dispute Opened"),
                    ("dispute_resolved", "Dispute Resolved"),
                    ("dispute_withdrawn", "Dispute Withdrawn"),
                ],
                db_index=True,
                max_length=64,
            ),
        ),
    ]
