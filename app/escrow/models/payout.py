"""
PayoutSchedule model: a provider payout waiting out the holding period.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import PayoutStatus


class PayoutSchedule(UUIDPrimaryKeyMixin, BaseModel):
    """
    Provider payout for a captured order.

    State Flow:
        SCHEDULED -> RELEASED
        SCHEDULED -> CANCELLED

    A refund against a scheduled payout cancels it and, when anything is
    left, creates a replacement schedule for the reduced amount pointing
    back through ``replaces``. Released rows are never modified.
    """

    provider = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payout_schedules",
    )
    order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        related_name="payout_schedules",
    )
    amount_cents = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3, default="usd")
    scheduled_release_at = models.DateTimeField(db_index=True)
    status = FSMField(
        default=PayoutStatus.SCHEDULED,
        choices=PayoutStatus.choices,
        db_index=True,
        protected=True,
    )
    released_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True, default="")
    replaces = models.OneToOneField(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="replaced_by",
        help_text="Cancelled schedule this one supersedes",
    )

    class Meta:
        ordering = ["scheduled_release_at"]
        verbose_name = "Payout Schedule"
        verbose_name_plural = "Payout Schedules"
        indexes = [
            models.Index(fields=["status", "scheduled_release_at"], name="escrow_payout_status_rel_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="payout_schedule_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["order"],
                condition=models.Q(status=PayoutStatus.SCHEDULED),
                name="one_scheduled_payout_per_order",
            ),
        ]

    def __str__(self) -> str:
        return f"PayoutSchedule({self.id}, {self.status}, {self.amount_cents})"

    @property
    def is_due(self) -> bool:
        return self.status == PayoutStatus.SCHEDULED and self.scheduled_release_at <= timezone.now()

    @transition(field=status, source=PayoutStatus.SCHEDULED, target=PayoutStatus.RELEASED)
    def release(self):
        self.released_at = timezone.now()

    @transition(field=status, source=PayoutStatus.SCHEDULED, target=PayoutStatus.CANCELLED)
    def cancel(self, reason: str = ""):
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason
