"""
RefundRecord model: money returned to the customer against one capture.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import RefundReason, RefundStatus


class RefundRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Refund of part or all of a capture.

    A refund request spanning several captures (primary plus
    supplementary holds) writes one record per capture touched.

    State Flow:
        PENDING -> SUCCEEDED
        PENDING -> FAILED

    Note:
        PENDING rows count against the refundable amount so that a refund
        with an unknown processor outcome can never be issued twice.
    """

    order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        related_name="refunds",
    )
    capture = models.ForeignKey(
        "escrow.CaptureRecord",
        on_delete=models.PROTECT,
        related_name="refunds",
    )
    refund_amount_cents = models.PositiveBigIntegerField()
    provider_clawback_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Provider's share of the refund",
    )
    reason = models.CharField(
        max_length=32,
        choices=RefundReason.choices,
        default=RefundReason.OTHER,
    )
    note = models.TextField(blank=True, default="")
    initiated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    processor_refund_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Refund ID (re_xxx)",
    )
    status = FSMField(
        default=RefundStatus.PENDING,
        choices=RefundStatus.choices,
        db_index=True,
        protected=True,
    )
    processor_attempted_at = models.DateTimeField(null=True, blank=True)
    needs_reconciliation = models.BooleanField(default=False, db_index=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Refund Record"
        verbose_name_plural = "Refund Records"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(refund_amount_cents__gt=0),
                name="refund_record_amount_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(provider_clawback_cents__lte=models.F("refund_amount_cents")),
                name="refund_clawback_within_amount",
            ),
        ]

    def __str__(self) -> str:
        return f"RefundRecord({self.id}, {self.status}, {self.refund_amount_cents})"

    @transition(field=status, source=RefundStatus.PENDING, target=RefundStatus.SUCCEEDED)
    def succeed(self, processor_refund_reference: str | None = None):
        if processor_refund_reference:
            self.processor_refund_reference = processor_refund_reference
        self.completed_at = timezone.now()
        self.needs_reconciliation = False

    @transition(field=status, source=RefundStatus.PENDING, target=RefundStatus.FAILED)
    def fail(self, reason: str = ""):
        self.failure_reason = reason
        self.needs_reconciliation = False
