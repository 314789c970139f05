"""
CaptureRecord model: the charge taken from one authorization hold.
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import CaptureStatus


class CaptureRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Capture of one hold, with the platform/provider split.

    The record is written before the processor is called (PENDING) so that
    an interrupted capture leaves a trace reconciliation can resolve.

    State Flow:
        PENDING -> SUCCEEDED
        PENDING -> FAILED

    Invariants:
        - One live (non-failed) row per (order, authorization): replays
          find the same row
        - provider_net_cents + platform_fee_cents == captured_amount_cents
        - captured_amount_cents <= authorization.amount_cents
    """

    order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        related_name="captures",
    )
    authorization = models.ForeignKey(
        "escrow.AuthorizationHold",
        on_delete=models.PROTECT,
        related_name="captures",
    )
    captured_amount_cents = models.PositiveBigIntegerField()
    platform_fee_cents = models.PositiveBigIntegerField()
    provider_net_cents = models.PositiveBigIntegerField()
    fee_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        help_text="Platform fee rate applied at capture time",
    )
    status = FSMField(
        default=CaptureStatus.PENDING,
        choices=CaptureStatus.choices,
        db_index=True,
        protected=True,
    )
    processor_attempted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set right before the processor is called",
    )
    needs_reconciliation = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Processor outcome unknown; confirm remote state before retrying",
    )
    captured_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Capture Record"
        verbose_name_plural = "Capture Records"
        constraints = [
            models.UniqueConstraint(
                fields=["order", "authorization"],
                condition=~Q(status=CaptureStatus.FAILED),
                name="one_capture_per_order_authorization",
            ),
            models.CheckConstraint(
                condition=Q(captured_amount_cents=F("platform_fee_cents") + F("provider_net_cents")),
                name="capture_split_sums_to_amount",
            ),
        ]

    def __str__(self) -> str:
        return f"CaptureRecord({self.id}, {self.status}, {self.captured_amount_cents})"

    @transition(field=status, source=CaptureStatus.PENDING, target=CaptureStatus.SUCCEEDED)
    def succeed(self):
        self.captured_at = timezone.now()
        self.needs_reconciliation = False
        self.failure_reason = ""

    @transition(field=status, source=CaptureStatus.PENDING, target=CaptureStatus.FAILED)
    def fail(self, reason: str = ""):
        self.needs_reconciliation = False
        self.failure_reason = reason
