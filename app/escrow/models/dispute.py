"""
Dispute model: a complaint that freezes an order's payout until resolved.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import DisputeResolution, DisputeStatus, DisputeType


class Dispute(UUIDPrimaryKeyMixin, BaseModel):
    """
    Complaint filed by the customer or provider against a captured order.

    State Flow:
        OPEN -> RESOLVED   (staff, optionally with a refund)
        OPEN -> WITHDRAWN  (the filer)

    While a dispute is OPEN the order's scheduled payout is not released;
    the release sweep skips it and picks it up once the dispute closes.
    """

    order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        related_name="disputes",
    )
    filed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="filed_disputes",
    )
    dispute_type = models.CharField(max_length=32, choices=DisputeType.choices)
    description = models.TextField()
    status = FSMField(
        default=DisputeStatus.OPEN,
        choices=DisputeStatus.choices,
        db_index=True,
        protected=True,
    )
    resolution = models.CharField(
        max_length=32,
        choices=DisputeResolution.choices,
        blank=True,
        default="",
    )
    resolution_note = models.TextField(blank=True, default="")
    refund_amount_cents = models.PositiveBigIntegerField(default=0)
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Dispute"
        verbose_name_plural = "Disputes"
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=models.Q(status=DisputeStatus.OPEN),
                name="one_open_dispute_per_order",
            ),
        ]

    def __str__(self) -> str:
        return f"Dispute({self.id}, {self.status}, {self.dispute_type})"

    @property
    def is_open(self) -> bool:
        return self.status == DisputeStatus.OPEN

    @transition(field=status, source=DisputeStatus.OPEN, target=DisputeStatus.RESOLVED)
    def resolve(self, resolution: str, resolved_by, refund_amount_cents: int = 0, note: str = ""):
        self.resolution = resolution
        self.resolved_by = resolved_by
        self.refund_amount_cents = refund_amount_cents
        self.resolution_note = note
        self.resolved_at = timezone.now()

    @transition(field=status, source=DisputeStatus.OPEN, target=DisputeStatus.WITHDRAWN)
    def withdraw(self):
        self.resolved_at = timezone.now()
