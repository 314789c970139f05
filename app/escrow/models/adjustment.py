"""
PriceAdjustmentRequest model: a provider's proposal to change the price.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import AdjustmentStatus, AdjustmentType


class PriceAdjustmentRequest(UUIDPrimaryKeyMixin, BaseModel):
    """
    One round of price negotiation on an order.

    State Flow:
        PENDING -> APPROVED | REJECTED | EXPIRED | CANCELLED

    Invariants:
        - At most one PENDING request per order
        - adjustment_amount = adjusted_price - original_price, never zero
        - The sign of adjustment_amount matches adjustment_type
    """

    order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        related_name="price_adjustments",
    )
    original_price_cents = models.PositiveBigIntegerField(
        help_text="Order price when the request was made",
    )
    adjusted_price_cents = models.PositiveBigIntegerField(
        help_text="Price proposed by the provider",
    )
    adjustment_amount_cents = models.BigIntegerField(
        help_text="Signed difference (adjusted - original)",
    )
    adjustment_type = models.CharField(
        max_length=16,
        choices=AdjustmentType.choices,
    )
    justification = models.TextField(
        help_text="Provider's reason for the change",
    )
    status = FSMField(
        default=AdjustmentStatus.PENDING,
        choices=AdjustmentStatus.choices,
        db_index=True,
        protected=True,
    )
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="+",
    )
    requested_at = models.DateTimeField(default=timezone.now)
    response_deadline = models.DateTimeField(
        db_index=True,
        help_text="Customer must respond before this time",
    )
    responded_at = models.DateTimeField(null=True, blank=True)
    responded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    supplementary_hold = models.OneToOneField(
        "escrow.AuthorizationHold",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="price_adjustment",
        help_text="Hold created for an approved increase",
    )

    class Meta:
        ordering = ["-requested_at"]
        verbose_name = "Price Adjustment Request"
        verbose_name_plural = "Price Adjustment Requests"
        indexes = [
            models.Index(fields=["status", "response_deadline"], name="escrow_adj_status_deadline_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(status=AdjustmentStatus.PENDING),
                name="one_pending_adjustment_per_order",
            ),
            models.CheckConstraint(
                condition=Q(adjustment_amount_cents=F("adjusted_price_cents") - F("original_price_cents")),
                name="adjustment_amount_matches_prices",
            ),
            models.CheckConstraint(
                condition=(
                    Q(adjustment_type=AdjustmentType.INCREASE, adjustment_amount_cents__gt=0)
                    | Q(adjustment_type=AdjustmentType.DECREASE, adjustment_amount_cents__lt=0)
                ),
                name="adjustment_sign_matches_type",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"PriceAdjustmentRequest({self.id}, {self.adjustment_type}, "
            f"{self.original_price_cents} -> {self.adjusted_price_cents}, {self.status})"
        )

    @property
    def is_increase(self) -> bool:
        return self.adjustment_type == AdjustmentType.INCREASE

    @property
    def is_past_deadline(self) -> bool:
        return self.response_deadline <= timezone.now()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=AdjustmentStatus.PENDING, target=AdjustmentStatus.APPROVED)
    def approve(self, responder):
        self.responded_at = timezone.now()
        self.responded_by = responder

    @transition(field=status, source=AdjustmentStatus.PENDING, target=AdjustmentStatus.REJECTED)
    def reject(self, responder):
        self.responded_at = timezone.now()
        self.responded_by = responder

    @transition(field=status, source=AdjustmentStatus.PENDING, target=AdjustmentStatus.EXPIRED)
    def expire(self):
        pass

    @transition(field=status, source=AdjustmentStatus.PENDING, target=AdjustmentStatus.CANCELLED)
    def cancel(self):
        pass
