"""
AuthorizationHold model: funds reserved on the customer's card.

Each hold maps to one manual-capture PaymentIntent at the processor. An
order has at most one active primary hold; every approved price increase
adds a supplementary hold for the delta.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import HoldStatus

ACTIVE_HOLD_STATES = (HoldStatus.PENDING_CONFIRMATION, HoldStatus.REQUIRES_CAPTURE)


class AuthorizationHoldQuerySet(models.QuerySet):
    def active(self):
        return self.filter(status__in=ACTIVE_HOLD_STATES)

    def capture_order(self):
        """Primary hold first, then supplementary holds oldest first."""
        return self.order_by("is_supplementary", "authorized_at", "created_at")


class AuthorizationHold(UUIDPrimaryKeyMixin, BaseModel):
    """
    Processor-side reservation of funds for an order.

    State Flow:
        PENDING_CONFIRMATION -> REQUIRES_CAPTURE -> CAPTURED
        PENDING_CONFIRMATION/REQUIRES_CAPTURE -> CANCELED | EXPIRED
        PENDING_CONFIRMATION -> FAILED

    Note:
        ``expires_at`` is the processor's capture ceiling. A hold past it
        is never capturable, even before the expiry sweep has run.
    """

    order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        related_name="authorization_holds",
    )
    instrument = models.ForeignKey(
        "escrow.PaymentInstrument",
        on_delete=models.PROTECT,
        related_name="authorization_holds",
        help_text="Payment method the hold was placed on",
    )
    amount_cents = models.PositiveBigIntegerField(
        help_text="Authorized amount in cents",
    )
    currency = models.CharField(max_length=3, default="usd")
    is_supplementary = models.BooleanField(
        default=False,
        help_text="Created for an approved price increase",
    )
    processor_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe PaymentIntent ID (pi_xxx)",
    )
    status = FSMField(
        default=HoldStatus.PENDING_CONFIRMATION,
        choices=HoldStatus.choices,
        db_index=True,
        protected=True,
    )
    authorized_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the hold was requested",
    )
    expires_at = models.DateTimeField(
        db_index=True,
        help_text="Processor capture ceiling",
    )
    confirmed_at = models.DateTimeField(null=True, blank=True)
    captured_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the hold was cancelled or expired",
    )
    failure_reason = models.TextField(blank=True, default="")

    objects = AuthorizationHoldQuerySet.as_manager()

    class Meta:
        ordering = ["authorized_at"]
        verbose_name = "Authorization Hold"
        verbose_name_plural = "Authorization Holds"
        indexes = [
            models.Index(fields=["order", "status"], name="escrow_hold_order_status_idx"),
            models.Index(fields=["status", "expires_at"], name="escrow_hold_status_exp_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="authorization_hold_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["order"],
                condition=models.Q(
                    is_supplementary=False,
                    status__in=[HoldStatus.PENDING_CONFIRMATION, HoldStatus.REQUIRES_CAPTURE],
                ),
                name="one_active_primary_hold_per_order",
            ),
        ]

    def __str__(self) -> str:
        kind = "supplementary" if self.is_supplementary else "primary"
        return f"AuthorizationHold({self.id}, {kind}, {self.status}, {self.amount_cents})"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_HOLD_STATES

    @property
    def is_expired(self) -> bool:
        return self.status == HoldStatus.EXPIRED or self.expires_at <= timezone.now()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=HoldStatus.PENDING_CONFIRMATION,
        target=HoldStatus.REQUIRES_CAPTURE,
    )
    def confirm(self):
        self.confirmed_at = timezone.now()

    @transition(
        field=status,
        source=HoldStatus.REQUIRES_CAPTURE,
        target=HoldStatus.CAPTURED,
    )
    def mark_captured(self):
        self.captured_at = timezone.now()

    @transition(field=status, source=list(ACTIVE_HOLD_STATES), target=HoldStatus.CANCELED)
    def cancel(self, reason: str = ""):
        self.released_at = timezone.now()
        self.failure_reason = reason

    @transition(field=status, source=list(ACTIVE_HOLD_STATES), target=HoldStatus.EXPIRED)
    def expire(self):
        self.released_at = timezone.now()

    @transition(
        field=status,
        source=HoldStatus.PENDING_CONFIRMATION,
        target=HoldStatus.FAILED,
    )
    def fail(self, reason: str = ""):
        self.failure_reason = reason
