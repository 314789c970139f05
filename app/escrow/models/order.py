"""
Order model: the escrow lifecycle of one booking or production order.

Usage:
    from escrow.models import Order
    from escrow.state_machines import OrderState, FulfillmentTrigger

    order = Order.objects.create(
        customer=customer,
        provider=provider,
        original_price_cents=30000,
        current_price_cents=30000,
        fulfillment_trigger=FulfillmentTrigger.DELIVERY_CONFIRMED,
    )

    order.authorize()   # created -> authorized
    order.save()        # version 1 -> 2
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone
from django_fsm import RETURN_VALUE, FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import FulfillmentTrigger, OrderState, RefundPolicy

# Orders whose price may still change and whose holds are still live
OPEN_STATES = (
    OrderState.CREATED,
    OrderState.AUTHORIZED,
    OrderState.PRICE_NEGOTIATING,
    OrderState.FULFILLMENT_PENDING,
)

REFUNDABLE_STATES = (
    OrderState.CAPTURED,
    OrderState.PAYOUT_SCHEDULED,
    OrderState.COMPLETED,
)


class Order(UUIDPrimaryKeyMixin, BaseModel):
    """
    Money-side view of an order between a customer and a provider.

    ``original_price_cents`` is the quoted price and never changes.
    ``current_price_cents`` follows approved price adjustments and is
    frozen once the order is captured.

    State Flow:
        CREATED -> AUTHORIZED -> (PRICE_NEGOTIATING -> AUTHORIZED)*
            -> FULFILLMENT_PENDING -> CAPTURED -> PAYOUT_SCHEDULED -> COMPLETED

    Cancellation: any open state -> CANCELLED (holds released)
    Refund: CAPTURED/PAYOUT_SCHEDULED/COMPLETED -> REFUNDED once fully refunded

    Note:
        ``version`` is incremented on every save. Mutations must run under
        escrow.locks.order_lock() with the row selected for update.
    """

    # ==========================================================================
    # Parties
    # ==========================================================================

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_orders_as_customer",
        help_text="User paying for the order",
    )
    provider = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_orders_as_provider",
        help_text="User delivering the order and receiving the payout",
    )

    # ==========================================================================
    # Pricing
    # ==========================================================================

    original_price_cents = models.PositiveBigIntegerField(
        help_text="Quoted price in cents at order creation",
    )
    current_price_cents = models.PositiveBigIntegerField(
        help_text="Price in cents after approved adjustments",
    )
    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=OrderState.CREATED,
        choices=OrderState.choices,
        db_index=True,
        protected=True,
        help_text="Current escrow lifecycle state",
    )
    fulfillment_trigger = models.CharField(
        max_length=32,
        choices=FulfillmentTrigger.choices,
        default=FulfillmentTrigger.SERVICE_COMPLETED,
        help_text="Event that makes the order capturable",
    )
    fulfilled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the fulfillment trigger fired",
    )
    refund_policy = models.CharField(
        max_length=32,
        choices=RefundPolicy.choices,
        default=RefundPolicy.FULLY_REFUNDABLE,
        help_text="Refund policy negotiated for this order",
    )

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    authorized_at = models.DateTimeField(null=True, blank=True)
    captured_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    cancellation_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the order was cancelled",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata (booking or production order refs)",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Escrow Order"
        verbose_name_plural = "Escrow Orders"
        indexes = [
            models.Index(fields=["customer", "status"], name="escrow_order_cust_status_idx"),
            models.Index(fields=["provider", "status"], name="escrow_order_prov_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(original_price_cents__gt=0),
                name="escrow_order_original_price_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(current_price_cents__gt=0),
                name="escrow_order_current_price_positive",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"Order({self.id}, {self.status}, "
            f"{self.current_price_cents / 100:.2f} {self.currency.upper()})"
        )

    def save(self, *args, **kwargs):
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATES

    @property
    def is_price_frozen(self) -> bool:
        return self.status not in OPEN_STATES

    @property
    def is_fulfilled(self) -> bool:
        return self.fulfilled_at is not None

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=OrderState.CREATED, target=OrderState.AUTHORIZED)
    def authorize(self):
        self.authorized_at = timezone.now()

    @transition(
        field=status,
        source=[OrderState.AUTHORIZED, OrderState.FULFILLMENT_PENDING],
        target=OrderState.PRICE_NEGOTIATING,
    )
    def begin_negotiation(self):
        """Provider proposed a new price; capture waits for the answer."""

    @transition(
        field=status,
        source=OrderState.PRICE_NEGOTIATING,
        target=RETURN_VALUE(OrderState.AUTHORIZED, OrderState.FULFILLMENT_PENDING),
    )
    def end_negotiation(self):
        """
        Leave negotiation once the request is resolved.

        Returns to FULFILLMENT_PENDING when the trigger fired meanwhile.
        """
        if self.fulfilled_at is not None:
            return OrderState.FULFILLMENT_PENDING
        return OrderState.AUTHORIZED

    @transition(
        field=status,
        source=OrderState.AUTHORIZED,
        target=OrderState.FULFILLMENT_PENDING,
    )
    def mark_fulfilled(self):
        if self.fulfilled_at is None:
            self.fulfilled_at = timezone.now()

    @transition(
        field=status,
        source=OrderState.FULFILLMENT_PENDING,
        target=OrderState.CAPTURED,
    )
    def capture(self):
        self.captured_at = timezone.now()

    @transition(
        field=status,
        source=OrderState.CAPTURED,
        target=OrderState.PAYOUT_SCHEDULED,
    )
    def schedule_payout(self):
        pass

    @transition(
        field=status,
        source=OrderState.PAYOUT_SCHEDULED,
        target=OrderState.COMPLETED,
    )
    def complete(self):
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=list(REFUNDABLE_STATES),
        target=OrderState.REFUNDED,
    )
    def refund_full(self):
        """Nothing refundable remains."""
        self.refunded_at = timezone.now()

    @transition(
        field=status,
        source=list(OPEN_STATES),
        target=OrderState.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason
