"""
PaymentInstrument model: a customer's saved card at the processor.

Only the processor's ids and display data are stored; card numbers never
reach this service.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class PaymentInstrumentQuerySet(models.QuerySet):
    def usable(self):
        """Active instruments whose expiry month has not passed."""
        today = timezone.now().date()
        return self.filter(is_active=True).filter(
            models.Q(exp_year__gt=today.year)
            | models.Q(exp_year=today.year, exp_month__gte=today.month)
        )


class PaymentInstrument(UUIDPrimaryKeyMixin, BaseModel):
    """
    Saved payment method used to authorize escrow holds.

    Fields:
        processor_customer_id: Stripe Customer ID (cus_xxx)
        processor_payment_method_id: Stripe PaymentMethod ID (pm_xxx)
        is_default: Used when authorize() is called without an instrument
    """

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="payment_instruments",
        help_text="Card owner",
    )
    processor_customer_id = models.CharField(
        max_length=255,
        help_text="Stripe Customer ID (cus_xxx)",
    )
    processor_payment_method_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe PaymentMethod ID (pm_xxx)",
    )
    brand = models.CharField(max_length=32, blank=True, default="")
    last4 = models.CharField(max_length=4, blank=True, default="")
    exp_month = models.PositiveSmallIntegerField()
    exp_year = models.PositiveSmallIntegerField()
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True, db_index=True)

    objects = PaymentInstrumentQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Instrument"
        verbose_name_plural = "Payment Instruments"
        constraints = [
            models.UniqueConstraint(
                fields=["customer"],
                condition=models.Q(is_default=True),
                name="one_default_instrument_per_customer",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.brand or 'card'} •••• {self.last4}"

    @property
    def is_expired(self) -> bool:
        today = timezone.now().date()
        return (self.exp_year, self.exp_month) < (today.year, today.month)

    @property
    def is_usable(self) -> bool:
        return self.is_active and not self.is_expired
