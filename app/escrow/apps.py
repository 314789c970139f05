"""
Escrow app configuration.

Owns the money side of an order: authorization holds, price adjustments,
capture, payout scheduling, refunds and the wallet ledger.
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"
