"""
Wallet ledger model.

WalletTransaction is an append-only journal of every monetary effect an
escrow order has on a customer or provider. Balances are never stored;
they are summed from Completed rows.

Usage:
    from escrow.wallet.models import WalletTransaction, WalletTransactionKind

    WalletTransaction.objects.filter(user=provider, status="pending")
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import Q

from core.model_mixins import UUIDPrimaryKeyMixin
from escrow.wallet.exceptions import LedgerImmutableError


class WalletTransactionKind(models.TextChoices):
    """
    Category of a wallet row.

    Values:
        ESCROW_HOLD: Funds reserved by an authorization (negative), or the
            release of that reservation (positive)
        CAPTURE_DEBIT: Customer charged at capture
        CAPTURE_CREDIT: Provider's net earnings from a capture
        PAYOUT: Provider earnings paid out
        REFUND: Money returned to the customer
        ADJUSTMENT: Provider clawback after a refund
    """

    ESCROW_HOLD = "escrow_hold", "Escrow Hold"
    CAPTURE_DEBIT = "capture_debit", "Capture Debit"
    CAPTURE_CREDIT = "capture_credit", "Capture Credit"
    PAYOUT = "payout", "Payout"
    REFUND = "refund", "Refund"
    ADJUSTMENT = "adjustment", "Adjustment"


class WalletTransactionStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class WalletTransaction(UUIDPrimaryKeyMixin, models.Model):
    """
    One signed movement on a user's wallet.

    Fields:
        user: Wallet owner (customer or provider)
        amount_cents: Signed amount; never zero
        kind: WalletTransactionKind
        related_order: Escrow order that caused the movement
        status: Pending until settled, then Completed or Failed
        idempotency_key: Unique per logical movement
        settled_at: When a Pending row was finalized

    Invariants:
        - Rows are never deleted
        - The only update is Pending → Completed | Failed, once,
          touching only status and settled_at
    """

    SETTLEMENT_FIELDS = frozenset({"status", "settled_at"})

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this transaction was recorded",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="wallet_transactions",
        help_text="Wallet owner",
    )
    amount_cents = models.BigIntegerField(
        help_text="Signed amount in cents (credit positive, debit negative)",
    )
    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code",
    )
    kind = models.CharField(
        max_length=32,
        choices=WalletTransactionKind.choices,
        db_index=True,
        help_text="Category of this movement",
    )
    related_order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="wallet_transactions",
        help_text="Escrow order that caused this movement",
    )
    status = models.CharField(
        max_length=16,
        choices=WalletTransactionStatus.choices,
        default=WalletTransactionStatus.COMPLETED,
        db_index=True,
        help_text="Settlement status",
    )
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Unique key to prevent duplicate rows",
    )
    description = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Human-readable description",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON data (hold, capture or refund ids)",
    )
    settled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When a pending transaction was finalized",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Wallet Transaction"
        verbose_name_plural = "Wallet Transactions"
        indexes = [
            models.Index(fields=["user", "status"], name="wallet_tx_user_status_idx"),
            models.Index(fields=["related_order", "kind"], name="wallet_tx_order_kind_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~Q(amount_cents=0),
                name="wallet_transaction_amount_nonzero",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.get_kind_display()}: {self.amount_cents} cents ({self.status})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= self.SETTLEMENT_FIELDS:
                raise LedgerImmutableError(
                    "Wallet transactions are append-only",
                    details={"transaction_id": str(self.pk)},
                )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerImmutableError(
            "Wallet transactions cannot be deleted",
            details={"transaction_id": str(self.pk)},
        )
