"""
Wallet ledger service.

All wallet writes go through WalletLedger so that every row is idempotent
and the append-only rule holds.

Usage:
    from escrow.wallet.services import wallet
    from escrow.wallet.types import RecordTransactionParams

    wallet.record(RecordTransactionParams(
        user_id=customer.id,
        amount_cents=-25000,
        kind=WalletTransactionKind.ESCROW_HOLD,
        idempotency_key=f"hold:{hold.id}",
        order_id=order.id,
        status=WalletTransactionStatus.PENDING,
    ))

    wallet.balance(customer.id)          # Money of Completed rows
    wallet.pending_balance(provider.id)  # Money of Pending rows
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from escrow.wallet.exceptions import LedgerImmutableError, WalletTransactionNotFound
from escrow.wallet.models import (
    WalletTransaction,
    WalletTransactionKind,
    WalletTransactionStatus,
)
from escrow.wallet.types import Money, RecordTransactionParams

if TYPE_CHECKING:
    from typing import Any

    from django.db.models import QuerySet

logger = logging.getLogger(__name__)


class WalletLedger:
    """
    Append-only wallet journal.

    - Idempotent appends keyed by idempotency_key (safe to retry)
    - One-time settlement of Pending rows
    - Balances derived from rows, never stored

    Callers mutating an order's wallet rows are expected to hold that
    order's lock; the ledger itself only guards against duplicate keys.
    """

    @staticmethod
    def record(params: RecordTransactionParams) -> WalletTransaction:
        """
        Append one transaction, or return the existing row for its key.

        An existing row is returned unchanged even if the params differ.
        """
        return WalletLedger.record_many([params])[0]

    @staticmethod
    def record_many(batch: list[RecordTransactionParams]) -> list[WalletTransaction]:
        """
        Append several transactions atomically.

        Either every new row is written or none is. Rows whose key already
        exists are returned as they are.
        """
        results: list[WalletTransaction] = []
        if not batch:
            return results

        with transaction.atomic():
            for params in batch:
                existing = WalletTransaction.objects.filter(
                    idempotency_key=params.idempotency_key
                ).first()
                if existing is not None:
                    results.append(existing)
                    continue

                try:
                    with transaction.atomic():
                        row = WalletTransaction.objects.create(
                            user_id=params.user_id,
                            amount_cents=params.amount_cents,
                            currency=params.currency,
                            kind=params.kind,
                            related_order_id=params.order_id,
                            status=params.status,
                            idempotency_key=params.idempotency_key,
                            description=params.description,
                            metadata=params.metadata,
                            settled_at=(
                                None
                                if params.status == WalletTransactionStatus.PENDING
                                else timezone.now()
                            ),
                        )
                except IntegrityError:
                    # Concurrent writer won the unique key
                    row = WalletTransaction.objects.get(idempotency_key=params.idempotency_key)

                logger.debug(
                    "Wallet transaction recorded",
                    extra={
                        "transaction_id": str(row.id),
                        "user_id": str(row.user_id),
                        "kind": row.kind,
                        "amount_cents": row.amount_cents,
                        "idempotency_key": row.idempotency_key,
                    },
                )
                results.append(row)

        return results

    @staticmethod
    def settle(
        transaction_id: uuid.UUID,
        status: str = WalletTransactionStatus.COMPLETED,
    ) -> WalletTransaction:
        """
        Finalize a Pending transaction as Completed or Failed.

        Settling a row to the status it already has is a no-op, which keeps
        webhook replays harmless.

        Raises:
            WalletTransactionNotFound: Unknown id
            LedgerImmutableError: Row already finalized with another status,
                or ``status`` is not a final status
        """
        if status not in (WalletTransactionStatus.COMPLETED, WalletTransactionStatus.FAILED):
            raise LedgerImmutableError(
                f"Cannot settle a wallet transaction to '{status}'",
                details={"transaction_id": str(transaction_id)},
            )

        updated = WalletTransaction.objects.filter(
            pk=transaction_id,
            status=WalletTransactionStatus.PENDING,
        ).update(status=status, settled_at=timezone.now())

        try:
            row = WalletTransaction.objects.get(pk=transaction_id)
        except WalletTransaction.DoesNotExist:
            raise WalletTransactionNotFound(
                f"Wallet transaction {transaction_id} not found",
                details={"transaction_id": str(transaction_id)},
            )

        if not updated and row.status != status:
            raise LedgerImmutableError(
                f"Wallet transaction already settled as '{row.status}'",
                details={"transaction_id": str(transaction_id), "status": row.status},
            )
        return row

    @staticmethod
    def settle_by_key(idempotency_key: str, status: str) -> WalletTransaction | None:
        """Settle the row recorded under ``idempotency_key``, if any."""
        row = WalletTransaction.objects.filter(idempotency_key=idempotency_key).first()
        if row is None:
            return None
        return WalletLedger.settle(row.id, status)

    @staticmethod
    def settle_pending_for_order(
        user_id: Any,
        order_id: uuid.UUID,
        status: str = WalletTransactionStatus.COMPLETED,
    ) -> int:
        """
        Finalize every Pending row of ``user_id`` for an order.

        Used when a provider's payout is released (or fully offset by
        refunds) so their capture credit and netted clawbacks become real.

        Returns:
            Number of rows settled
        """
        count = WalletTransaction.objects.filter(
            user_id=user_id,
            related_order_id=order_id,
            status=WalletTransactionStatus.PENDING,
        ).update(status=status, settled_at=timezone.now())

        if count:
            logger.info(
                "Pending wallet transactions settled",
                extra={"user_id": str(user_id), "order_id": str(order_id), "count": count},
            )
        return count

    @staticmethod
    def balance(user_id: Any, currency: str = "usd") -> Money:
        """Sum of Completed rows."""
        return WalletLedger._sum(user_id, currency, WalletTransactionStatus.COMPLETED)

    @staticmethod
    def pending_balance(user_id: Any, currency: str = "usd") -> Money:
        """Sum of Pending rows (held or not yet released)."""
        return WalletLedger._sum(user_id, currency, WalletTransactionStatus.PENDING)

    @staticmethod
    def _sum(user_id: Any, currency: str, status: str) -> Money:
        total = WalletTransaction.objects.filter(
            user_id=user_id,
            currency=currency,
            status=status,
        ).aggregate(total=Coalesce(Sum("amount_cents"), 0))["total"]
        return Money(cents=total, currency=currency)

    @staticmethod
    def transactions_for_order(order_id: uuid.UUID) -> QuerySet[WalletTransaction]:
        return WalletTransaction.objects.filter(related_order_id=order_id).order_by("created_at")

    @staticmethod
    def transactions_for_user(user_id: Any, limit: int = 50) -> QuerySet[WalletTransaction]:
        return WalletTransaction.objects.filter(user_id=user_id).order_by("-created_at")[:limit]

    @staticmethod
    def order_total(order_id: uuid.UUID, user_id: Any, kind: WalletTransactionKind | str) -> int:
        """Net amount of one kind for a user on an order, excluding Failed rows."""
        return (
            WalletTransaction.objects.filter(
                related_order_id=order_id,
                user_id=user_id,
                kind=kind,
            )
            .exclude(status=WalletTransactionStatus.FAILED)
            .aggregate(total=Coalesce(Sum("amount_cents"), 0))["total"]
        )


# Singleton
wallet = WalletLedger()
