"""
Data types for wallet ledger operations.

Types:
    Money: Amount in cents with a currency
    RecordTransactionParams: One wallet row to append
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from escrow.exceptions import InvalidAmount


@dataclass(frozen=True)
class Money:
    """
    A monetary amount in the smallest currency unit.

    Example:
        Money(cents=25000)          # $250.00 USD
        Money(cents=-3750, "usd")   # $-37.50 USD
    """

    cents: int
    currency: str = "usd"

    def __str__(self) -> str:
        return f"${self.cents / 100:.2f} {self.currency.upper()}"

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other)
        return Money(cents=self.cents + other.cents, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other)
        return Money(cents=self.cents - other.cents, currency=self.currency)

    def _check_currency(self, other: Money) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot combine Money in {self.currency} and {other.currency}"
            )


@dataclass
class RecordTransactionParams:
    """
    Parameters for appending a wallet transaction.

    Required Attributes:
        user_id: Wallet owner
        amount_cents: Signed amount; credits positive, debits negative
        kind: WalletTransactionKind value
        idempotency_key: Unique key; replays return the existing row

    Optional Attributes:
        order_id: Related escrow order
        status: Initial WalletTransactionStatus (Completed by default)
        currency: ISO 4217 code
        description: Human-readable description
        metadata: Arbitrary JSON-serializable data
    """

    user_id: Any
    amount_cents: int
    kind: str
    idempotency_key: str

    order_id: uuid.UUID | None = None
    status: str = "completed"
    currency: str = "usd"
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.amount_cents, int) or self.amount_cents == 0:
            raise InvalidAmount(
                "Wallet transaction amount must be a non-zero integer",
                details={"amount_cents": self.amount_cents},
            )
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
