"""
Wallet ledger exceptions.

Hierarchy:
    BaseApplicationError (from core)
    └── WalletError
        ├── WalletTransactionNotFound
        └── LedgerImmutableError
"""

from __future__ import annotations

from core.exceptions import BaseApplicationError


class WalletError(BaseApplicationError):
    """Base class for wallet ledger errors."""

    default_error_code: str = "WALLET_ERROR"


class WalletTransactionNotFound(WalletError):
    default_error_code: str = "WALLET_TRANSACTION_NOT_FOUND"
    http_status: int = 404


class LedgerImmutableError(WalletError):
    """
    Raised on any attempt to change a recorded wallet transaction.

    The only permitted change is finalizing a Pending row to Completed or
    Failed, once. Corrections are new rows.
    """

    default_error_code: str = "LEDGER_IMMUTABLE"
    http_status: int = 409
