"""
Wallet ledger.

An append-only journal of signed wallet movements per user. Every escrow
step that moves money (hold, capture, payout, refund, clawback) appends
rows here; balances are derived by summing them.

Models (import from escrow.wallet.models):
    WalletTransaction, WalletTransactionKind, WalletTransactionStatus

Services (import from escrow.wallet.services):
    WalletLedger, wallet

Types (import from escrow.wallet.types):
    Money, RecordTransactionParams
"""

from escrow.wallet.types import Money, RecordTransactionParams

__all__ = ["Money", "RecordTransactionParams"]
