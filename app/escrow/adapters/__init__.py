"""
Payment processor adapters.

Usage:
    from escrow.adapters import StripeAdapter, IdempotencyKeyGenerator, call_with_retry
"""

from escrow.adapters.stripe_adapter import (
    IdempotencyKeyGenerator,
    PaymentIntentResult,
    RefundResult,
    StripeAdapter,
    backoff_delay,
    call_with_retry,
)

__all__ = [
    "IdempotencyKeyGenerator",
    "PaymentIntentResult",
    "RefundResult",
    "StripeAdapter",
    "backoff_delay",
    "call_with_retry",
]
