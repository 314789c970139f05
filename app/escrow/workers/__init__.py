"""
Celery workers for the escrow lifecycle.

Periodic sweeps (celery-beat, see migration 0002):
- expire_authorization_holds: every 15 minutes
- release_due_payouts: every 15 minutes
- expire_adjustment_requests: hourly, low priority
- dispatch_escrow_events: every minute and after each commit
- reconcile_pending_payments: every 30 minutes

Per-item tasks re-validate state under the order lock and never block on
it; an item whose lock is busy is picked up by the next sweep.
"""

from escrow.workers.adjustments import expire_adjustment_requests, expire_single_adjustment
from escrow.workers.holds import expire_authorization_holds, release_expired_hold
from escrow.workers.outbox import dispatch_escrow_events
from escrow.workers.payouts import release_due_payouts, release_single_payout
from escrow.workers.reconciliation import reconcile_order_payments, reconcile_pending_payments

__all__ = [
    "dispatch_escrow_events",
    "expire_adjustment_requests",
    "expire_authorization_holds",
    "expire_single_adjustment",
    "reconcile_order_payments",
    "reconcile_pending_payments",
    "release_due_payouts",
    "release_expired_hold",
    "release_single_payout",
]
