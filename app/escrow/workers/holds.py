"""
Authorization hold expiry worker.

Tasks:
- expire_authorization_holds: Periodic scan for holds past expires_at
- release_expired_hold: Expire one hold under the order lock

Usage:
    # Scheduled by celery-beat every 15 minutes
    from escrow.workers import expire_authorization_holds

    expire_authorization_holds.delay()
    release_expired_hold.delay(str(hold.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.utils import timezone

from escrow.models import AuthorizationHold
from escrow.models.authorization import ACTIVE_HOLD_STATES

logger = logging.getLogger(__name__)

# Maximum holds queued per scan
BATCH_SIZE = 100


@shared_task(bind=True)
def expire_authorization_holds(self) -> dict:
    """
    Queue an expiry task for every active hold past its capture ceiling.

    Idempotent: release_expired_hold re-checks the hold under the lock.

    Returns:
        Dict with queued_count
    """
    logger.info("Starting authorization hold expiry scan")

    expired_holds = AuthorizationHold.objects.filter(
        status__in=ACTIVE_HOLD_STATES,
        expires_at__lte=timezone.now(),
    ).order_by("expires_at")[:BATCH_SIZE]

    queued_count = 0
    for hold in expired_holds:
        try:
            release_expired_hold.delay(str(hold.id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue hold expiry: {e}",
                extra={"hold_id": str(hold.id), "order_id": str(hold.order_id)},
            )

    logger.info(
        f"Hold expiry scan complete: queued {queued_count} holds",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def release_expired_hold(self, hold_id: str) -> dict:
    """
    Expire one hold and release its wallet reservation.

    Returns:
        Dict with status: "expired", "skipped", "not_found", "lock_failed"
        or "failed"
    """
    from escrow.services import EscrowOrchestrator

    try:
        hold_uuid = UUID(str(hold_id))
    except ValueError:
        logger.error(f"Invalid hold_id format: {hold_id}")
        return {"status": "not_found", "hold_id": hold_id, "error": "Invalid UUID format"}

    if not AuthorizationHold.objects.filter(pk=hold_uuid).exists():
        logger.warning("AuthorizationHold not found", extra={"hold_id": hold_id})
        return {"status": "not_found", "hold_id": hold_id}

    result = EscrowOrchestrator.expire_hold(hold_uuid, blocking=False)

    if result.success:
        if result.data is None:
            return {"status": "skipped", "hold_id": hold_id}
        return {"status": "expired", "hold_id": hold_id, "order_id": str(result.data.order_id)}

    if result.error_code == "LOCK_ACQUISITION_FAILED":
        # Next scan retries it
        return {"status": "lock_failed", "hold_id": hold_id, "error": result.error}

    logger.error(
        f"Hold expiry failed: {result.error}",
        extra={"hold_id": hold_id, "error_code": result.error_code},
    )
    return {
        "status": "failed",
        "hold_id": hold_id,
        "error": result.error,
        "error_code": result.error_code,
    }
