"""
Payout release worker.

Tasks:
- release_due_payouts: Periodic scan for schedules past their release time
- release_single_payout: Release one schedule under the order lock
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from escrow.services.payout_scheduler import PayoutScheduler

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


@shared_task(bind=True)
def release_due_payouts(self) -> dict:
    """
    Queue a release task for every Scheduled payout that is due.

    Returns:
        Dict with queued_count
    """
    logger.info("Starting payout release scan")

    queued_count = 0
    for schedule in PayoutScheduler.due_schedules()[:BATCH_SIZE]:
        try:
            release_single_payout.delay(str(schedule.id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue payout release: {e}",
                extra={"payout_schedule_id": str(schedule.id), "order_id": str(schedule.order_id)},
            )

    logger.info(
        f"Payout release scan complete: queued {queued_count} payouts",
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
def release_single_payout(self, schedule_id: str) -> dict:
    """
    Release one payout schedule.

    Returns:
        Dict with status: "released", "skipped", "frozen", "not_found",
        "lock_failed" or "failed"
    """
    from escrow.services import EscrowOrchestrator
    from escrow.state_machines import PayoutStatus

    try:
        schedule_uuid = UUID(str(schedule_id))
    except ValueError:
        logger.error(f"Invalid payout schedule id format: {schedule_id}")
        return {"status": "not_found", "payout_schedule_id": schedule_id, "error": "Invalid UUID format"}

    result = EscrowOrchestrator.release_payout(schedule_uuid, blocking=False)

    if result.success:
        released = result.data is not None and result.data.status == PayoutStatus.RELEASED
        return {
            "status": "released" if released else "skipped",
            "payout_schedule_id": schedule_id,
        }

    if result.error_code == "PAYOUT_SCHEDULE_NOT_FOUND":
        return {"status": "not_found", "payout_schedule_id": schedule_id}

    if result.error_code == "LOCK_ACQUISITION_FAILED":
        return {"status": "lock_failed", "payout_schedule_id": schedule_id, "error": result.error}

    if result.error_code == "PAYOUT_FROZEN":
        return {"status": "frozen", "payout_schedule_id": schedule_id}

    logger.error(
        f"Payout release failed: {result.error}",
        extra={"payout_schedule_id": schedule_id, "error_code": result.error_code},
    )
    return {
        "status": "failed",
        "payout_schedule_id": schedule_id,
        "error": result.error,
        "error_code": result.error_code,
    }
