"""
Price adjustment expiry worker.

Tasks:
- expire_adjustment_requests: Hourly scan for unanswered requests
- expire_single_adjustment: Expire one request under the order lock
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.utils import timezone

from escrow.models import PriceAdjustmentRequest
from escrow.state_machines import AdjustmentStatus

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

# Expiry is housekeeping; money-moving tasks go first
EXPIRY_PRIORITY = 9


@shared_task(bind=True)
def expire_adjustment_requests(self) -> dict:
    """
    Queue an expiry task for every Pending request past its deadline.

    Returns:
        Dict with queued_count
    """
    overdue = PriceAdjustmentRequest.objects.filter(
        status=AdjustmentStatus.PENDING,
        response_deadline__lte=timezone.now(),
    ).order_by("response_deadline")[:BATCH_SIZE]

    queued_count = 0
    for request in overdue:
        try:
            expire_single_adjustment.apply_async(args=[str(request.id)], priority=EXPIRY_PRIORITY)
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue adjustment expiry: {e}",
                extra={"adjustment_id": str(request.id), "order_id": str(request.order_id)},
            )

    logger.info(
        f"Adjustment expiry scan complete: queued {queued_count} requests",
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
def expire_single_adjustment(self, request_id: str) -> dict:
    """
    Expire one overdue request.

    The deadline is re-checked under the order lock, so a customer answer
    that lands first wins.

    Returns:
        Dict with status: "expired", "skipped", "not_found", "lock_failed"
        or "failed"
    """
    from escrow.services import EscrowOrchestrator

    try:
        request_uuid = UUID(str(request_id))
    except ValueError:
        logger.error(f"Invalid adjustment id format: {request_id}")
        return {"status": "not_found", "adjustment_id": request_id, "error": "Invalid UUID format"}

    result = EscrowOrchestrator.expire_adjustment(request_uuid, blocking=False)

    if result.success:
        status = "skipped" if result.data is None else "expired"
        return {"status": status, "adjustment_id": request_id}

    if result.error_code == "ADJUSTMENT_NOT_FOUND":
        return {"status": "not_found", "adjustment_id": request_id}

    if result.error_code == "LOCK_ACQUISITION_FAILED":
        return {"status": "lock_failed", "adjustment_id": request_id, "error": result.error}

    logger.error(
        f"Adjustment expiry failed: {result.error}",
        extra={"adjustment_id": request_id, "error_code": result.error_code},
    )
    return {
        "status": "failed",
        "adjustment_id": request_id,
        "error": result.error,
        "error_code": result.error_code,
    }
