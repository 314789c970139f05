"""
Shared plumbing for escrow services.

- ProcessorBackedService: BaseService with an injectable processor adapter
- lock_order_row: select_for_update lookup used inside every mutation
- schedule_reconciliation: queue a processor state check for an order
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from django.db import transaction

from core.services import BaseService
from escrow.adapters import StripeAdapter
from escrow.exceptions import OrderNotFound
from escrow.models import Order

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class ProcessorBackedService(BaseService):
    """
    Base for services that talk to the payment processor.

    The adapter is shared by every subclass so tests swap it once:

        ProcessorBackedService.set_processor(FakeProcessor())
        ...
        ProcessorBackedService.set_processor(None)  # back to Stripe
    """

    _processor: Any = None

    @classmethod
    def get_processor(cls) -> Any:
        return ProcessorBackedService._processor or StripeAdapter

    @classmethod
    def set_processor(cls, processor: Any) -> None:
        ProcessorBackedService._processor = processor


def lock_order_row(order_id: uuid.UUID | str) -> Order:
    """
    Re-read an order with a row lock.

    Must be called inside transaction.atomic(), after order_lock() has been
    taken by the public entry point.

    Raises:
        OrderNotFound: No such order
    """
    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("lock_order_row() requires an open transaction")
    try:
        return Order.objects.select_for_update().get(pk=uuid.UUID(str(order_id)))
    except (Order.DoesNotExist, ValueError):
        raise OrderNotFound(
            f"Order {order_id} not found",
            details={"order_id": str(order_id)},
        )


def schedule_reconciliation(order_id: uuid.UUID | str, countdown: int = 60) -> None:
    """
    Queue reconciliation for an order whose processor outcome is unknown.

    The periodic reconciliation sweep picks up anything this fails to queue.
    """
    from escrow.workers.reconciliation import reconcile_order_payments

    try:
        reconcile_order_payments.apply_async(args=[str(order_id)], countdown=countdown)
    except Exception:
        logger.warning(
            "Could not queue order reconciliation",
            extra={"order_id": str(order_id)},
            exc_info=True,
        )
