"""
Outbox writer for escrow notifications.

record_event() must be called inside the transaction that commits the
financial change it describes. Dispatch is scheduled only after that
transaction commits, so a notification can never roll back or block a
money movement.

Usage:
    with transaction.atomic():
        order.capture()
        order.save()
        EscrowEventService.record_event(
            order,
            EscrowEventType.PAYMENT_CAPTURED,
            recipients=[order.customer_id, order.provider_id],
            payload={"amount_cents": 25000},
        )
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

from core.services import BaseService
from escrow.models import EscrowEvent
from escrow.state_machines import EscrowEventType

if TYPE_CHECKING:
    from typing import Any

    from escrow.models import Order

logger = logging.getLogger(__name__)


class EscrowEventService(BaseService):
    """Appends EscrowEvent rows and triggers the dispatcher after commit."""

    @classmethod
    def record_event(
        cls,
        order: Order,
        event_type: EscrowEventType,
        recipients: list[Any],
        payload: dict[str, Any] | None = None,
    ) -> list[EscrowEvent]:
        base_payload = {
            "order_id": str(order.id),
            "order_status": order.status,
            "current_price_cents": order.current_price_cents,
            "currency": order.currency,
        }
        # Round-trip through the encoder so UUIDs and datetimes store as strings
        body = json.loads(json.dumps({**base_payload, **(payload or {})}, cls=DjangoJSONEncoder))

        events = [
            EscrowEvent.objects.create(
                order=order,
                recipient_id=recipient_id,
                event_type=event_type,
                payload=body,
            )
            for recipient_id in dict.fromkeys(recipients)
        ]

        cls.get_logger().info(
            "Escrow event recorded",
            extra={
                "order_id": str(order.id),
                "event_type": str(event_type),
                "recipient_count": len(events),
            },
        )
        transaction.on_commit(cls._schedule_dispatch)
        return events

    @staticmethod
    def _schedule_dispatch() -> None:
        from escrow.workers.outbox import dispatch_escrow_events

        try:
            dispatch_escrow_events.delay()
        except Exception:
            # The periodic sweep delivers whatever this misses
            logger.warning("Could not queue escrow event dispatch", exc_info=True)
