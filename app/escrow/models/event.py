"""
EscrowEvent model: the notification outbox.

Rows are written in the same transaction as the money movement they
describe and delivered afterwards by escrow.workers.outbox. A delivery
failure only updates the dispatch columns; the financial commit is never
affected.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import DispatchStatus, EscrowEventType


class EscrowEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    One notification owed to one user.

    Fields:
        event_type: Closed EscrowEventType value
        payload: JSON passed to the notification sink
        dispatch_status: PENDING until delivered (DISPATCHED) or given up on
            after the configured number of attempts (FAILED)
    """

    order = models.ForeignKey(
        "escrow.Order",
        on_delete=models.PROTECT,
        related_name="events",
    )
    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="escrow_events",
    )
    event_type = models.CharField(
        max_length=64,
        choices=EscrowEventType.choices,
        db_index=True,
    )
    payload = models.JSONField(default=dict, blank=True)
    dispatch_status = models.CharField(
        max_length=16,
        choices=DispatchStatus.choices,
        default=DispatchStatus.PENDING,
        db_index=True,
    )
    attempts = models.PositiveSmallIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    dispatched_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Escrow Event"
        verbose_name_plural = "Escrow Events"
        indexes = [
            models.Index(fields=["dispatch_status", "created_at"], name="escrow_event_dispatch_idx"),
        ]

    def __str__(self) -> str:
        return f"EscrowEvent({self.event_type}, {self.dispatch_status})"
