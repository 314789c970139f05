"""
Notification inbox model.

Escrow events are delivered here by the outbox dispatcher. Each event is
stored once per recipient, keyed by the event's idempotency key, so a
redelivered event never shows up twice.

Usage:
    from notifications.models import Notification

    unread = Notification.objects.filter(recipient=user, is_read=False)
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel


class Notification(BaseModel):
    """
    Individual notification record for a user.

    Notifications are immutable once created apart from the read flag.

    Fields:
        recipient: User receiving the notification (scopes all queries)
        event_type: Machine-readable event key (e.g. "payment_captured")
        title: Fully rendered title string
        body: Fully rendered body string
        data: Arbitrary JSON context (order id, amounts)
        is_read: Whether recipient has read this notification
        idempotency_key: Prevents duplicate delivery of the same event

    Note:
        - recipient CASCADE: Notifications deleted when user deleted
    """

    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notifications",
        db_index=True,
        help_text="User receiving this notification",
    )

    event_type = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Event key that produced this notification",
    )

    title = models.CharField(
        max_length=500,
        help_text="Fully rendered notification title",
    )

    body = models.TextField(
        blank=True,
        default="",
        help_text="Fully rendered notification body",
    )

    data = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary context data (deep links, metadata)",
    )

    is_read = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Whether recipient has read this notification",
    )

    read_at = models.DateTimeField(null=True, blank=True)

    idempotency_key = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Idempotency key to prevent duplicate notifications",
    )

    class Meta:
        db_table = "notifications_notification"
        ordering = ["-created_at"]
        indexes = [
            # Primary query: user's unread notifications
            models.Index(
                fields=["recipient", "is_read", "-created_at"],
                name="notif_recipient_unread_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["idempotency_key"],
                name="notif_idempotency_key_unique",
                condition=models.Q(idempotency_key__isnull=False),
            ),
        ]

    def __str__(self) -> str:
        read_status = "read" if self.is_read else "unread"
        return f"Notification({self.event_type}) -> User {self.recipient_id} [{read_status}]"
