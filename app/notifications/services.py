"""
Notification service layer.

Services:
    NotificationService: Notification creation and read status management

Design Principles:
    - Services are stateless (use class methods)
    - Expected failures return ServiceResult.failure()
    - notify() is idempotent per idempotency_key, so the escrow outbox
      can redeliver an event safely

Usage:
    from notifications.services import NotificationService

    result = NotificationService.notify(
        recipient_id=user.id,
        event_type="payment_captured",
        title="Payment captured",
        data={"order_id": str(order.id)},
        idempotency_key=f"escrow_event:{event.id}",
    )

    NotificationService.mark_all_as_read(user)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.utils import timezone

from core.services import BaseService, ServiceResult
from notifications.models import Notification

if TYPE_CHECKING:
    from django.contrib.auth.models import User


class NotificationService(BaseService):
    """
    Service for notification operations.

    Methods:
        notify: Store a notification for a user (idempotent)
        mark_as_read: Mark a single notification as read
        mark_all_as_read: Mark all user's unread notifications as read
    """

    @classmethod
    def notify(
        cls,
        recipient_id,
        event_type: str,
        title: str,
        body: str = "",
        data: dict | None = None,
        idempotency_key: str | None = None,
    ) -> ServiceResult[Notification]:
        """
        Create a notification for a user.

        When ``idempotency_key`` matches an existing notification, that
        notification is returned instead of creating a duplicate.

        Error codes:
            INVALID_TITLE: title is blank
        """
        if not title or not title.strip():
            return ServiceResult.failure("Notification title is required", error_code="INVALID_TITLE")

        if idempotency_key:
            existing = Notification.objects.filter(idempotency_key=idempotency_key).first()
            if existing is not None:
                cls.get_logger().debug(
                    "Duplicate notification skipped",
                    extra={"idempotency_key": idempotency_key},
                )
                return ServiceResult.success(existing)

        try:
            with transaction.atomic():
                notification = Notification.objects.create(
                    recipient_id=recipient_id,
                    event_type=event_type,
                    title=title.strip(),
                    body=body,
                    data=data or {},
                    idempotency_key=idempotency_key,
                )
        except IntegrityError:
            # Concurrent delivery of the same event
            return ServiceResult.success(Notification.objects.get(idempotency_key=idempotency_key))

        cls.get_logger().info(
            "Notification created",
            extra={
                "notification_id": str(notification.id),
                "recipient_id": str(recipient_id),
                "event_type": event_type,
            },
        )
        return ServiceResult.success(notification)

    @classmethod
    def mark_as_read(
        cls,
        notification: Notification,
        user: User,
    ) -> ServiceResult[Notification]:
        """
        Mark a single notification as read.

        Validates that the user owns the notification before marking.
        Operation is idempotent - marking an already-read notification succeeds.

        Error codes:
            NOT_OWNER: User doesn't own the notification
        """
        if notification.recipient_id != user.id:
            cls.get_logger().warning(
                f"User {user.id} attempted to mark notification {notification.id} "
                f"owned by user {notification.recipient_id}"
            )
            return ServiceResult.failure(
                "Cannot mark notification you don't own",
                error_code="NOT_OWNER",
            )

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = timezone.now()
            notification.save(update_fields=["is_read", "read_at", "updated_at"])
            cls.get_logger().debug(f"Marked notification {notification.id} as read")

        return ServiceResult.success(notification)

    @classmethod
    def mark_all_as_read(cls, user: User) -> ServiceResult[int]:
        """Mark all user's unread notifications as read in one query."""
        count = Notification.objects.filter(
            recipient=user,
            is_read=False,
        ).update(is_read=True, read_at=timezone.now())

        cls.get_logger().info(f"Marked {count} notifications as read for user {user.id}")

        return ServiceResult.success(count)
