"""
Notifications app: the in-app inbox.

This app provides:
- Notification model for storing user notifications
- NotificationService for idempotent notification creation
- REST API for listing notifications and marking them read

Escrow events reach users through escrow.workers.outbox, which calls
NotificationService.notify() once per event and recipient.
"""
