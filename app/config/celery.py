"""
Celery configuration for the Django application.

Celery runs the escrow background work:
- Periodic sweeps (hold expiry, adjustment expiry, payout release, reconciliation)
- Outbox delivery to the notifications inbox
- Processor webhook processing

Schedules live in the database (django-celery-beat DatabaseScheduler) and
are seeded by escrow migration 0002.

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps.

Usage:
    from escrow.workers import reconcile_order_payments

    reconcile_order_payments.delay(str(order.id))

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# Create Celery application instance
# The name should match the Django project name
app = Celery("config")

# Load configuration from Django settings
# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Auto-discover tasks from all registered Django apps
# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()


@app.task(bind=True, ignore_result=True)
def debug_task(self):
    """
    Debug task for testing Celery connectivity.

    Usage:
        from config.celery import debug_task
        debug_task.delay()

    Check worker logs to verify task execution.
    """
    print(f"Request: {self.request!r}")
