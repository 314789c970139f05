"""
Register the escrow sweeps with django-celery-beat.

Schedules:
- Outbox dispatch every minute
- Hold expiry, payout release and webhook retry every 15 minutes
- Payment reconciliation every 30 minutes
- Adjustment expiry hourly, at low priority
"""

from django.db import migrations

ESCROW_PERIODIC_TASKS = [
    {
        "name": "Escrow: Dispatch Events",
        "task": "escrow.workers.outbox.dispatch_escrow_events",
        "every": (1, "minutes"),
        "description": "Delivers pending outbox events to the notification inbox.",
    },
    {
        "name": "Escrow: Expire Authorization Holds",
        "task": "escrow.workers.holds.expire_authorization_holds",
        "every": (15, "minutes"),
        "description": "Expires holds past their processor capture ceiling and releases the funds.",
    },
    {
        "name": "Escrow: Release Due Payouts",
        "task": "escrow.workers.payouts.release_due_payouts",
        "every": (15, "minutes"),
        "description": "Releases provider payouts whose holding period has ended.",
    },
    {
        "name": "Escrow: Retry Failed Webhooks",
        "task": "escrow.tasks.retry_failed_webhooks",
        "every": (15, "minutes"),
        "description": "Re-queues failed processor webhooks below the retry limit.",
    },
    {
        "name": "Escrow: Reconcile Pending Payments",
        "task": "escrow.workers.reconciliation.reconcile_pending_payments",
        "every": (30, "minutes"),
        "description": "Resolves captures and refunds whose processor outcome is unknown.",
    },
    {
        "name": "Escrow: Expire Adjustment Requests",
        "task": "escrow.workers.adjustments.expire_adjustment_requests",
        "every": (1, "hours"),
        "priority": 9,
        "description": "Expires price adjustments the customer did not answer in time.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in ESCROW_PERIODIC_TASKS:
        every, period = entry["every"]
        schedule, _ = IntervalSchedule.objects.get_or_create(every=every, period=period)
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "priority": entry.get("priority"),
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in ESCROW_PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
