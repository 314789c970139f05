"""
Processor webhooks.

- views.stripe_webhook: signature check, idempotent storage, queueing
- handlers: per-event-type handlers run by escrow.tasks.process_webhook_event
"""
