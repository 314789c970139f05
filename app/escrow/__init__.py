"""
Escrow app: the money side of an order.

This app handles:
- Authorization holds placed with the payment processor
- Price adjustment negotiation between provider and customer
- Capture with platform fee split
- Delayed provider payouts
- Refunds against captured funds
- The append-only wallet ledger (escrow.wallet)
- Outbox notifications and processor webhooks

Related apps:
    - notifications: Receives outbox events
    - core: BaseModel, ServiceResult, exception hierarchy

Usage:
    from escrow.services import EscrowOrchestrator

    result = EscrowOrchestrator.create_order(customer_id, provider_id, price_cents=25000)
    EscrowOrchestrator.authorize(result.data.id)
"""
