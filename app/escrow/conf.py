"""
Typed view over the ESCROW_* Django settings.

Services never read django.conf.settings directly. They call
get_escrow_settings(), which tests can override with override_settings()
or replace entirely by passing an EscrowSettings instance.

Usage:
    from escrow.conf import get_escrow_settings

    conf = get_escrow_settings()
    if conf.enforcement_enabled:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscrowSettings:
    """
    Escrow policy knobs.

    Attributes:
        enforcement_enabled: Apply provider/adjustment limits. Money
            invariants are always enforced regardless of this flag.
        platform_fee_percent: Platform commission taken at capture
        authorization_ttl: How long a processor hold stays capturable
        adjustment_response_window: Customer deadline for a price adjustment
        payout_holding_period: Delay between capture and provider payout
        partial_refund_percent: Refund ceiling for partially refundable orders
        max_open_orders_per_provider: Limit checked at order creation
        max_adjustments_per_order: Limit checked per adjustment request
        order_lock_ttl: Redis lock TTL in seconds
        order_lock_timeout: Seconds to wait for the order lock
        event_max_attempts: Outbox delivery attempts before giving up
    """

    enforcement_enabled: bool = True
    platform_fee_percent: Decimal = Decimal("15")
    authorization_ttl: timedelta = timedelta(days=7)
    adjustment_response_window: timedelta = timedelta(hours=72)
    payout_holding_period: timedelta = timedelta(days=14)
    partial_refund_percent: Decimal = Decimal("50")
    max_open_orders_per_provider: int = 25
    max_adjustments_per_order: int = 3
    order_lock_ttl: int = 120
    order_lock_timeout: float = 10.0
    event_max_attempts: int = 5

    def platform_fee_for(self, amount_cents: int) -> int:
        """Platform fee for an amount, rounded half-up to the cent."""
        fee = Decimal(amount_cents) * self.platform_fee_percent / Decimal("100")
        return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def partial_refund_ceiling(self, captured_cents: int) -> int:
        """Maximum cumulative refund for a partially refundable order."""
        ceiling = Decimal(captured_cents) * self.partial_refund_percent / Decimal("100")
        return int(ceiling.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_escrow_settings() -> EscrowSettings:
    """Build EscrowSettings from the current Django settings."""
    conf = EscrowSettings(
        enforcement_enabled=getattr(settings, "ESCROW_ENFORCEMENT_ENABLED", True),
        platform_fee_percent=Decimal(str(getattr(settings, "ESCROW_PLATFORM_FEE_PERCENT", 15))),
        authorization_ttl=timedelta(days=getattr(settings, "ESCROW_AUTHORIZATION_TTL_DAYS", 7)),
        adjustment_response_window=timedelta(
            hours=getattr(settings, "ESCROW_ADJUSTMENT_RESPONSE_HOURS", 72)
        ),
        payout_holding_period=timedelta(days=getattr(settings, "ESCROW_PAYOUT_HOLDING_DAYS", 14)),
        partial_refund_percent=Decimal(str(getattr(settings, "ESCROW_PARTIAL_REFUND_PERCENT", 50))),
        max_open_orders_per_provider=getattr(settings, "ESCROW_MAX_OPEN_ORDERS_PER_PROVIDER", 25),
        max_adjustments_per_order=getattr(settings, "ESCROW_MAX_ADJUSTMENTS_PER_ORDER", 3),
        order_lock_ttl=getattr(settings, "ESCROW_ORDER_LOCK_TTL_SECONDS", 120),
        order_lock_timeout=getattr(settings, "ESCROW_ORDER_LOCK_TIMEOUT_SECONDS", 10.0),
        event_max_attempts=getattr(settings, "ESCROW_EVENT_MAX_ATTEMPTS", 5),
    )
    if not conf.enforcement_enabled:
        logger.warning(
            "Escrow limit enforcement is disabled",
            extra={"setting": "ESCROW_ENFORCEMENT_ENABLED"},
        )
    return conf
