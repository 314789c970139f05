"""
Disputes over captured orders.

Either party may open one dispute at a time on a captured order. While
it is open the provider's payout is frozen: PayoutScheduler.release
refuses it and the release sweep skips the order. Staff resolve the
dispute with a full, partial or no refund; the filer may withdraw it.
Either way the payout resumes on the next sweep.

Callers must hold escrow.locks.order_lock() for the order.
"""

from __future__ import annotations

import uuid

from django.contrib.auth import get_user_model
from django.db import transaction

from core.exceptions import PermissionDeniedError, ValidationError
from core.services import BaseService
from escrow.exceptions import (
    DisputeAlreadyOpen,
    DisputeNotFound,
    InvalidAmount,
    InvalidStateTransitionError,
    OrderNotEligible,
)
from escrow.models import Dispute
from escrow.models.order import REFUNDABLE_STATES
from escrow.services.base import lock_order_row
from escrow.services.event_service import EscrowEventService
from escrow.services.refund_service import RefundService
from escrow.state_machines import (
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    EscrowEventType,
    RefundReason,
)


class DisputeService(BaseService):
    """Open, resolve and withdraw disputes."""

    @classmethod
    def open_dispute(
        cls,
        order_id: uuid.UUID,
        filed_by_id,
        dispute_type: str,
        description: str,
    ) -> Dispute:
        """
        File a dispute and freeze the order's payout.

        Raises:
            ValidationError: unknown type or empty description
            PermissionDeniedError: filer is neither customer nor provider
            OrderNotEligible: order is not captured, or already refunded
            DisputeAlreadyOpen: the order has an open dispute
        """
        if dispute_type not in DisputeType.values:
            raise ValidationError(
                f"Unknown dispute type '{dispute_type}'",
                details={"dispute_type": dispute_type},
            )
        description = (description or "").strip()
        if not description:
            raise ValidationError("Describe the problem", details={"field": "description"})

        with transaction.atomic():
            order = lock_order_row(order_id)
            if str(filed_by_id) not in (str(order.customer_id), str(order.provider_id)):
                raise PermissionDeniedError(
                    "Only the order's customer or provider can open a dispute",
                    details={"order_id": str(order.id)},
                )
            if order.status not in REFUNDABLE_STATES:
                raise OrderNotEligible(
                    f"A {order.get_status_display().lower()} order cannot be disputed",
                    details={"order_id": str(order.id), "status": order.status},
                )
            existing = order.disputes.filter(status=DisputeStatus.OPEN).first()
            if existing is not None:
                raise DisputeAlreadyOpen(
                    "This order already has an open dispute",
                    details={"order_id": str(order.id), "dispute_id": str(existing.id)},
                )

            dispute = Dispute.objects.create(
                order=order,
                filed_by_id=filed_by_id,
                dispute_type=dispute_type,
                description=description,
            )
            EscrowEventService.record_event(
                order,
                EscrowEventType.DISPUTE_OPENED,
                recipients=[order.customer_id, order.provider_id],
                payload={"dispute_id": str(dispute.id), "dispute_type": dispute_type},
            )

        cls.get_logger().info(
            "Dispute opened",
            extra={"order_id": str(order.id), "dispute_id": str(dispute.id), "dispute_type": dispute_type},
        )
        return dispute

    @classmethod
    def resolve_dispute(
        cls,
        dispute_id: uuid.UUID,
        resolution: str,
        resolved_by_id,
        refund_amount_cents: int | None = None,
        note: str = "",
    ) -> Dispute:
        """
        Close a dispute (staff only), refunding the customer first when
        the resolution calls for it.

        FULL_REFUND refunds whatever is still refundable; PARTIAL_REFUND
        needs ``refund_amount_cents``. A failed refund leaves the dispute
        open. The refund follows the order's refund policy.

        Raises:
            ValidationError: unknown resolution
            PermissionDeniedError: resolver is not staff
            InvalidStateTransitionError: dispute already closed
            InvalidAmount: partial refund without a positive amount
            RefundNotAllowed / RefundExceedsCaptured / RefundFailed: from the refund
        """
        if resolution not in DisputeResolution.values:
            raise ValidationError(
                f"Unknown dispute resolution '{resolution}'",
                details={"resolution": resolution},
            )
        resolver = get_user_model().objects.filter(pk=resolved_by_id).first()
        if resolver is None or not resolver.is_staff:
            raise PermissionDeniedError("Only staff can resolve a dispute")

        dispute = cls._get(dispute_id)
        cls._check_open(dispute)

        amount = 0
        if resolution == DisputeResolution.FULL_REFUND:
            amount = RefundService.remaining_refundable(dispute.order)
        elif resolution == DisputeResolution.PARTIAL_REFUND:
            amount = refund_amount_cents or 0
            if amount <= 0:
                raise InvalidAmount(
                    "A partial refund needs a positive amount",
                    details={"refund_amount_cents": refund_amount_cents},
                )
        if amount > 0:
            RefundService.refund(dispute.order_id, amount, RefundReason.DISPUTED, resolver.pk, note)

        with transaction.atomic():
            order = lock_order_row(dispute.order_id)
            dispute = Dispute.objects.select_for_update().get(pk=dispute.pk)
            cls._check_open(dispute)
            dispute.resolve(resolution, resolver, refund_amount_cents=amount, note=note)
            dispute.save()
            EscrowEventService.record_event(
                order,
                EscrowEventType.DISPUTE_RESOLVED,
                recipients=[order.customer_id, order.provider_id],
                payload={"dispute_id": str(dispute.id), "resolution": resolution, "amount_cents": amount},
            )

        cls.get_logger().info(
            "Dispute resolved",
            extra={
                "order_id": str(order.id),
                "dispute_id": str(dispute.id),
                "resolution": resolution,
                "refund_cents": amount,
            },
        )
        return dispute

    @classmethod
    def withdraw_dispute(cls, dispute_id: uuid.UUID, user_id) -> Dispute:
        """Withdraw an open dispute. Only the filer may."""
        order_id = cls.order_id_for(dispute_id)

        with transaction.atomic():
            order = lock_order_row(order_id)
            dispute = Dispute.objects.select_for_update().get(pk=dispute_id)
            if str(dispute.filed_by_id) != str(user_id):
                raise PermissionDeniedError(
                    "Only the party who opened the dispute can withdraw it",
                    details={"dispute_id": str(dispute.id)},
                )
            cls._check_open(dispute)
            dispute.withdraw()
            dispute.save()
            EscrowEventService.record_event(
                order,
                EscrowEventType.DISPUTE_WITHDRAWN,
                recipients=[order.customer_id, order.provider_id],
                payload={"dispute_id": str(dispute.id)},
            )

        cls.get_logger().info(
            "Dispute withdrawn",
            extra={"order_id": str(order.id), "dispute_id": str(dispute.id)},
        )
        return dispute

    @staticmethod
    def has_open_dispute(order) -> bool:
        return order.disputes.filter(status=DisputeStatus.OPEN).exists()

    @classmethod
    def order_id_for(cls, dispute_id: uuid.UUID) -> uuid.UUID:
        return cls._get(dispute_id).order_id

    @staticmethod
    def _get(dispute_id: uuid.UUID) -> Dispute:
        try:
            return Dispute.objects.select_related("order").get(pk=uuid.UUID(str(dispute_id)))
        except (Dispute.DoesNotExist, ValueError):
            raise DisputeNotFound(
                f"Dispute {dispute_id} not found",
                details={"dispute_id": str(dispute_id)},
            )

    @staticmethod
    def _check_open(dispute: Dispute) -> None:
        if dispute.status != DisputeStatus.OPEN:
            raise InvalidStateTransitionError(
                f"This dispute was already {dispute.get_status_display().lower()}",
                details={"dispute_id": str(dispute.id), "status": dispute.status},
            )
