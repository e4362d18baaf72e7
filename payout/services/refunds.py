# payout/services/refunds.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from django.db import transaction
from django.db.models import Q, Sum

from audit.models import AuditEvent
from audit.services import AuditLogService
from order.models import LineItem
from payout.models import BatchItem, PayoutDeduction, SettlementBatch
from .errors import PayoutValidationError, StatusConflictError, store_guard
from .rules import PayoutRuleResolver, compute_amount, money, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# Batches that have paid or may still pay out
_PAYING_STATUSES = [
    SettlementBatch.Status.REQUESTED,
    SettlementBatch.Status.PROCESSING,
    SettlementBatch.Status.COMPLETED,
]


@dataclass(frozen=True)
class RefundResult:
    line_item_id: str
    previous_status: str
    new_status: str
    refunded_amount: Decimal
    # What the vendor still earns on the item; None when no payout rule exists.
    earned_amount: Optional[Decimal]
    deduction: Optional[PayoutDeduction]
    already_applied: bool = False

    @property
    def deduction_amount(self) -> Decimal:
        return self.deduction.amount if self.deduction is not None else ZERO


class RefundDeductionHandler:
    """
    Applies refunds to line items and records the payout offset they cause.

    refund_status only moves none -> partial, none -> full or partial -> full.
    Replaying a refund that is already in place changes nothing. An item that
    was already settled gets a pending PayoutDeduction, withheld from the
    vendor's next batch; settled batches are never reopened.
    """

    def __init__(self, rules: Optional[PayoutRuleResolver] = None) -> None:
        self.rules = rules or PayoutRuleResolver()

    @staticmethod
    def _parse_amount(refund_type: str, refunded_amount: Any) -> Optional[Decimal]:
        if refund_type not in (LineItem.RefundStatus.PARTIAL, LineItem.RefundStatus.FULL):
            raise PayoutValidationError(f"Invalid refund type '{refund_type}'")
        if refund_type == LineItem.RefundStatus.FULL:
            return None
        if refunded_amount in (None, ""):
            raise PayoutValidationError("refunded_amount is required for a partial refund")
        try:
            amount = to_decimal(refunded_amount)
        except (InvalidOperation, ValueError):
            raise PayoutValidationError(f"Invalid refunded_amount '{refunded_amount}'")
        if amount <= 0:
            raise PayoutValidationError("refunded_amount must be greater than zero")
        return money(amount)

    def apply_refund(
        self,
        line_item_id: str,
        refund_type: str,
        refunded_amount: Any = None,
        *,
        actor=None,
    ) -> RefundResult:
        amount = self._parse_amount(refund_type, refunded_amount)

        with store_guard("apply_refund"), transaction.atomic():
            item = LineItem.objects.select_for_update().get(pk=line_item_id)
            previous = item.refund_status

            if amount is not None and amount > item.price:
                raise PayoutValidationError(
                    f"refunded_amount {amount} exceeds the line item price {item.price}"
                )

            replay = self._check_transition(item, refund_type, amount)
            rule = self.rules.resolve_rule(item.product_id, item.vendor_name)
            if replay:
                logger.info("Refund %s on line_item=%s already applied", refund_type, item.pk)
                return RefundResult(
                    line_item_id=item.pk,
                    previous_status=previous,
                    new_status=previous,
                    refunded_amount=item.refunded_amount,
                    earned_amount=self._earned(item, rule),
                    deduction=None,
                    already_applied=True,
                )

            before = {"refund_status": previous, "refunded_amount": item.refunded_amount}
            item.refund_status = refund_type
            item.refunded_amount = item.price if amount is None else amount
            item.save(update_fields=["refund_status", "refunded_amount", "updated_at"])

            earned = self._earned(item, rule)
            deduction = self._record_deduction(item, refund_type, earned)

            AuditLogService.record(
                action=AuditEvent.Action.REFUND_APPLIED,
                actor=actor,
                target_type="line_item",
                target_id=item.pk,
                before=before,
                after={
                    "refund_status": item.refund_status,
                    "refunded_amount": item.refunded_amount,
                    "earned_amount": earned,
                    "deduction_amount": deduction.amount if deduction is not None else ZERO,
                },
            )

        logger.info(
            "Refund %s applied to line_item=%s refunded=%s deduction=%s",
            refund_type,
            item.pk,
            item.refunded_amount,
            deduction.amount if deduction is not None else ZERO,
        )
        return RefundResult(
            line_item_id=item.pk,
            previous_status=previous,
            new_status=item.refund_status,
            refunded_amount=item.refunded_amount,
            earned_amount=earned,
            deduction=deduction,
        )

    @staticmethod
    def _check_transition(item: LineItem, refund_type: str, amount: Optional[Decimal]) -> bool:
        """Return True for a replay of the refund already in place; raise on a backward move."""
        current = item.refund_status
        if current == LineItem.RefundStatus.FULL:
            if refund_type == LineItem.RefundStatus.FULL:
                return True
            raise StatusConflictError({item.pk: "refund_status is 'full'; a partial refund cannot follow"})
        if current == LineItem.RefundStatus.PARTIAL and refund_type == LineItem.RefundStatus.PARTIAL:
            if item.refunded_amount == amount:
                return True
            raise StatusConflictError(
                {item.pk: f"a partial refund of {item.refunded_amount} is already applied"}
            )
        return False

    @staticmethod
    def _earned(item: LineItem, rule) -> Optional[Decimal]:
        if item.refund_status == LineItem.RefundStatus.FULL:
            return ZERO
        amount = compute_amount(item.payable_price, rule)
        return money(amount) if amount is not None else None

    @staticmethod
    def _record_deduction(item: LineItem, refund_type: str, earned: Optional[Decimal]) -> Optional[PayoutDeduction]:
        settled = (
            BatchItem.objects.select_related("batch")
            .filter(line_item=item)
            .filter(Q(batch__isnull=True) | Q(batch__status__in=_PAYING_STATUSES))
            .first()
        )
        if settled is None:
            return None

        paid = settled.amount
        if earned is None:
            # No rule left to recompute with: scale the frozen amount by what was kept.
            earned = money(paid * item.payable_price / item.price) if item.price else ZERO
        already_withheld = (
            PayoutDeduction.objects.filter(line_item=item).aggregate(total=Sum("amount"))["total"] or ZERO
        )
        owed = money(paid - earned - already_withheld)
        if owed <= 0:
            return None
        return PayoutDeduction.objects.create(
            vendor_name=item.vendor_name,
            line_item=item,
            refund_type=refund_type,
            amount=owed,
        )
