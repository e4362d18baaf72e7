# payout/services/batches.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from django.conf import settings
from django.db import DatabaseError, OperationalError, transaction
from django.utils import timezone
from django.utils.text import slugify

from audit.models import AuditEvent
from audit.services import AuditLogService
from order.models import LineItem
from payout.models import BatchItem, PayoutDeduction, SettlementBatch
from .errors import (
    BatchCreationError,
    PayoutStoreError,
    PayoutValidationError,
    StatusConflictError,
    store_guard,
)
from .pending import DateRange, EligibleItem, PendingItemResolver, require_vendor
from .rules import AmountReport

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class BatchOutcome(str, Enum):
    CREATED = "created"
    NOTHING_ELIGIBLE = "nothing_eligible"
    ALREADY_PAID = "already_paid"


@dataclass(frozen=True)
class BatchResult:
    outcome: BatchOutcome
    batch: Optional[SettlementBatch] = None
    reference: Optional[str] = None
    line_item_ids: List[str] = field(default_factory=list)
    total_amount: Decimal = ZERO
    deduction_amount: Decimal = ZERO
    needs_pricing: List[str] = field(default_factory=list)
    already_paid: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.outcome is BatchOutcome.CREATED

    @property
    def items_marked(self) -> int:
        return len(self.line_item_ids)


class _ItemsAlreadyClaimed(Exception):
    def __init__(self, line_item_ids: List[str]):
        super().__init__("line items already attached to a settlement")
        self.line_item_ids = line_item_ids


def generate_reference(prefix: str, *parts: str) -> str:
    return "-".join([prefix, *parts, uuid.uuid4().hex[:8].upper()])


class SettlementBatchCreator:
    """
    Writes settlements: redemption batches and manual mark-paid records.

    Every write attaches BatchItems in one transaction. The unique constraint
    on BatchItem.line_item decides which writer wins an item, and a writer that
    loses any item rolls back everything it inserted.
    """

    def __init__(self, resolver: Optional[PendingItemResolver] = None) -> None:
        self.resolver = resolver or PendingItemResolver()

    # -----------------------------
    # Redemption
    # -----------------------------
    def create_batch(
        self,
        vendor_name: str,
        line_items: Optional[Iterable[LineItem]] = None,
        *,
        requested_by=None,
        reference: Optional[str] = None,
        notes: str = "",
    ) -> BatchResult:
        """
        Create a `requested` batch for a vendor.

        Without ``line_items`` the vendor's pending items are resolved first.
        Items already claimed by another settlement are left out; when none
        remain the outcome is ALREADY_PAID.
        """
        vendor_name = require_vendor(vendor_name)
        report = AmountReport()
        if line_items is None:
            resolution = self.resolver.find_eligible(vendor_name)
            items, unpriced = resolution.items, resolution.needs_pricing
            report.errors.extend(resolution.errors)
            report.warnings.extend(resolution.warnings)
        else:
            line_items = list(line_items)
            foreign = [item.pk for item in line_items if item.vendor_name != vendor_name]
            if foreign:
                raise PayoutValidationError(
                    f"Line items do not belong to vendor '{vendor_name}'",
                    [f"{pk}: belongs to another vendor" for pk in foreign],
                )
            with store_guard("create_batch"):
                items, unpriced = self.resolver.price_items(line_items, report)
        if not report.ok:
            raise PayoutValidationError("Payout amounts failed validation", report.errors)

        needs_pricing = [item.pk for item in unpriced]
        if not items:
            logger.info("Nothing eligible to settle for vendor=%s", vendor_name)
            return BatchResult(
                outcome=BatchOutcome.NOTHING_ELIGIBLE,
                needs_pricing=needs_pricing,
                warnings=report.warnings,
            )

        reference = reference or generate_reference("PAYOUT", slugify(vendor_name).upper()[:40])
        return self._settle(
            vendor_name,
            items,
            batch_fields={
                "status": SettlementBatch.Status.REQUESTED,
                "source": SettlementBatch.Source.REDEMPTION,
                "reference": reference,
                "notes": notes,
            },
            actor=requested_by,
            audit_action=AuditEvent.Action.BATCH_CREATED,
            needs_pricing=needs_pricing,
            warnings=report.warnings,
        )

    # -----------------------------
    # Manual settlement
    # -----------------------------
    def mark_month_paid(
        self,
        vendor_name: str,
        year,
        month,
        *,
        reference: Optional[str] = None,
        create_batch_record: bool = False,
        marked_by=None,
    ) -> BatchResult:
        """Record every pending item fulfilled in the given month as paid out of band."""
        vendor_name = require_vendor(vendor_name)
        date_range = DateRange.for_month(year, month)
        period = f"{int(year):04d}-{int(month):02d}"

        resolution = self.resolver.find_eligible(vendor_name, date_range)
        if resolution.errors:
            raise PayoutValidationError("Payout amounts failed validation", resolution.errors)
        needs_pricing = [item.pk for item in resolution.needs_pricing]
        if not resolution.items:
            outcome = BatchOutcome.ALREADY_PAID if resolution.already_paid_count else BatchOutcome.NOTHING_ELIGIBLE
            logger.info("mark_month_paid vendor=%s period=%s: %s", vendor_name, period, outcome.value)
            return BatchResult(outcome=outcome, needs_pricing=needs_pricing, warnings=resolution.warnings)

        batch_fields = None
        if create_batch_record:
            reference = reference or generate_reference("PAY", period)
            batch_fields = self._manual_batch_fields(reference, f"Bulk payment for {period}", marked_by)
        return self._settle(
            vendor_name,
            resolution.items,
            batch_fields=batch_fields,
            actor=marked_by,
            audit_action=AuditEvent.Action.MARKED_PAID,
            manual=True,
            payout_reference=reference,
            needs_pricing=needs_pricing,
            warnings=resolution.warnings,
        )

    def mark_paid(
        self,
        line_item_ids: Optional[Iterable[str]] = None,
        *,
        order_ids: Optional[Iterable[str]] = None,
        vendor_name: Optional[str] = None,
        reference: Optional[str] = None,
        create_batch_record: bool = False,
        skip_validation: bool = False,
        marked_by=None,
    ) -> BatchResult:
        """
        Mark specific line items, or a vendor's fulfilled items on the given
        orders, as paid out of band.

        Explicit items must exist, be payable and belong to one vendor.
        ``skip_validation`` only relaxes the payability checks.
        """
        line_item_ids = [str(i).strip() for i in (line_item_ids or []) if str(i).strip()]
        order_ids = [str(i).strip() for i in (order_ids or []) if str(i).strip()]
        if not line_item_ids and not order_ids:
            raise PayoutValidationError("line_item_ids or order_ids is required")
        if order_ids:
            vendor_name = require_vendor(vendor_name)

        with store_guard("mark_paid"):
            if order_ids:
                rows = list(self.resolver.candidates(vendor_name).filter(order_id__in=order_ids))
                if not rows:
                    return BatchResult(outcome=BatchOutcome.NOTHING_ELIGIBLE)
            else:
                found = LineItem.objects.in_bulk(line_item_ids)
                missing = [pk for pk in line_item_ids if pk not in found]
                if missing:
                    raise PayoutValidationError(
                        "Some line items were not found",
                        [f"{pk}: not found" for pk in missing],
                    )
                rows = [found[pk] for pk in line_item_ids]
            paid_ids = set(
                BatchItem.objects.filter(line_item__in=rows).values_list("line_item_id", flat=True)
            )

        vendors = {row.vendor_name for row in rows}
        if len(vendors) > 1:
            raise PayoutValidationError(
                "All line items must belong to the same vendor",
                [f"vendors: {', '.join(sorted(vendors))}"],
            )
        row_vendor = vendors.pop()
        if vendor_name and vendor_name.strip() != row_vendor:
            raise PayoutValidationError(f"Line items belong to '{row_vendor}', not '{vendor_name}'")

        unpaid = [row for row in rows if row.pk not in paid_ids]
        if not unpaid:
            return BatchResult(outcome=BatchOutcome.ALREADY_PAID, already_paid=sorted(paid_ids))

        if not skip_validation:
            errors: List[str] = []
            for row in rows:
                if row.pk in paid_ids and not order_ids:
                    errors.append(f"{row.pk}: already paid")
                if row.fulfillment_status != LineItem.FulfillmentStatus.FULFILLED:
                    errors.append(f"{row.pk}: not fulfilled (status: {row.fulfillment_status})")
                if row.status != LineItem.Status.ACTIVE:
                    errors.append(f"{row.pk}: line item is {row.status}")
                if row.refund_status == LineItem.RefundStatus.FULL or (
                    row.refund_status == LineItem.RefundStatus.PARTIAL and not self.resolver.include_partial_refunds
                ):
                    errors.append(f"{row.pk}: refunded ({row.refund_status})")
            if errors:
                raise PayoutValidationError("Line items failed validation", errors)

        report = AmountReport()
        with store_guard("mark_paid"):
            items, unpriced = self.resolver.price_items(unpaid, report)
        if not report.ok:
            raise PayoutValidationError("Payout amounts failed validation", report.errors)
        needs_pricing = [item.pk for item in unpriced]
        if not items:
            return BatchResult(outcome=BatchOutcome.NOTHING_ELIGIBLE, needs_pricing=needs_pricing)

        batch_fields = None
        if create_batch_record:
            reference = reference or generate_reference("MANUAL", timezone.now().strftime("%Y%m%d%H%M%S"))
            batch_fields = self._manual_batch_fields(
                reference, f"Manual payment for {len(items)} line items", marked_by
            )
        return self._settle(
            row_vendor,
            items,
            batch_fields=batch_fields,
            actor=marked_by,
            audit_action=AuditEvent.Action.MARKED_PAID,
            manual=True,
            payout_reference=reference,
            require_eligible=not skip_validation,
            needs_pricing=needs_pricing,
            warnings=report.warnings,
        )

    @staticmethod
    def _manual_batch_fields(reference: str, notes: str, marked_by) -> Dict:
        return {
            "status": SettlementBatch.Status.COMPLETED,
            "source": SettlementBatch.Source.MANUAL,
            "reference": reference,
            "notes": notes,
            "processed_by": marked_by if getattr(marked_by, "pk", None) else None,
            "processed_at": timezone.now(),
        }

    # -----------------------------
    # Shared write path
    # -----------------------------
    def _reverify(
        self,
        vendor_name: str,
        items: List[EligibleItem],
        require_eligible: bool,
    ) -> Tuple[List[EligibleItem], List[str]]:
        """Drop items another settlement already holds; reject items that stopped being payable."""
        ids = [entry.line_item.pk for entry in items]
        # Lock the line items before reading the paid set.
        locked = self.resolver.candidates(vendor_name) if require_eligible else LineItem.objects.all()
        payable = set(locked.select_for_update().filter(pk__in=ids).values_list("pk", flat=True))
        paid: Set[str] = set(
            BatchItem.objects.filter(line_item_id__in=ids).values_list("line_item_id", flat=True)
        )
        if require_eligible:
            conflicts = {pk: "no longer payable" for pk in ids if pk not in payable and pk not in paid}
            if conflicts:
                raise StatusConflictError(conflicts)
        remaining = [entry for entry in items if entry.line_item.pk not in paid]
        return remaining, sorted(paid)

    def _settle(
        self,
        vendor_name: str,
        items: List[EligibleItem],
        *,
        batch_fields: Optional[Dict],
        actor,
        audit_action: str,
        manual: bool = False,
        payout_reference: Optional[str] = None,
        require_eligible: bool = True,
        needs_pricing: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ) -> BatchResult:
        claim_token = uuid.uuid4()
        marked_at = timezone.now() if manual else None
        marked_by = actor if manual and getattr(actor, "pk", None) else None
        batch: Optional[SettlementBatch] = None
        try:
            with transaction.atomic():
                items, skipped = self._reverify(vendor_name, items, require_eligible)
                if not items:
                    raise _ItemsAlreadyClaimed(skipped)

                amounts = {entry.line_item.pk: entry.settled_amount for entry in items}
                total = sum(amounts.values(), ZERO)
                if batch_fields is not None:
                    batch = SettlementBatch.objects.create(
                        vendor_name=vendor_name,
                        total_amount=total,
                        net_amount=total,
                        currency=getattr(settings, "PAYOUT_CURRENCY", "USD"),
                        **batch_fields,
                    )
                BatchItem.objects.bulk_create(
                    [
                        BatchItem(
                            batch=batch,
                            line_item_id=entry.line_item.pk,
                            order_id=entry.line_item.order_id,
                            product_id=entry.line_item.product_id,
                            amount=amounts[entry.line_item.pk],
                            claim_token=claim_token,
                            manually_marked_paid=manual,
                            marked_by=marked_by,
                            marked_at=marked_at,
                            payout_reference=payout_reference,
                        )
                        for entry in items
                    ],
                    ignore_conflicts=True,
                )
                attached = set(
                    BatchItem.objects.filter(claim_token=claim_token).values_list("line_item_id", flat=True)
                )
                lost = [pk for pk in amounts if pk not in attached]
                if lost:
                    # A concurrent settlement won these rows; undo everything this call wrote.
                    raise _ItemsAlreadyClaimed(lost)

                deducted = self._apply_deductions(batch) if batch is not None else ZERO
                AuditLogService.record(
                    action=audit_action,
                    actor=actor,
                    target_type="settlement_batch" if batch is not None else "line_items",
                    target_id=batch.pk if batch is not None else claim_token,
                    after={
                        "vendor_name": vendor_name,
                        "reference": batch.reference if batch is not None else payout_reference,
                        "status": batch.status if batch is not None else "paid",
                        "line_item_ids": list(amounts),
                        "total_amount": total,
                        "deduction_amount": deducted,
                    },
                )
        except _ItemsAlreadyClaimed as exc:
            logger.warning(
                "Settlement for vendor=%s lost to a concurrent settlement, items=%s",
                vendor_name,
                exc.line_item_ids,
            )
            return BatchResult(
                outcome=BatchOutcome.ALREADY_PAID,
                already_paid=exc.line_item_ids,
                needs_pricing=needs_pricing or [],
                warnings=warnings or [],
            )
        except OperationalError as exc:
            logger.exception("Store failure while settling vendor=%s; nothing was written", vendor_name)
            raise PayoutStoreError("Settlement failed: store unavailable or timed out") from exc
        except DatabaseError as exc:
            logger.exception("Settlement for vendor=%s failed and was rolled back", vendor_name)
            raise BatchCreationError(f"Could not create settlement for '{vendor_name}'") from exc

        logger.info(
            "Settled vendor=%s batch=%s items=%s total=%s deductions=%s",
            vendor_name,
            batch.pk if batch is not None else None,
            len(amounts),
            total,
            deducted,
        )
        return BatchResult(
            outcome=BatchOutcome.CREATED,
            batch=batch,
            reference=batch.reference if batch is not None else payout_reference,
            line_item_ids=list(amounts),
            total_amount=total,
            deduction_amount=deducted,
            needs_pricing=needs_pricing or [],
            already_paid=skipped,
            warnings=warnings or [],
        )

    @staticmethod
    def _apply_deductions(batch: SettlementBatch) -> Decimal:
        """Withhold pending refund offsets, oldest first, while they fit in the batch total."""
        pending = (
            PayoutDeduction.objects.select_for_update()
            .filter(vendor_name=batch.vendor_name, status=PayoutDeduction.Status.PENDING)
            .order_by("created_at", "id")
        )
        remaining = batch.total_amount
        applied: List = []
        applied_total = ZERO
        for deduction in pending:
            if deduction.amount > remaining:
                break
            remaining -= deduction.amount
            applied_total += deduction.amount
            applied.append(deduction.pk)
        if not applied:
            return ZERO

        PayoutDeduction.objects.filter(pk__in=applied).update(
            status=PayoutDeduction.Status.APPLIED,
            applied_batch=batch,
            applied_at=timezone.now(),
        )
        batch.deduction_amount = applied_total
        batch.net_amount = batch.total_amount - applied_total
        batch.save(update_fields=["deduction_amount", "net_amount", "updated_at"])
        return applied_total


class BatchStatusService:
    _ALLOWED = {
        SettlementBatch.Status.REQUESTED: {
            SettlementBatch.Status.PROCESSING,
            SettlementBatch.Status.REJECTED,
            SettlementBatch.Status.FAILED,
        },
        SettlementBatch.Status.PROCESSING: {
            SettlementBatch.Status.COMPLETED,
            SettlementBatch.Status.REJECTED,
            SettlementBatch.Status.FAILED,
        },
        SettlementBatch.Status.COMPLETED: set(),
        SettlementBatch.Status.REJECTED: set(),
        SettlementBatch.Status.FAILED: set(),
    }

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return target in cls._ALLOWED.get(current, set())

    @classmethod
    def transition(cls, batch_id, target: str, *, actor=None, notes: str = "") -> SettlementBatch:
        if target not in SettlementBatch.Status.values:
            raise PayoutValidationError(f"Invalid batch status '{target}'")

        with store_guard("transition_batch"), transaction.atomic():
            batch = SettlementBatch.objects.select_for_update().get(pk=batch_id)
            previous = batch.status
            if not cls.can_transition(previous, target):
                raise StatusConflictError({str(batch.pk): f"cannot move from '{previous}' to '{target}'"})

            batch.status = target
            update_fields = ["status", "updated_at"]
            if notes:
                batch.notes = f"{batch.notes}\n{notes}".strip()
                update_fields.append("notes")
            if batch.is_terminal:
                batch.processed_by = actor if getattr(actor, "pk", None) else None
                batch.processed_at = timezone.now()
                update_fields += ["processed_by", "processed_at"]
            voided = 0
            if target in (SettlementBatch.Status.REJECTED, SettlementBatch.Status.FAILED):
                # Items in this batch were never paid, so their refunds owe nothing.
                voided, _ = PayoutDeduction.objects.filter(
                    line_item__batch_items__batch=batch,
                    status=PayoutDeduction.Status.PENDING,
                ).delete()
                # Offsets withheld from a batch that never pays out go back to pending.
                released = PayoutDeduction.objects.filter(applied_batch=batch).update(
                    status=PayoutDeduction.Status.PENDING,
                    applied_batch=None,
                    applied_at=None,
                )
                if released:
                    batch.deduction_amount = ZERO
                    batch.net_amount = batch.total_amount
                    update_fields += ["deduction_amount", "net_amount"]
            batch.save(update_fields=update_fields)

            AuditLogService.record(
                action=AuditEvent.Action.BATCH_TRANSITIONED,
                actor=actor,
                target_type="settlement_batch",
                target_id=batch.pk,
                before={"status": previous},
                after={"status": target, "notes": notes, "voided_deductions": voided},
            )
        if voided:
            logger.info("Voided %s pending deductions for items of batch %s", voided, batch.reference)
        logger.info("Batch %s moved %s -> %s", batch.reference, previous, target)
        return batch
