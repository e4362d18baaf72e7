from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from django.db import DatabaseError, transaction
from django.utils import timezone

from audit.models import AuditEvent
from audit.services import AuditLogService
from .models import LineItem, Order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusUpdateResult:
    updated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class MergeResult:
    kept: List[str]
    status_update: StatusUpdateResult


class _GroupUpdateAborted(Exception):
    def __init__(self, failed: Dict[str, str]):
        super().__init__("line item group update aborted")
        self.failed = failed


class DuplicateLineItemDetector:

    @staticmethod
    def group(line_items: Iterable[LineItem]) -> Dict[str, Set[str]]:
        """
        Map every active line item that shares its product with another
        active line item of the same order to the ids of those siblings.

        Items are expected in arrival order. Inactive and removed items never
        join a group, and items without a sibling are left out.
        """
        seen: Dict[str, List[str]] = {}
        duplicates: Dict[str, Set[str]] = {}
        for item in line_items:
            if item.status != LineItem.Status.ACTIVE:
                continue
            members = seen.setdefault(item.product_id, [])
            members.append(item.line_item_id)
            if len(members) < 2:
                continue
            # Re-link the whole cluster so earlier members see later arrivals too.
            for member in members:
                duplicates[member] = {other for other in members if other != member}
        return duplicates

    @classmethod
    def detect(cls, order_id: str) -> Dict[str, Set[str]]:
        order = Order.objects.get(pk=order_id)
        items = LineItem.objects.filter(order=order).only("line_item_id", "product_id", "status", "created_at")
        return cls.group(items)


class LineItemStatusService:

    @staticmethod
    def _normalize_ids(ids: Iterable) -> List[str]:
        normalized = list(dict.fromkeys(str(i).strip() for i in ids if str(i).strip()))
        if not normalized:
            raise ValueError("At least one line item id is required")
        return normalized

    @staticmethod
    def set_status(
        ids: Iterable,
        status: str,
        *,
        actor=None,
        reason: str = "",
        expected_status: Optional[str] = None,
    ) -> StatusUpdateResult:
        """
        Apply one status to a whole group of line items, all or nothing.

        When ``expected_status`` is given, an item whose current status differs
        (for example after a concurrent manual correction) fails the group.
        """
        if status not in LineItem.Status.values:
            raise ValueError(f"Invalid status '{status}'")
        if expected_status is not None and expected_status not in LineItem.Status.values:
            raise ValueError(f"Invalid expected_status '{expected_status}'")
        line_item_ids = LineItemStatusService._normalize_ids(ids)

        updated: List[str] = []
        try:
            with transaction.atomic():
                rows = {
                    row.pk: row
                    for row in LineItem.objects.select_for_update().filter(pk__in=line_item_ids)
                }
                failed: Dict[str, str] = {}
                for line_item_id in line_item_ids:
                    row = rows.get(line_item_id)
                    if row is None:
                        failed[line_item_id] = "not found"
                    elif expected_status is not None and row.status != expected_status:
                        failed[line_item_id] = f"status is '{row.status}', expected '{expected_status}'"
                if failed:
                    raise _GroupUpdateAborted(failed)

                for line_item_id in line_item_ids:
                    row = rows[line_item_id]
                    previous = row.status
                    row.status = status
                    row.status_reason = reason or ""
                    try:
                        row.save(update_fields=["status", "status_reason", "updated_at"])
                    except DatabaseError as exc:
                        logger.exception("Status update failed for line_item=%s", line_item_id)
                        raise _GroupUpdateAborted({line_item_id: f"update failed: {exc}"}) from exc
                    AuditLogService.record(
                        action=AuditEvent.Action.LINE_ITEM_STATUS_CHANGED,
                        actor=actor,
                        target_type="line_item",
                        target_id=line_item_id,
                        before={"status": previous},
                        after={"status": status, "reason": row.status_reason},
                    )
                    updated.append(line_item_id)
        except _GroupUpdateAborted as exc:
            logger.warning("Line item group update rejected, failed=%s", exc.failed)
            return StatusUpdateResult(updated=[], failed=exc.failed)

        logger.info("Line items %s moved to status=%s", updated, status)
        return StatusUpdateResult(updated=updated, failed={})

    @staticmethod
    def merge_duplicates(order_id: str, *, actor=None, reason: str = "duplicate line item") -> MergeResult:
        """Keep the earliest active item of each duplicate group and deactivate the rest."""
        order = Order.objects.get(pk=order_id)
        items = list(LineItem.objects.filter(order=order))
        groups = DuplicateLineItemDetector.group(items)
        if not groups:
            return MergeResult(kept=[], status_update=StatusUpdateResult())

        kept: List[str] = []
        redundant: List[str] = []
        kept_products: Set[str] = set()
        for item in items:
            if item.line_item_id not in groups:
                continue
            if item.product_id in kept_products:
                redundant.append(item.line_item_id)
            else:
                kept_products.add(item.product_id)
                kept.append(item.line_item_id)

        result = LineItemStatusService.set_status(
            redundant,
            LineItem.Status.INACTIVE,
            actor=actor,
            reason=reason,
            expected_status=LineItem.Status.ACTIVE,
        )
        return MergeResult(kept=kept if result.ok else [], status_update=result)


class OrderIngestService:
    _FULFILLMENT_RANK = {
        LineItem.FulfillmentStatus.UNFULFILLED: 0,
        LineItem.FulfillmentStatus.PARTIAL: 1,
        LineItem.FulfillmentStatus.FULFILLED: 2,
    }

    @staticmethod
    @transaction.atomic
    def ingest(order_id: str, order_name: str, items: List[dict]) -> Dict[str, int]:
        """
        items: validated dicts from LineItemIngestSerializer.
        Re-ingesting an order never overwrites lifecycle flags of known items.
        """
        order, _ = Order.objects.get_or_create(pk=order_id, defaults={"order_name": order_name})
        created = 0
        for item in items:
            defaults = dict(item)
            line_item_id = defaults.pop("line_item_id")
            if defaults.get("fulfillment_status") == LineItem.FulfillmentStatus.FULFILLED and not defaults.get("fulfilled_at"):
                defaults["fulfilled_at"] = timezone.now()
            _, was_created = LineItem.objects.get_or_create(
                pk=line_item_id,
                defaults={"order": order, **defaults},
            )
            if was_created:
                created += 1
        logger.info("Ingested order=%s created=%s skipped=%s", order_id, created, len(items) - created)
        return {"created": created, "skipped": len(items) - created}

    @classmethod
    @transaction.atomic
    def record_fulfillment(cls, line_item_id: str, fulfillment_status: str, fulfilled_at=None) -> LineItem:
        if fulfillment_status not in LineItem.FulfillmentStatus.values:
            raise ValueError(f"Invalid fulfillment_status '{fulfillment_status}'")
        item = LineItem.objects.select_for_update().get(pk=line_item_id)
        if cls._FULFILLMENT_RANK[fulfillment_status] < cls._FULFILLMENT_RANK[item.fulfillment_status]:
            raise ValueError(
                f"Fulfillment cannot move backward from '{item.fulfillment_status}' to '{fulfillment_status}'"
            )
        item.fulfillment_status = fulfillment_status
        if fulfillment_status == LineItem.FulfillmentStatus.FULFILLED and item.fulfilled_at is None:
            item.fulfilled_at = fulfilled_at or timezone.now()
        item.save(update_fields=["fulfillment_status", "fulfilled_at", "updated_at"])
        return item
