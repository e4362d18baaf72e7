# payout/services/pending.py
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from django.conf import settings
from django.db.models import Exists, OuterRef, Subquery, Sum
from django.utils import timezone

from order.models import LineItem
from payout.models import BatchItem, PayoutDeduction, PayoutRule
from .errors import PayoutValidationError, store_guard
from .rules import AmountReport, PayoutRuleResolver, check_amount, compute_amount, money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def require_vendor(vendor_name: Optional[str]) -> str:
    if vendor_name is None or not str(vendor_name).strip():
        raise PayoutValidationError("vendor_name is required")
    return str(vendor_name).strip()


@dataclass(frozen=True)
class DateRange:
    """Half-open range [start, end) on LineItem.fulfilled_at."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start >= self.end:
            raise PayoutValidationError("Date range start must be before its end")

    @classmethod
    def for_month(cls, year, month) -> "DateRange":
        try:
            year, month = int(year), int(month)
        except (TypeError, ValueError):
            raise PayoutValidationError("year and month must be integers")
        if not 1 <= month <= 12:
            raise PayoutValidationError("month must be between 1 and 12")
        if not 1 <= year <= 9998:
            raise PayoutValidationError("year is out of range")
        first = date(year, month, 1)
        last_day = calendar.monthrange(year, month)[1]
        return cls.from_dates(first, date(year, month, last_day))

    @classmethod
    def from_dates(cls, start: date, end: date) -> "DateRange":
        """Both calendar days are included."""
        tz = timezone.get_current_timezone()
        return cls(
            start=timezone.make_aware(datetime.combine(start, time.min), tz),
            end=timezone.make_aware(datetime.combine(end + timedelta(days=1), time.min), tz),
        )


@dataclass(frozen=True)
class EligibleItem:
    line_item: LineItem
    amount: Decimal
    rule: PayoutRule

    @property
    def settled_amount(self) -> Decimal:
        return money(self.amount)


@dataclass
class PendingResolution:
    vendor_name: str
    items: List[EligibleItem] = field(default_factory=list)
    needs_pricing: List[LineItem] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")
    already_paid_count: int = 0
    pending_deductions: Decimal = Decimal("0.00")
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def line_item_ids(self) -> List[str]:
        return [entry.line_item.pk for entry in self.items]


@dataclass
class OrderPayoutSummary:
    order_id: str
    order_name: str
    total_line_items: int = 0
    fulfilled_line_items: int = 0
    paid_line_items: int = 0
    pending_line_items: int = 0
    unpriced_line_items: int = 0
    order_total: Decimal = ZERO
    payout_amount: Decimal = ZERO


@dataclass
class VendorPayoutSummary:
    vendor_name: str
    orders: List[OrderPayoutSummary]
    pending_amount: Decimal
    paid_amount: Decimal


class PendingItemResolver:
    """
    Finds the line items a vendor can still be paid for.

    An item is pending when it is active, fulfilled, not refunded and has no
    BatchItem in any batch whatever that batch's status. Reads go through the
    default database connection, the same one settlements write on.
    """

    def __init__(self, rules: Optional[PayoutRuleResolver] = None, include_partial_refunds: Optional[bool] = None):
        self.rules = rules or PayoutRuleResolver()
        if include_partial_refunds is None:
            include_partial_refunds = getattr(settings, "PAYOUT_SETTLE_PARTIAL_REFUNDS", False)
        self.include_partial_refunds = include_partial_refunds

    def candidates(self, vendor_name: str, date_range: Optional[DateRange] = None):
        refund_states = [LineItem.RefundStatus.NONE]
        if self.include_partial_refunds:
            refund_states.append(LineItem.RefundStatus.PARTIAL)
        qs = LineItem.objects.filter(
            vendor_name=vendor_name,
            status=LineItem.Status.ACTIVE,
            fulfillment_status=LineItem.FulfillmentStatus.FULFILLED,
            refund_status__in=refund_states,
        )
        if date_range is not None:
            qs = qs.filter(fulfilled_at__gte=date_range.start, fulfilled_at__lt=date_range.end)
        return qs

    def price_items(self, line_items, report: Optional[AmountReport] = None):
        """Split line items into priced EligibleItems and the ones without a rule."""
        line_items = list(line_items)
        self.rules.preload((item.product_id, item.vendor_name) for item in line_items)
        priced: List[EligibleItem] = []
        unpriced: List[LineItem] = []
        for item in line_items:
            rule = self.rules.resolve_rule(item.product_id, item.vendor_name)
            amount = compute_amount(item.payable_price, rule)
            if amount is None:
                unpriced.append(item)
                continue
            if report is not None:
                check_amount(item.pk, item.payable_price, amount, report)
            priced.append(EligibleItem(line_item=item, amount=amount, rule=rule))
        return priced, unpriced

    def pending_deductions(self, vendor_name: str) -> Decimal:
        total = PayoutDeduction.objects.filter(
            vendor_name=vendor_name,
            status=PayoutDeduction.Status.PENDING,
        ).aggregate(total=Sum("amount"))["total"]
        return money(total or ZERO)

    def find_eligible(self, vendor_name: str, date_range: Optional[DateRange] = None) -> PendingResolution:
        vendor_name = require_vendor(vendor_name)
        with store_guard("find_eligible"):
            rows = list(
                self.candidates(vendor_name, date_range)
                .annotate(is_paid=Exists(BatchItem.objects.filter(line_item=OuterRef("pk"))))
                .select_related("order")
            )
            unpaid = [row for row in rows if not row.is_paid]
            report = AmountReport()
            items, needs_pricing = self.price_items(unpaid, report)
            deductions = self.pending_deductions(vendor_name)

        # Aggregate unrounded amounts; round once at the end.
        total = money(sum((entry.amount for entry in items), ZERO))
        if needs_pricing:
            logger.warning(
                "Vendor=%s has %s fulfilled line items without a payout rule",
                vendor_name,
                len(needs_pricing),
            )
        return PendingResolution(
            vendor_name=vendor_name,
            items=items,
            needs_pricing=needs_pricing,
            total_amount=total,
            already_paid_count=len(rows) - len(unpaid),
            pending_deductions=deductions,
            errors=report.errors,
            warnings=report.warnings,
        )

    def summarize_vendor(self, vendor_name: str, include_paid: bool = False) -> VendorPayoutSummary:
        """Per-order payout breakdown of a vendor's active line items."""
        vendor_name = require_vendor(vendor_name)
        paid_amount = BatchItem.objects.filter(line_item=OuterRef("pk")).values("amount")[:1]
        with store_guard("summarize_vendor"):
            rows = list(
                LineItem.objects.filter(vendor_name=vendor_name, status=LineItem.Status.ACTIVE)
                .select_related("order")
                .annotate(paid_amount=Subquery(paid_amount))
            )
            self.rules.preload((row.product_id, row.vendor_name) for row in rows)

        orders: Dict[str, OrderPayoutSummary] = {}
        pending_total = ZERO
        paid_total = ZERO
        for row in rows:
            summary = orders.get(row.order_id)
            if summary is None:
                summary = orders[row.order_id] = OrderPayoutSummary(
                    order_id=row.order_id,
                    order_name=row.order.order_name,
                )
            summary.total_line_items += 1
            summary.order_total += row.price
            if row.fulfillment_status == LineItem.FulfillmentStatus.FULFILLED:
                summary.fulfilled_line_items += 1

            if row.paid_amount is not None:
                summary.paid_line_items += 1
                paid_total += row.paid_amount
                if include_paid:
                    summary.payout_amount += row.paid_amount
                continue
            if not row.is_payout_eligible(self.include_partial_refunds):
                continue
            summary.pending_line_items += 1
            amount = compute_amount(row.payable_price, self.rules.resolve_rule(row.product_id, row.vendor_name))
            if amount is None:
                summary.unpriced_line_items += 1
            else:
                summary.payout_amount += amount
                pending_total += amount

        for summary in orders.values():
            summary.order_total = money(summary.order_total)
            summary.payout_amount = money(summary.payout_amount)
        return VendorPayoutSummary(
            vendor_name=vendor_name,
            orders=list(orders.values()),
            pending_amount=money(pending_total),
            paid_amount=money(paid_total),
        )
