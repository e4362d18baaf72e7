# payout/services/rules.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from django.conf import settings

from payout.models import PayoutRule

HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Any) -> Decimal:
    """Round to the settlement currency's minor unit. Only call when persisting."""
    minor_unit = Decimal(str(getattr(settings, "PAYOUT_MINOR_UNIT", "0.01")))
    return to_decimal(value).quantize(minor_unit, rounding=ROUND_HALF_UP)


def compute_amount(price: Any, rule: Optional[PayoutRule]) -> Optional[Decimal]:
    """
    Payout for one line item, unrounded.

    Percentage rules pay ``price * payout_amount / 100``. Flat rules pay
    ``payout_amount`` whatever the price is. Returns None when there is no
    rule, which callers must report as unpriced instead of zero.
    """
    if rule is None:
        return None
    payout_amount = to_decimal(rule.payout_amount)
    if rule.is_percentage:
        return to_decimal(price) * payout_amount / HUNDRED
    return payout_amount


@dataclass
class AmountReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def check_amount(line_item_id: str, price: Any, amount: Decimal, report: AmountReport) -> AmountReport:
    price = to_decimal(price)
    if amount < 0:
        report.errors.append(f"{line_item_id}: payout amount {amount} is negative")
    if price == 0:
        report.warnings.append(f"{line_item_id}: price is zero")
    elif amount > price:
        report.warnings.append(f"{line_item_id}: payout amount {amount} exceeds price {price}")
    return report


class PayoutRuleResolver:
    """
    Looks up PayoutRule rows for (product_id, vendor_name) pairs.

    Results, including misses, are cached on the instance only. Build one
    resolver per request or job, or call ``invalidate`` after editing rules.
    """

    def __init__(self, rules=None) -> None:
        self._rules = rules if rules is not None else PayoutRule.objects.all()
        self._cache: Dict[Tuple[str, str], Optional[PayoutRule]] = {}

    def resolve_rule(self, product_id: str, vendor_name: str) -> Optional[PayoutRule]:
        key = (str(product_id), vendor_name)
        if key not in self._cache:
            self._cache[key] = self._rules.filter(product_id=key[0], vendor_name=vendor_name).first()
        return self._cache[key]

    def preload(self, pairs: Iterable[Tuple[str, str]]) -> None:
        missing = {(str(p), v) for p, v in pairs} - set(self._cache)
        if not missing:
            return
        found = {
            (rule.product_id, rule.vendor_name): rule
            for rule in self._rules.filter(
                product_id__in={p for p, _ in missing},
                vendor_name__in={v for _, v in missing},
            )
        }
        for key in missing:
            self._cache[key] = found.get(key)

    def invalidate(self) -> None:
        self._cache.clear()
