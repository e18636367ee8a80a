"""
Tier table lookup and commission calculation.

Bands are defined on the supplier price axis. A price that falls outside
every band (gap, below the first, above a bounded last band) resolves to the
nearest band, so pricing always produces a margin.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Sequence

from settlement.models.settings import TierBand
from settlement.utils.errors import ValidationError
from settlement.utils.money import ZERO, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class TierTable:
    def __init__(self, bands: Sequence[TierBand]):
        if not bands:
            raise ValidationError("Tier table must contain at least one band")

        ordered = sorted(bands, key=lambda b: b.min_price)

        for index, band in enumerate(ordered):
            is_last = index == len(ordered) - 1
            if band.max_price is None and not is_last:
                raise ValidationError("Only the last tier band may be unbounded")
            if band.max_price is not None and band.max_price < band.min_price:
                raise ValidationError(
                    f"Tier band {band.min_price}-{band.max_price} has max below min"
                )
            if not is_last:
                nxt = ordered[index + 1]
                if nxt.min_price <= band.max_price:
                    raise ValidationError(
                        f"Tier bands overlap at {nxt.min_price}"
                    )

        self.bands: List[TierBand] = ordered

    def band_for(self, price: Decimal) -> TierBand:
        for band in self.bands:
            if band.contains(price):
                return band
        # min() keeps the first of equal distances, i.e. the lower band
        return min(self.bands, key=lambda b: b.distance(price))

    def margin_for(self, price: Decimal) -> Decimal:
        return self.band_for(price).margin_percent


@dataclass(frozen=True)
class CommissionResult:
    commission: Decimal
    degraded: bool = False
    reason: str | None = None


def _normalize_items(items) -> List[tuple]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValueError("no items")

    normalized = []
    for item in items:
        if isinstance(item, dict):
            unit_price = item.get("unit_price")
            quantity = item.get("quantity")
        else:
            unit_price = getattr(item, "unit_price", None)
            quantity = getattr(item, "quantity", None)

        if unit_price is None:
            raise ValueError("item without unit_price")
        try:
            price = to_decimal(unit_price, field="unit_price")
        except ValidationError:
            raise ValueError("unparseable unit_price")
        if price < ZERO:
            raise ValueError("negative unit_price")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValueError("quantity must be a positive integer")

        normalized.append((price, quantity))
    return normalized


class CommissionCalculator:
    """Applies the tier table per line item and sums the result."""

    def __init__(self, tier_table: TierTable, default_margin_percent: Decimal = Decimal("5")):
        self.tier_table = tier_table
        self.default_margin_percent = default_margin_percent

    def item_commission(self, unit_price: Decimal, quantity: int = 1) -> Decimal:
        margin = self.tier_table.margin_for(unit_price)
        return unit_price * quantity * margin / HUNDRED

    def calculate(self, items, *, fallback_total=None) -> CommissionResult:
        try:
            normalized = _normalize_items(items)
        except ValueError as exc:
            return self._degraded(str(exc), fallback_total)

        commission = sum(
            (self.item_commission(price, quantity) for price, quantity in normalized),
            ZERO,
        )
        return CommissionResult(commission=commission)

    def commission_for_items(self, items, *, fallback_total=None) -> Decimal:
        return self.calculate(items, fallback_total=fallback_total).commission

    def _degraded(self, reason: str, fallback_total) -> CommissionResult:
        if fallback_total is None:
            raise ValidationError(
                f"Cannot calculate commission: {reason} and no order total given"
            )
        total = to_decimal(fallback_total, field="total")
        commission = total * self.default_margin_percent / HUNDRED

        logger.warning(
            "COMMISSION_DEGRADED reason=%s total=%s default_margin=%s",
            reason,
            total,
            self.default_margin_percent,
        )
        return CommissionResult(commission=commission, degraded=True, reason=reason)


def supplier_cost_total(items: Iterable) -> Decimal:
    """Sum of unit_price * quantity over well-formed items."""
    return sum(
        (price * quantity for price, quantity in _normalize_items(list(items))),
        ZERO,
    )
