"""
Reseller / supplier price derivation.

Forward: reseller = supplier + tiered commission on the supplier price.
Inverse: the tier bands live on the supplier axis, so the inverse is solved
band by band and falls back to a bounded bisection when a band boundary lies
between the two prices.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from settlement.config.constants import PRICE_CHANGE_TOLERANCE, RECALCULATION_PROGRESS_EVERY
from settlement.utils.errors import ValidationError
from settlement.utils.events import PRODUCTS_PRICES_CHANGED, emit
from settlement.utils.money import (
    CENT,
    ZERO,
    from_bson,
    has_cent_precision,
    quantize_money,
    to_bson,
    to_decimal,
)
from settlement.utils.settings_provider import get_calculator
from settlement.utils.tiers import HUNDRED, CommissionCalculator

logger = logging.getLogger(__name__)

BISECTION_MAX_STEPS = 64
BISECTION_RESOLUTION = Decimal("0.0001")


def reseller_price_from_supplier_price(cost, calculator: CommissionCalculator) -> Decimal:
    cost = to_decimal(cost, field="supplier_price")
    if cost < ZERO:
        raise ValidationError("Supplier price cannot be negative")
    return cost + calculator.item_commission(cost, 1)


def supplier_price_from_reseller_price(price, calculator: CommissionCalculator) -> Decimal:
    price = to_decimal(price, field="reseller_price")
    if price <= ZERO:
        raise ValidationError("Reseller price must be positive")

    table = calculator.tier_table
    candidates = []
    for band in table.bands:
        candidate = price / (1 + band.margin_percent / HUNDRED)
        if table.band_for(candidate) is band:
            candidates.append(candidate)

    # Supplier prices are stored in cents, so an exact cent candidate is the
    # true preimage when bands with different margins both fit.
    for candidate in candidates:
        if has_cent_precision(candidate):
            return quantize_money(candidate)

    for candidate in candidates:
        rounded = quantize_money(candidate)
        if abs(reseller_price_from_supplier_price(rounded, calculator) - price) <= CENT:
            return rounded

    logger.info("PRICE_INVERSE_BISECTION price=%s candidates=%s", price, len(candidates))
    return _bisect_supplier_price(price, calculator)


def _bisect_supplier_price(price: Decimal, calculator: CommissionCalculator) -> Decimal:
    lo, hi = ZERO, price
    best, best_gap = ZERO, price

    for _ in range(BISECTION_MAX_STEPS):
        mid = (lo + hi) / 2
        value = reseller_price_from_supplier_price(mid, calculator)
        gap = abs(value - price)
        if gap < best_gap:
            best, best_gap = mid, gap

        if value == price:
            break
        if value < price:
            lo = mid
        else:
            hi = mid
        if hi - lo < BISECTION_RESOLUTION:
            break

    return quantize_money(best)


# =====================================================
# BULK RECALCULATION
# =====================================================

ProgressCallback = Callable[[int, int], Awaitable[None]]


@dataclass
class RecalculationResult:
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failures: List[dict] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
            "failures": self.failures,
        }


RECALCULATION_JOB_ID = "price_recalculation"


async def _set_recalculation_status(db, status: str, **extra):
    await db.jobs.update_one(
        {"_id": RECALCULATION_JOB_ID},
        {"$set": {"status": status, **extra}},
        upsert=True,
    )


async def claim_recalculation(db) -> bool:
    """
    Mark the job running unless it already is. The fixed _id turns a
    concurrent claim on a running job into a duplicate key, so at most one
    caller wins.
    """
    try:
        await db.jobs.update_one(
            {"_id": RECALCULATION_JOB_ID, "status": {"$ne": "running"}},
            {
                "$set": {"status": "running", "started_at": datetime.utcnow()},
                "$unset": {"processed": "", "total": "", "completed_at": "", "result": "", "error": ""},
            },
            upsert=True,
        )
    except DuplicateKeyError:
        return False
    return True


async def _recalculate_product(db, product: dict, calculator: CommissionCalculator) -> str:
    supplier_price = from_bson(product.get("supplier_price"))
    marketer_price = from_bson(product.get("marketer_price"))
    now = datetime.utcnow()

    if supplier_price <= ZERO and marketer_price > ZERO:
        derived = supplier_price_from_reseller_price(marketer_price, calculator)
        await db.products.update_one(
            {"_id": product["_id"]},
            {"$set": {"supplier_price": to_bson(derived), "updated_at": now}},
        )
        return "updated"

    if supplier_price <= ZERO:
        return "unchanged"

    new_price = quantize_money(reseller_price_from_supplier_price(supplier_price, calculator))
    if abs(new_price - marketer_price) <= Decimal(PRICE_CHANGE_TOLERANCE):
        return "unchanged"

    # Guard against an operator override landing mid-run
    res = await db.products.update_one(
        {"_id": product["_id"], "price_manually_adjusted": {"$ne": True}},
        {"$set": {"marketer_price": to_bson(new_price), "updated_at": now}},
    )
    return "updated" if res.modified_count == 1 else "skipped"


async def recalculate_all_product_prices(
    db,
    *,
    on_progress: Optional[ProgressCallback] = None,
) -> RecalculationResult:
    """
    Re-derive marketer prices for the whole catalog from the current tiers.
    One write per product; a failing product is recorded and the run goes on.
    Products flagged price_manually_adjusted are never overwritten.
    """
    calculator = await get_calculator(db)
    products = await db.products.find({}).to_list(None)

    result = RecalculationResult(total=len(products))
    await _set_recalculation_status(db, "running", started_at=datetime.utcnow(), total=result.total)

    if on_progress:
        await on_progress(0, result.total)

    for processed, product in enumerate(products, start=1):
        if product.get("price_manually_adjusted") is True:
            result.skipped += 1
        else:
            try:
                outcome = await _recalculate_product(db, product, calculator)
                if outcome == "updated":
                    result.updated += 1
                elif outcome == "skipped":
                    result.skipped += 1
                else:
                    result.unchanged += 1
            except Exception as exc:
                logger.exception("PRICE_RECALCULATION_ERROR product=%s", product.get("_id"))
                result.failures.append({
                    "product_id": str(product.get("_id")) if isinstance(product.get("_id"), ObjectId) else product.get("_id"),
                    "error": str(exc),
                })

        if on_progress and processed % RECALCULATION_PROGRESS_EVERY == 0:
            await on_progress(processed, result.total)

    if on_progress and result.total:
        await on_progress(result.total, result.total)

    await _set_recalculation_status(
        db,
        "completed",
        completed_at=datetime.utcnow(),
        result=result.to_dict(),
    )
    await emit(PRODUCTS_PRICES_CHANGED, updated=result.updated)

    logger.info(
        "PRODUCT_PRICES_RECALCULATED total=%s updated=%s skipped=%s errors=%s",
        result.total,
        result.updated,
        result.skipped,
        result.errors,
    )
    return result


async def run_price_recalculation(db) -> None:
    """Background entry point: records progress and a failed status on crash."""

    async def store_progress(processed: int, total: int):
        await _set_recalculation_status(db, "running", processed=processed, total=total)

    try:
        await recalculate_all_product_prices(db, on_progress=store_progress)
    except Exception as exc:
        logger.exception("PRICE_RECALCULATION_FAILED")
        await _set_recalculation_status(
            db,
            "failed",
            completed_at=datetime.utcnow(),
            error=str(exc),
        )


async def get_recalculation_status(db) -> dict:
    doc = await db.jobs.find_one({"_id": RECALCULATION_JOB_ID}, {"_id": 0}) or {"status": "idle"}
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in doc.items()
    }
