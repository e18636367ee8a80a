"""
Operator-configured financial settings: tier table, default margin and
withdrawal limits. Read-mostly; edits never touch already-distributed orders,
which keep their stored breakdown.
"""

import logging
from datetime import datetime
from decimal import Decimal

from settlement.config.constants import (
    DEFAULT_MARGIN_PERCENT,
    DEFAULT_MAXIMUM_WITHDRAWAL,
    DEFAULT_MINIMUM_WITHDRAWAL,
    DEFAULT_TIER_BANDS,
    DEFAULT_WITHDRAWAL_FEE_FLAT,
    DEFAULT_WITHDRAWAL_FEE_PERCENT,
)
from settlement.config.env import SETTINGS_CACHE_SECONDS
from settlement.models.settings import FinancialSettingsUpdate, TierBand, WithdrawalLimits
from settlement.utils.audit import log_audit
from settlement.utils.cache import SETTINGS_NAMESPACE, cache
from settlement.utils.errors import ValidationError
from settlement.utils.events import SETTINGS_CHANGED, emit
from settlement.utils.money import format_money, to_bson, to_decimal
from settlement.utils.tiers import CommissionCalculator, TierTable

logger = logging.getLogger(__name__)

DEFAULT_WITHDRAWAL = {
    "minimum": DEFAULT_MINIMUM_WITHDRAWAL,
    "maximum": DEFAULT_MAXIMUM_WITHDRAWAL,
    "fee_percent": DEFAULT_WITHDRAWAL_FEE_PERCENT,
    "fee_flat": DEFAULT_WITHDRAWAL_FEE_FLAT,
}


async def _settings_doc(db) -> dict:
    doc = cache.get(SETTINGS_NAMESPACE, "system_settings")
    if doc is not None:
        return doc

    doc = await db.system_settings.find_one({}) or {}
    cache.set(SETTINGS_NAMESPACE, "system_settings", doc, ttl=SETTINGS_CACHE_SECONDS)
    return doc


async def get_tier_table(db) -> TierTable:
    doc = await _settings_doc(db)
    bands = doc.get("tier_bands") or DEFAULT_TIER_BANDS
    return TierTable([TierBand.from_doc(b) for b in bands])


async def get_default_margin(db) -> Decimal:
    doc = await _settings_doc(db)
    return to_decimal(doc.get("default_margin_percent") or DEFAULT_MARGIN_PERCENT, field="default_margin_percent")


async def get_withdrawal_limits(db) -> WithdrawalLimits:
    doc = await _settings_doc(db)
    withdrawal = {**DEFAULT_WITHDRAWAL, **(doc.get("withdrawal") or {})}
    return WithdrawalLimits.from_doc(withdrawal)


async def get_calculator(db) -> CommissionCalculator:
    return CommissionCalculator(
        await get_tier_table(db),
        default_margin_percent=await get_default_margin(db),
    )


def _band_to_doc(band: TierBand) -> dict:
    return {
        "min_price": to_bson(band.min_price),
        "max_price": None if band.max_price is None else to_bson(band.max_price),
        "margin_percent": to_bson(band.margin_percent),
    }


def _band_to_response(band: TierBand) -> dict:
    return {
        "min_price": format_money(band.min_price),
        "max_price": None if band.max_price is None else format_money(band.max_price),
        "margin_percent": str(band.margin_percent),
    }


async def get_financial_settings(db) -> dict:
    table = await get_tier_table(db)
    limits = await get_withdrawal_limits(db)
    return {
        "tier_bands": [_band_to_response(b) for b in table.bands],
        "default_margin_percent": str(await get_default_margin(db)),
        "withdrawal": {
            "minimum": format_money(limits.minimum),
            "maximum": format_money(limits.maximum),
            "fee_percent": str(limits.fee_percent),
            "fee_flat": format_money(limits.fee_flat),
        },
    }


async def update_financial_settings(db, data: FinancialSettingsUpdate, *, actor_id: str) -> dict:
    update = {"updated_at": datetime.utcnow()}

    if data.tier_bands is not None:
        # Raises ValidationError on gaps in ordering / overlaps
        table = TierTable(data.tier_bands)
        update["tier_bands"] = [_band_to_doc(b) for b in table.bands]

    if data.withdrawal is not None:
        if data.withdrawal.minimum > data.withdrawal.maximum:
            raise ValidationError("Minimum withdrawal cannot exceed maximum withdrawal")
        update["withdrawal"] = {
            "minimum": to_bson(data.withdrawal.minimum),
            "maximum": to_bson(data.withdrawal.maximum),
            "fee_percent": to_bson(data.withdrawal.fee_percent),
            "fee_flat": to_bson(data.withdrawal.fee_flat),
        }

    if data.default_margin_percent is not None:
        update["default_margin_percent"] = to_bson(data.default_margin_percent)

    await db.system_settings.update_one({}, {"$set": update}, upsert=True)
    await emit(SETTINGS_CHANGED, fields=sorted(k for k in update if k != "updated_at"))

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role="admin",
        action="FINANCIAL_SETTINGS_UPDATED",
        metadata={"fields": sorted(k for k in update if k != "updated_at")},
    )
    logger.info("FINANCIAL_SETTINGS_UPDATED actor=%s", actor_id)

    return await get_financial_settings(db)
