"""
Operator earnings report.

Covers orders whose profits were distributed inside a period, split by the
buyer's role, plus wallet totals and the top earners. Amounts are summed as
Decimal here rather than in an aggregation pipeline so rounding matches the
ledger.
"""

import csv
import heapq
import io
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from bson import ObjectId

from settlement.utils.cache import EARNINGS_NAMESPACE, cache
from settlement.utils.errors import ValidationError
from settlement.utils.money import ZERO, format_money, from_bson

logger = logging.getLogger(__name__)

EARNINGS_PERIODS = ("week", "month", "year")
TOP_EARNERS_LIMIT = 10

_SHARE_FIELDS = ("total", "commission", "marketer_profit", "supplier_profit")


def resolve_period(
    period: str = "month",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """An explicit start/end pair wins over the named period."""
    if start is not None or end is not None:
        if start is None or end is None:
            raise ValidationError("Both start_date and end_date are required")
        if start > end:
            raise ValidationError("start_date must not be after end_date")
        return start, end

    now = now or datetime.utcnow()
    if period == "week":
        return now - timedelta(days=7), now
    if period == "month":
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0), now
    if period == "year":
        return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0), now

    raise ValidationError("Invalid period", period=period)


async def _order_totals(db, start: datetime, end: datetime) -> Tuple[dict, list]:
    totals = {key: ZERO for key in _SHARE_FIELDS}
    by_role = {}
    orders = 0
    degraded = 0

    cursor = db.orders.find(
        {
            "profits_distributed": True,
            "profits_distributed_at": {"$gte": start, "$lte": end},
        },
        {"customer_role": 1, "commission_degraded": 1, **{key: 1 for key in _SHARE_FIELDS}},
    )
    async for order in cursor:
        orders += 1
        if order.get("commission_degraded"):
            degraded += 1

        role = order.get("customer_role") or "unknown"
        bucket = by_role.setdefault(role, {"orders": 0, **{key: ZERO for key in _SHARE_FIELDS}})
        bucket["orders"] += 1

        for key in _SHARE_FIELDS:
            amount = from_bson(order.get(key))
            totals[key] += amount
            bucket[key] += amount

    statistics = {
        "distributed_orders": orders,
        "degraded_orders": degraded,
        "total_revenue": format_money(totals["total"]),
        "total_commission": format_money(totals["commission"]),
        "total_marketer_profit": format_money(totals["marketer_profit"]),
        "total_supplier_profit": format_money(totals["supplier_profit"]),
    }
    earnings_by_role = [
        {
            "role": role,
            "orders": bucket["orders"],
            "revenue": format_money(bucket["total"]),
            "commission": format_money(bucket["commission"]),
            "marketer_profit": format_money(bucket["marketer_profit"]),
            "supplier_profit": format_money(bucket["supplier_profit"]),
        }
        for role, bucket in sorted(by_role.items())
    ]
    return statistics, earnings_by_role


async def _wallet_totals(db, limit: int) -> Tuple[dict, list]:
    balance = ZERO
    earnings = ZERO
    withdrawals = ZERO
    wallets = []

    cursor = db.wallets.find({}, {"user_id": 1, "balance": 1, "total_earnings": 1, "total_withdrawals": 1})
    async for wallet in cursor:
        balance += from_bson(wallet.get("balance"))
        earnings += from_bson(wallet.get("total_earnings"))
        withdrawals += from_bson(wallet.get("total_withdrawals"))
        wallets.append(wallet)

    top = heapq.nlargest(limit, wallets, key=lambda w: from_bson(w.get("total_earnings")))

    user_ids = [ObjectId(w["user_id"]) for w in top if ObjectId.is_valid(str(w.get("user_id")))]
    users = {}
    if user_ids:
        async for user in db.users.find({"_id": {"$in": user_ids}}, {"name": 1, "role": 1}):
            users[str(user["_id"])] = user

    top_earners = []
    for wallet in top:
        user = users.get(str(wallet.get("user_id"))) or {}
        top_earners.append({
            "user_id": str(wallet.get("user_id")),
            "name": user.get("name"),
            "role": user.get("role"),
            "balance": format_money(wallet.get("balance")),
            "total_earnings": format_money(wallet.get("total_earnings")),
        })

    totals = {
        "total_wallet_balance": format_money(balance),
        "total_earnings": format_money(earnings),
        "total_withdrawals": format_money(withdrawals),
    }
    return totals, top_earners


async def get_earnings_summary(
    db,
    *,
    period: str = "month",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = TOP_EARNERS_LIMIT,
) -> dict:
    range_start, range_end = resolve_period(period, start, end)

    cache_key = f"report:{period}:{start}:{end}:{limit}"
    cached = cache.get(EARNINGS_NAMESPACE, cache_key)
    if cached is not None:
        return cached

    statistics, earnings_by_role = await _order_totals(db, range_start, range_end)
    wallet_totals, top_earners = await _wallet_totals(db, limit)

    report = {
        "period": period if start is None else "custom",
        "date_range": {"start": range_start.isoformat(), "end": range_end.isoformat()},
        "statistics": {**statistics, **wallet_totals},
        "earnings_by_role": earnings_by_role,
        "top_earners": top_earners,
    }
    cache.set(EARNINGS_NAMESPACE, cache_key, report, ttl=300)

    logger.info(
        "EARNINGS_REPORT period=%s orders=%s commission=%s",
        report["period"],
        statistics["distributed_orders"],
        statistics["total_commission"],
    )
    return report


def earnings_report_csv(report: dict) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)

    writer.writerow(["Earnings report"])
    writer.writerow(["Period", report["period"]])
    writer.writerow(["From", report["date_range"]["start"]])
    writer.writerow(["To", report["date_range"]["end"]])
    writer.writerow([])

    statistics = report["statistics"]
    writer.writerow(list(statistics.keys()))
    writer.writerow(list(statistics.values()))
    writer.writerow([])

    writer.writerow(["role", "orders", "revenue", "commission", "marketer_profit", "supplier_profit"])
    for row in report["earnings_by_role"]:
        writer.writerow([
            row["role"],
            row["orders"],
            row["revenue"],
            row["commission"],
            row["marketer_profit"],
            row["supplier_profit"],
        ])
    writer.writerow([])

    writer.writerow(["user_id", "name", "role", "balance", "total_earnings"])
    for row in report["top_earners"]:
        writer.writerow([row["user_id"], row["name"] or "", row["role"] or "", row["balance"], row["total_earnings"]])

    return buffer.getvalue()
