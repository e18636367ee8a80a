"""
Profit distribution and reversal.

Distribution credits the operator (commission), the marketer (profit, on
marketer orders) and the supplier (remainder) exactly once per fulfilled
order. The order document is claimed with a conditional update that also
stores the breakdown and the credited parties, so a second call or the losing
side of a race never credits again. Reversal debits exactly those stored
parties, never a recomputed split.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from bson import ObjectId

from settlement.config.constants import FULFILLED_STATUS, REVERSIBLE_STATUSES, ROLE_ADMIN, ROLE_MARKETER
from settlement.config.env import PLATFORM_WALLET_USER_ID
from settlement.database import run_transaction
from settlement.models.order import ProfitBreakdown
from settlement.utils.alerts import ALERT_WALLET_DEFICIT, alert_operator
from settlement.utils.errors import ConcurrencyConflictError, LedgerError, NotFoundError, ValidationError
from settlement.utils.events import ORDER_CHANGED, ORDER_PROFITS_CHANGED, emit
from settlement.utils.money import ZERO, bson_safe, from_bson, quantize_money, to_decimal
from settlement.utils.order_timeline import record_order_event
from settlement.utils.settings_provider import get_calculator
from settlement.utils.tiers import CommissionCalculator, supplier_cost_total
from settlement.utils.wallet_service import credit, debit

logger = logging.getLogger(__name__)

PARTY_OPERATOR = "operator"
PARTY_MARKETER = "marketer"
PARTY_SUPPLIER = "supplier"


# =====================================================
# BREAKDOWN (pure)
# =====================================================

def _supplier_cost(order: dict):
    stored = order.get("supplier_cost_total")
    if stored is not None:
        return to_decimal(stored, field="supplier_cost_total")
    try:
        return supplier_cost_total(order.get("items") or [])
    except ValueError:
        raise ValidationError(
            "Cannot determine supplier cost for marketer order",
            order_id=str(order.get("_id")),
        )


def compute_breakdown(order: dict, calculator: CommissionCalculator) -> ProfitBreakdown:
    total = quantize_money(to_decimal(order.get("total"), field="total"))
    if total <= ZERO:
        raise ValidationError("Order total must be positive", order_id=str(order.get("_id")))

    result = calculator.calculate(order.get("items"), fallback_total=total)
    commission = quantize_money(result.commission)

    if order.get("customer_role") == ROLE_MARKETER:
        cost = quantize_money(_supplier_cost(order))
        marketer_profit = total - cost - commission
        if marketer_profit < ZERO:
            logger.warning(
                "MARKETER_PROFIT_ANOMALY order=%s total=%s cost=%s commission=%s",
                order.get("_id"),
                total,
                cost,
                commission,
            )
            marketer_profit = ZERO
    else:
        # Wholesalers and other direct buyers carry no reseller margin
        marketer_profit = ZERO

    supplier_profit = total - marketer_profit - commission
    if supplier_profit < ZERO:
        raise ValidationError(
            "Commission exceeds order total",
            order_id=str(order.get("_id")),
            total=total,
            commission=commission,
        )

    return ProfitBreakdown(
        total=total,
        commission=commission,
        marketer_profit=marketer_profit,
        supplier_profit=supplier_profit,
        degraded=result.degraded,
    )


async def preview_breakdown(db, items: list, total, customer_role: str) -> ProfitBreakdown:
    calculator = await get_calculator(db)
    return compute_breakdown(
        {"items": items, "total": total, "customer_role": customer_role},
        calculator,
    )


# =====================================================
# PARTIES
# =====================================================

async def resolve_operator_user_id(db) -> str:
    if PLATFORM_WALLET_USER_ID:
        return PLATFORM_WALLET_USER_ID

    admin = await db.users.find_one({"role": ROLE_ADMIN}, sort=[("_id", 1)])
    if not admin:
        raise ValidationError("No platform wallet configured")
    return str(admin["_id"])


def _marketer_id(order: dict) -> Optional[str]:
    marketer_id = order.get("marketer_id") or order.get("customer_id")
    return str(marketer_id) if marketer_id else None


def _build_parties(order: dict, breakdown: ProfitBreakdown, operator_id: str, sequence: int) -> List[dict]:
    supplier_id = order.get("supplier_id")
    if not supplier_id:
        raise ValidationError("Order has no supplier", order_id=str(order["_id"]))

    shares = [(PARTY_OPERATOR, operator_id, breakdown.commission)]
    if breakdown.marketer_profit > ZERO:
        marketer_id = _marketer_id(order)
        if not marketer_id:
            raise ValidationError("Marketer order has no marketer", order_id=str(order["_id"]))
        shares.append((PARTY_MARKETER, marketer_id, breakdown.marketer_profit))
    shares.append((PARTY_SUPPLIER, str(supplier_id), breakdown.supplier_profit))

    return [
        {
            "party": party,
            "user_id": user_id,
            "amount": amount,
            "reference": f"order:{order['_id']}:d{sequence}:{party}",
        }
        for party, user_id, amount in shares
        if amount > ZERO
    ]


def order_object_id(order_id) -> ObjectId:
    if isinstance(order_id, ObjectId):
        return order_id
    if not ObjectId.is_valid(str(order_id)):
        raise ValidationError("Invalid order id", order_id=str(order_id))
    return ObjectId(str(order_id))


# =====================================================
# DISTRIBUTION
# =====================================================

async def distribute_order_profits(
    db,
    order: dict,
    breakdown: ProfitBreakdown,
    operator_id: str,
    txn,
    *,
    actor_id=None,
    actor_role: str = "system",
) -> ProfitBreakdown:
    """Claim the order and credit every party inside the caller's ledger transaction."""
    sequence = int((order.get("distribution") or {}).get("sequence", 0)) + 1
    parties = _build_parties(order, breakdown, operator_id, sequence)
    now = datetime.utcnow()

    claim = await db.orders.update_one(
        {
            "_id": order["_id"],
            "status": FULFILLED_STATUS,
            "profits_distributed": {"$ne": True},
        },
        {
            "$set": {
                **breakdown.to_doc(),
                "profits_distributed": True,
                "profits_distributed_at": now,
                "distribution": {"sequence": sequence, "parties": bson_safe(parties)},
            }
        },
        session=txn.session,
    )

    if claim.modified_count == 0:
        stored = await db.orders.find_one({"_id": order["_id"]}, session=txn.session)
        if stored and stored.get("profits_distributed"):
            logger.info("PROFITS_ALREADY_DISTRIBUTED order=%s", order["_id"])
            return ProfitBreakdown.from_order(stored)
        raise ValidationError(
            "Order is no longer eligible for profit distribution",
            order_id=str(order["_id"]),
        )

    previous = {
        key: order.get(key)
        for key in (
            "commission",
            "marketer_profit",
            "supplier_profit",
            "commission_degraded",
            "profits_distributed_at",
            "distribution",
        )
    }

    async def release_claim():
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {**previous, "profits_distributed": False}},
        )

    txn.on_rollback(release_claim)

    for party in parties:
        await credit(
            db,
            party["user_id"],
            party["amount"],
            f"{party['party']}_share",
            reference=party["reference"],
            txn=txn,
            metadata={"order_id": str(order["_id"]), "sequence": sequence},
        )

    async def record():
        await record_order_event(
            db,
            order_id=order["_id"],
            event="PROFITS_DISTRIBUTED",
            actor_role=actor_role,
            actor_id=actor_id,
            metadata={
                "sequence": sequence,
                "commission": breakdown.commission,
                "marketer_profit": breakdown.marketer_profit,
                "supplier_profit": breakdown.supplier_profit,
                "degraded": breakdown.degraded,
            },
        )
        await emit(ORDER_PROFITS_CHANGED, order_id=str(order["_id"]))

    txn.after_commit(record)

    logger.info(
        "PROFITS_DISTRIBUTED order=%s commission=%s marketer=%s supplier=%s",
        order["_id"],
        breakdown.commission,
        breakdown.marketer_profit,
        breakdown.supplier_profit,
    )
    return breakdown


async def distribute_profits(db, order_id, *, actor_id=None, actor_role: str = "system") -> ProfitBreakdown:
    oid = order_object_id(order_id)
    order = await db.orders.find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order not found", order_id=str(oid))

    if order.get("profits_distributed"):
        return ProfitBreakdown.from_order(order)

    if order.get("status") != FULFILLED_STATUS:
        raise ValidationError(
            "Profits are distributed only for delivered orders",
            order_id=str(oid),
            status=order.get("status"),
        )

    calculator = await get_calculator(db)
    breakdown = compute_breakdown(order, calculator)
    operator_id = await resolve_operator_user_id(db)

    async def unit(txn):
        return await distribute_order_profits(
            db, order, breakdown, operator_id, txn,
            actor_id=actor_id, actor_role=actor_role,
        )

    return await run_transaction(db, unit)


# =====================================================
# REVERSAL
# =====================================================

async def _stored_parties(db, order: dict) -> List[dict]:
    parties = (order.get("distribution") or {}).get("parties")
    if parties:
        return parties

    # Orders distributed before parties were recorded on the order
    operator_id = await resolve_operator_user_id(db)
    return _build_parties(order, ProfitBreakdown.from_order(order), operator_id, 0)


async def reverse_order_profits(
    db,
    order: dict,
    txn,
    *,
    reason: str,
    actor_id=None,
    actor_role: str = "system",
) -> Optional[ProfitBreakdown]:
    """
    Undo a distribution inside the caller's ledger transaction.
    Returns None when the order holds no distributed profits.
    """
    if not order.get("profits_distributed"):
        return None

    parties = await _stored_parties(db, order)

    claim = await db.orders.update_one(
        {"_id": order["_id"], "profits_distributed": True},
        {"$set": {"profits_distributed": False, "profits_reversed_at": datetime.utcnow()}},
        session=txn.session,
    )
    if claim.modified_count == 0:
        logger.info("PROFITS_ALREADY_REVERSED order=%s", order["_id"])
        return None

    async def restore_claim():
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"profits_distributed": True, "profits_reversed_at": order.get("profits_reversed_at")}},
        )

    txn.on_rollback(restore_claim)

    deficits = []
    for party in parties:
        amount = from_bson(party["amount"])
        wallet = await debit(
            db,
            party["user_id"],
            amount,
            f"{party['party']}_reversal",
            reference=f"{party['reference']}:reversal",
            txn=txn,
            metadata={"order_id": str(order["_id"]), "reason": reason},
            allow_deficit=True,
        )
        if wallet.has_deficit:
            deficits.append({
                "user_id": party["user_id"],
                "party": party["party"],
                "balance": wallet.balance,
                "pending_withdrawals": wallet.pending_withdrawals,
            })

    breakdown = ProfitBreakdown.from_order(order)

    async def record():
        for deficit in deficits:
            await alert_operator(
                db,
                ALERT_WALLET_DEFICIT,
                "Profit reversal left a wallet in deficit",
                {"order_id": str(order["_id"]), **deficit},
            )
        await record_order_event(
            db,
            order_id=order["_id"],
            event="PROFITS_REVERSED",
            actor_role=actor_role,
            actor_id=actor_id,
            metadata={"reason": reason, "deficits": len(deficits)},
        )
        await emit(ORDER_PROFITS_CHANGED, order_id=str(order["_id"]))

    txn.after_commit(record)

    logger.info("PROFITS_REVERSED order=%s reason=%s deficits=%s", order["_id"], reason, len(deficits))
    return breakdown


async def reverse_profits(
    db,
    order_id,
    reason: str,
    *,
    status: str = "cancelled",
    actor_id=None,
    actor_role: str = "admin",
) -> ProfitBreakdown:
    """
    Operator reversal. The order leaves `delivered` in the same unit,
    otherwise the sweep would distribute it again.
    """
    if status not in REVERSIBLE_STATUSES:
        raise ValidationError("Reversal status must be cancelled or returned", status=status)

    oid = order_object_id(order_id)
    order = await db.orders.find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order not found", order_id=str(oid))
    if not order.get("profits_distributed"):
        raise ValidationError("Profits have not been distributed for this order", order_id=str(oid))

    async def unit(txn):
        current = await db.orders.find_one({"_id": oid}, session=txn.session)
        reversed_breakdown = await reverse_order_profits(
            db, current or {}, txn,
            reason=reason, actor_id=actor_id, actor_role=actor_role,
        )
        if reversed_breakdown is None:
            raise ValidationError("Profits have not been distributed for this order", order_id=str(oid))

        previous_status = current.get("status")
        if previous_status != status:
            moved = await db.orders.update_one(
                {"_id": oid, "status": previous_status},
                {"$set": {"status": status, "status_reason": reason, "updated_at": datetime.utcnow()}},
                session=txn.session,
            )
            if moved.modified_count == 0:
                raise ConcurrencyConflictError("Order status changed concurrently", order_id=str(oid))

            async def restore_status():
                await db.orders.update_one(
                    {"_id": oid},
                    {"$set": {"status": previous_status, "status_reason": current.get("status_reason")}},
                )

            txn.on_rollback(restore_status)

            async def record():
                await record_order_event(
                    db,
                    order_id=oid,
                    event="STATUS_CHANGED",
                    actor_role=actor_role,
                    actor_id=actor_id,
                    metadata={"from": previous_status, "to": status, "reason": reason, "profits_reversed": True},
                )
                await emit(ORDER_CHANGED, order_id=str(oid), status=status)

            txn.after_commit(record)

        return reversed_breakdown

    return await run_transaction(db, unit)


# =====================================================
# BULK
# =====================================================

@dataclass
class BulkResult:
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    def fail(self, item_id, error: Exception) -> None:
        message = error.message if isinstance(error, LedgerError) else str(error)
        self.failed.append({"id": str(item_id), "error": message})

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "summary": {
                "succeeded": len(self.succeeded),
                "skipped": len(self.skipped),
                "failed": len(self.failed),
            },
        }


async def distribute_pending_profits(db, order_ids=None, *, actor_id=None, actor_role: str = "system") -> BulkResult:
    """
    Distribute profits for the given orders, or for every delivered order
    not yet distributed. Each order is its own ledger transaction.
    """
    result = BulkResult()

    if order_ids is None:
        cursor = db.orders.find(
            {"status": FULFILLED_STATUS, "profits_distributed": {"$ne": True}},
            {"_id": 1},
        )
        targets = [doc["_id"] async for doc in cursor]
    else:
        targets = list(order_ids)

    for order_id in targets:
        try:
            oid = order_object_id(order_id)
            existing = await db.orders.find_one({"_id": oid}, {"profits_distributed": 1})
            if existing and existing.get("profits_distributed"):
                result.skipped.append(str(oid))
                continue

            await distribute_profits(db, oid, actor_id=actor_id, actor_role=actor_role)
            result.succeeded.append(str(oid))
        except LedgerError as exc:
            logger.warning("PROFIT_DISTRIBUTION_FAILED order=%s error=%s", order_id, exc.message)
            result.fail(order_id, exc)
        except Exception as exc:
            logger.exception("PROFIT_DISTRIBUTION_ERROR order=%s", order_id)
            result.fail(order_id, exc)

    return result
