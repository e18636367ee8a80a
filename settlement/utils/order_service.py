"""
Order lifecycle hooks shared by every caller (admin routes, bulk actions,
background sweep). Status changes and deletions go through here so the
profit ledger always follows the order.
"""

import logging
from datetime import datetime

from bson import ObjectId

from settlement.config.constants import (
    FULFILLED_STATUS,
    ORDER_STATUSES,
    STOCK_DEDUCTED_STATUSES,
)
from settlement.database import run_transaction
from settlement.utils.audit import log_audit
from settlement.utils.errors import ConcurrencyConflictError, LedgerError, NotFoundError, ValidationError
from settlement.utils.events import ORDER_CHANGED, emit
from settlement.utils.order_timeline import record_order_event
from settlement.utils.profit_service import (
    BulkResult,
    distribute_profits,
    order_object_id,
    reverse_order_profits,
)

logger = logging.getLogger(__name__)


# =====================================================
# INVENTORY
# =====================================================

async def restock_order_items(db, order: dict, txn) -> int:
    """Return each item's quantity to `products.stock_quantity`."""
    restocked = 0

    for item in order.get("items") or []:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not product_id or not isinstance(quantity, int) or quantity <= 0:
            continue
        if not ObjectId.is_valid(str(product_id)):
            logger.warning("RESTOCK_SKIPPED order=%s product=%s", order["_id"], product_id)
            continue

        pid = ObjectId(str(product_id))
        await db.products.update_one(
            {"_id": pid},
            {"$inc": {"stock_quantity": quantity}},
            session=txn.session,
        )

        async def undo(pid=pid, quantity=quantity):
            await db.products.update_one({"_id": pid}, {"$inc": {"stock_quantity": -quantity}})

        txn.on_rollback(undo)
        restocked += quantity

    return restocked


# =====================================================
# STATUS CHANGE
# =====================================================

async def update_order_status(
    db,
    order_id,
    status: str,
    *,
    actor_id,
    actor_role: str = "admin",
    reason: str | None = None,
) -> dict:
    if status not in ORDER_STATUSES:
        raise ValidationError("Invalid order status", status=status)

    oid = order_object_id(order_id)

    async def unit(txn):
        order = await db.orders.find_one({"_id": oid}, session=txn.session)
        if not order:
            raise NotFoundError("Order not found", order_id=str(oid))

        previous_status = order.get("status")
        if previous_status == status:
            return order, False

        result = await db.orders.update_one(
            {"_id": oid, "status": previous_status},
            {"$set": {"status": status, "status_reason": reason, "updated_at": datetime.utcnow()}},
            session=txn.session,
        )
        if result.modified_count == 0:
            raise ConcurrencyConflictError("Order status changed concurrently", order_id=str(oid))

        async def restore_status():
            await db.orders.update_one(
                {"_id": oid},
                {"$set": {"status": previous_status, "status_reason": order.get("status_reason")}},
            )

        txn.on_rollback(restore_status)

        # Profits stay credited only while the order is delivered
        reversed_profits = False
        if order.get("profits_distributed") and status != FULFILLED_STATUS:
            reversed_profits = await reverse_order_profits(
                db, order, txn,
                reason=f"order_{status}",
                actor_id=actor_id,
                actor_role=actor_role,
            ) is not None

        async def record():
            await record_order_event(
                db,
                order_id=oid,
                event="STATUS_CHANGED",
                actor_role=actor_role,
                actor_id=actor_id,
                metadata={
                    "from": previous_status,
                    "to": status,
                    "reason": reason,
                    "profits_reversed": reversed_profits,
                },
            )
            await emit(ORDER_CHANGED, order_id=str(oid), status=status)

        txn.after_commit(record)
        return order, True

    order, changed = await run_transaction(db, unit)

    if changed and status == FULFILLED_STATUS:
        # Distribution is its own ledger unit; a failure leaves the order
        # delivered and undistributed for the sweep worker to pick up.
        try:
            await distribute_profits(db, oid, actor_id=actor_id, actor_role=actor_role)
        except LedgerError as exc:
            logger.warning("PROFIT_DISTRIBUTION_DEFERRED order=%s error=%s", oid, exc.message)

    if changed:
        logger.info("ORDER_STATUS_CHANGED order=%s from=%s to=%s", oid, order.get("status"), status)

    return await db.orders.find_one({"_id": oid})


# =====================================================
# DELETION
# =====================================================

async def delete_order(db, order_id, *, actor_id, actor_role: str = "admin") -> dict:
    """
    Reverse distributed profits, restock inventory and delete the order as
    one ledger unit.
    """
    oid = order_object_id(order_id)

    async def unit(txn):
        order = await db.orders.find_one({"_id": oid}, session=txn.session)
        if not order:
            raise NotFoundError("Order not found", order_id=str(oid))

        reversed_breakdown = await reverse_order_profits(
            db, order, txn,
            reason="order_deleted",
            actor_id=actor_id,
            actor_role=actor_role,
        )

        restocked = 0
        if order.get("status") in STOCK_DEDUCTED_STATUSES:
            restocked = await restock_order_items(db, order, txn)

        result = await db.orders.delete_one({"_id": oid}, session=txn.session)
        if result.deleted_count == 0:
            raise ConcurrencyConflictError("Order deleted concurrently", order_id=str(oid))

        async def reinsert():
            await db.orders.insert_one(order)

        txn.on_rollback(reinsert)

        return {
            "order_id": str(oid),
            "profits_reversed": reversed_breakdown is not None,
            "restocked_quantity": restocked,
        }

    summary = await run_transaction(db, unit)
    await emit(ORDER_CHANGED, order_id=summary["order_id"], status=None)

    await log_audit(
        db,
        actor_id=actor_id,
        actor_role=actor_role,
        action="ORDER_DELETED",
        metadata=summary,
    )
    logger.info("ORDER_DELETED order=%s reversed=%s", oid, summary["profits_reversed"])
    return summary


async def bulk_delete_orders(db, order_ids, *, actor_id, actor_role: str = "admin") -> BulkResult:
    """One ledger unit per order; a failing order is recorded and the batch continues."""
    result = BulkResult()

    for order_id in order_ids:
        try:
            await delete_order(db, order_id, actor_id=actor_id, actor_role=actor_role)
            result.succeeded.append(str(order_id))
        except LedgerError as exc:
            logger.warning("ORDER_DELETE_FAILED order=%s error=%s", order_id, exc.message)
            result.fail(order_id, exc)
        except Exception as exc:
            logger.exception("ORDER_DELETE_ERROR order=%s", order_id)
            result.fail(order_id, exc)

    logger.info(
        "BULK_ORDER_DELETE succeeded=%s failed=%s",
        len(result.succeeded),
        len(result.failed),
    )
    return result
