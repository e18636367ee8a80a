"""
Order lifecycle hooks: status changes drive distribution / reversal, and
deletion reverses profits and restocks inventory.
"""

from decimal import Decimal

import pytest
from bson import ObjectId
from bson.decimal128 import Decimal128

from settlement.utils import order_service
from settlement.utils.errors import NotFoundError, ValidationError
from settlement.utils.order_service import bulk_delete_orders, delete_order, update_order_status
from settlement.utils.profit_service import distribute_profits
from settlement.utils.wallet_service import get_pending_earnings


class TestStatusChange:

    async def test_delivery_distributes_profits(self, db, users, insert_order, wallet_of):
        order = await insert_order(status="shipped")

        updated = await update_order_status(db, order["_id"], "delivered", actor_id="admin-1")

        assert updated["status"] == "delivered"
        assert updated["profits_distributed"] is True
        assert (await wallet_of(users["supplier"]["_id"])).balance == Decimal("400")

    async def test_cancelling_delivered_order_reverses(self, db, users, insert_order, wallet_of):
        order = await insert_order()
        await distribute_profits(db, order["_id"])

        updated = await update_order_status(
            db, order["_id"], "cancelled", actor_id="admin-1", reason="customer request"
        )

        assert updated["status"] == "cancelled"
        assert updated["profits_distributed"] is False
        assert (await wallet_of(users["marketer"]["_id"])).balance == Decimal("0")

        event = await db.order_timeline.find_one({"order_id": order["_id"], "event": "STATUS_CHANGED"})
        assert event["metadata"]["profits_reversed"] is True

    async def test_return_of_undistributed_order_only_changes_status(self, db, users, insert_order):
        order = await insert_order()

        updated = await update_order_status(db, order["_id"], "returned", actor_id="admin-1")

        assert updated["status"] == "returned"
        assert await db.wallet_transactions.count_documents({}) == 0

    async def test_leaving_delivered_reverses_profits(self, db, users, insert_order, wallet_of):
        order = await insert_order()
        await distribute_profits(db, order["_id"])

        moved_back = await update_order_status(db, order["_id"], "shipped", actor_id="admin-1")
        assert moved_back["profits_distributed"] is False

        cancelled = await update_order_status(db, order["_id"], "cancelled", actor_id="admin-1")

        assert cancelled["status"] == "cancelled"
        assert cancelled["profits_distributed"] is False
        assert (await wallet_of(users["supplier"]["_id"])).balance == Decimal("0")
        assert await db.wallet_transactions.count_documents({"type": "debit"}) == 3

    async def test_cancelling_flagged_open_order_reverses(self, db, users, insert_order, wallet_of):
        order = await insert_order()
        await distribute_profits(db, order["_id"])
        # Flag left set on an order that is no longer delivered
        await db.orders.update_one({"_id": order["_id"]}, {"$set": {"status": "shipped"}})

        cancelled = await update_order_status(db, order["_id"], "cancelled", actor_id="admin-1")

        assert cancelled["profits_distributed"] is False
        assert (await wallet_of(users["supplier"]["_id"])).balance == Decimal("0")
        assert (await wallet_of(users["admin"]["_id"])).balance == Decimal("0")

    async def test_status_change_refreshes_pending_earnings(self, db, users, insert_order):
        marketer = users["marketer"]
        order = await insert_order(status="shipped", marketer_profit=Decimal128("60"))
        assert (await get_pending_earnings(db, marketer))["pending_earnings"] == "60.00"

        await update_order_status(db, order["_id"], "cancelled", actor_id="admin-1")

        assert (await get_pending_earnings(db, marketer))["pending_earnings"] == "0.00"

    async def test_failed_distribution_keeps_delivery(self, db, insert_order):
        # No admin user and no platform wallet: distribution cannot resolve the operator
        await db.users.delete_many({"role": "admin"})
        order = await insert_order(status="shipped")

        updated = await update_order_status(db, order["_id"], "delivered", actor_id="admin-1")

        assert updated["status"] == "delivered"
        assert updated["profits_distributed"] is False

    async def test_same_status_is_a_no_op(self, db, users, insert_order):
        order = await insert_order(status="shipped")

        await update_order_status(db, order["_id"], "shipped", actor_id="admin-1")

        assert await db.order_timeline.count_documents({}) == 0

    async def test_unknown_status_rejected(self, db, users, insert_order):
        order = await insert_order()
        with pytest.raises(ValidationError):
            await update_order_status(db, order["_id"], "lost", actor_id="admin-1")

    async def test_unknown_order(self, db):
        with pytest.raises(NotFoundError):
            await update_order_status(db, ObjectId(), "shipped", actor_id="admin-1")


class TestDeleteOrder:

    async def test_delete_reverses_and_restocks(self, db, users, insert_order, wallet_of):
        product_id = ObjectId()
        await db.products.insert_one({"_id": product_id, "stock_quantity": 5})
        order = await insert_order(product_id=product_id)
        await distribute_profits(db, order["_id"])

        summary = await delete_order(db, order["_id"], actor_id="admin-1")

        assert summary == {
            "order_id": str(order["_id"]),
            "profits_reversed": True,
            "restocked_quantity": 2,
        }
        assert await db.orders.count_documents({"_id": order["_id"]}) == 0
        assert (await db.products.find_one({"_id": product_id}))["stock_quantity"] == 7
        assert (await wallet_of(users["supplier"]["_id"])).balance == Decimal("0")
        assert await db.audit_logs.count_documents({"action": "ORDER_DELETED"}) == 1

    async def test_pending_order_is_not_restocked(self, db, users, insert_order):
        product_id = ObjectId()
        await db.products.insert_one({"_id": product_id, "stock_quantity": 5})
        order = await insert_order(status="pending", product_id=product_id)

        summary = await delete_order(db, order["_id"], actor_id="admin-1")

        assert summary["profits_reversed"] is False
        assert summary["restocked_quantity"] == 0
        assert (await db.products.find_one({"_id": product_id}))["stock_quantity"] == 5

    async def test_delete_refreshes_pending_earnings(self, db, users, insert_order):
        supplier = users["supplier"]
        order = await insert_order(status="confirmed", supplier_profit=Decimal128("400"))
        assert (await get_pending_earnings(db, supplier))["pending_orders"] == 1

        await delete_order(db, order["_id"], actor_id="admin-1")

        assert (await get_pending_earnings(db, supplier))["pending_orders"] == 0

    async def test_unknown_order(self, db):
        with pytest.raises(NotFoundError):
            await delete_order(db, ObjectId(), actor_id="admin-1")


class TestBulkDelete:

    async def test_failing_order_is_left_intact(self, db, users, insert_order, wallet_of, monkeypatch):
        orders = [await insert_order() for _ in range(3)]
        for order in orders:
            await distribute_profits(db, order["_id"])
        bad_id = orders[1]["_id"]
        original = order_service.reverse_order_profits

        async def flaky_reverse(db_, order, txn, **kwargs):
            if order["_id"] == bad_id:
                raise RuntimeError("reversal rejected by ledger")
            return await original(db_, order, txn, **kwargs)

        monkeypatch.setattr(order_service, "reverse_order_profits", flaky_reverse)

        result = await bulk_delete_orders(db, [str(o["_id"]) for o in orders], actor_id="admin-1")

        assert result.succeeded == [str(orders[0]["_id"]), str(orders[2]["_id"])]
        assert result.failed == [{"id": str(bad_id), "error": "reversal rejected by ledger"}]

        survivor = await db.orders.find_one({"_id": bad_id})
        assert survivor["profits_distributed"] is True
        # Only the surviving order's shares remain credited
        assert (await wallet_of(users["supplier"]["_id"])).balance == Decimal("400")
        assert (await wallet_of(users["admin"]["_id"])).balance == Decimal("40")

    async def test_invalid_ids_are_reported(self, db, users):
        result = await bulk_delete_orders(db, ["nope", str(ObjectId())], actor_id="admin-1")

        assert result.succeeded == []
        assert len(result.failed) == 2
