from bson import ObjectId
from datetime import datetime

from settlement.utils.money import format_money


def serialize_object_id(value):
    return str(value) if isinstance(value, ObjectId) else value


def serialize_money(value):
    return format_money(value) if value is not None else None


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else None


def serialize_order(order: dict) -> dict:
    return {
        "id": str(order["_id"]),
        "order_number": order.get("order_number"),
        "status": order.get("status"),
        "customer_role": order.get("customer_role"),
        "customer_id": serialize_object_id(order.get("customer_id")),
        "supplier_id": serialize_object_id(order.get("supplier_id")),
        "marketer_id": serialize_object_id(order.get("marketer_id")),

        "total": serialize_money(order.get("total")),
        "commission": serialize_money(order.get("commission")),
        "marketer_profit": serialize_money(order.get("marketer_profit")),
        "supplier_profit": serialize_money(order.get("supplier_profit")),
        "commission_degraded": bool(order.get("commission_degraded", False)),

        "profits_distributed": bool(order.get("profits_distributed", False)),
        "profits_distributed_at": _iso(order.get("profits_distributed_at")),

        "created_at": _iso(order.get("created_at")),
        "updated_at": _iso(order.get("updated_at")),
    }


def serialize_breakdown(breakdown) -> dict:
    return {
        "total": format_money(breakdown.total),
        "commission": format_money(breakdown.commission),
        "marketer_profit": format_money(breakdown.marketer_profit),
        "supplier_profit": format_money(breakdown.supplier_profit),
        "degraded": breakdown.degraded,
    }

