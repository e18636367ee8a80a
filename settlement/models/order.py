from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from settlement.utils.money import from_bson, to_bson


class OrderLineItem(BaseModel):
    product_id: Optional[str] = None
    unit_price: Decimal = Field(..., ge=0)   # supplier price, not resale price
    quantity: int = Field(..., gt=0)


class ProfitBreakdown(BaseModel):
    total: Decimal
    commission: Decimal
    marketer_profit: Decimal
    supplier_profit: Decimal
    degraded: bool = False

    @classmethod
    def from_order(cls, order: dict) -> "ProfitBreakdown":
        return cls(
            total=from_bson(order.get("total")),
            commission=from_bson(order.get("commission")),
            marketer_profit=from_bson(order.get("marketer_profit")),
            supplier_profit=from_bson(order.get("supplier_profit")),
            degraded=bool(order.get("commission_degraded", False)),
        )

    def to_doc(self) -> dict:
        return {
            "commission": to_bson(self.commission),
            "marketer_profit": to_bson(self.marketer_profit),
            "supplier_profit": to_bson(self.supplier_profit),
            "commission_degraded": self.degraded,
        }


class ProfitPreviewRequest(BaseModel):
    items: List[OrderLineItem]
    total: Decimal = Field(..., gt=0)
    customer_role: str


class OrderStatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None


class BulkOrderIds(BaseModel):
    order_ids: List[str] = Field(..., min_length=1)
