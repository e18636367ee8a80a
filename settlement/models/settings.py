from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from settlement.utils.money import to_decimal


class TierBand(BaseModel):
    min_price: Decimal = Field(..., ge=0)
    max_price: Optional[Decimal] = Field(None, ge=0)   # None = unbounded
    margin_percent: Decimal = Field(..., ge=0, le=100)

    @classmethod
    def from_doc(cls, doc: dict) -> "TierBand":
        max_price = doc.get("max_price")
        return cls(
            min_price=to_decimal(doc.get("min_price"), field="min_price"),
            max_price=None if max_price is None else to_decimal(max_price, field="max_price"),
            margin_percent=to_decimal(doc.get("margin_percent"), field="margin_percent"),
        )

    def contains(self, price: Decimal) -> bool:
        if price < self.min_price:
            return False
        return self.max_price is None or price <= self.max_price

    def distance(self, price: Decimal) -> Decimal:
        if price < self.min_price:
            return self.min_price - price
        if self.max_price is not None and price > self.max_price:
            return price - self.max_price
        return Decimal("0")


class WithdrawalLimits(BaseModel):
    minimum: Decimal = Field(..., ge=0)
    maximum: Decimal = Field(..., gt=0)
    fee_percent: Decimal = Field(Decimal("0"), ge=0, le=100)
    fee_flat: Decimal = Field(Decimal("0"), ge=0)

    @classmethod
    def from_doc(cls, doc: dict) -> "WithdrawalLimits":
        return cls(
            minimum=to_decimal(doc.get("minimum"), field="minimum"),
            maximum=to_decimal(doc.get("maximum"), field="maximum"),
            fee_percent=to_decimal(doc.get("fee_percent"), field="fee_percent"),
            fee_flat=to_decimal(doc.get("fee_flat"), field="fee_flat"),
        )


class FinancialSettingsUpdate(BaseModel):
    tier_bands: Optional[List[TierBand]] = None
    withdrawal: Optional[WithdrawalLimits] = None
    default_margin_percent: Optional[Decimal] = Field(None, ge=0, le=100)
