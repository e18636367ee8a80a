"""
Forward / inverse price derivation and the catalog recalculation job.
"""

import asyncio
from decimal import Decimal

import pytest
from bson import ObjectId
from bson.decimal128 import Decimal128

from settlement.models.settings import TierBand
from settlement.utils.errors import ValidationError
from settlement.utils.money import from_bson
from settlement.utils.pricing import (
    claim_recalculation,
    get_recalculation_status,
    recalculate_all_product_prices,
    reseller_price_from_supplier_price,
    run_price_recalculation,
    supplier_price_from_reseller_price,
)
from settlement.utils.tiers import CommissionCalculator, TierTable


BOUNDARY_COSTS = [
    "0.01",
    "999.99",
    "1000",
    "1000.01",
    "4999.99",
    "5000",
    "5000.01",
    "9999.99",
    "10000",
    "10000.01",
    "250000",
]


class TestForwardPrice:

    def test_adds_band_commission(self, calculator):
        assert reseller_price_from_supplier_price("1000", calculator) == Decimal("1100")
        assert reseller_price_from_supplier_price("2000", calculator) == Decimal("2160")

    def test_zero_cost(self, calculator):
        assert reseller_price_from_supplier_price("0", calculator) == Decimal("0")

    def test_negative_cost_rejected(self, calculator):
        with pytest.raises(ValidationError):
            reseller_price_from_supplier_price("-1", calculator)

    def test_monotone_inside_a_band(self, calculator):
        low = reseller_price_from_supplier_price("1200", calculator)
        high = reseller_price_from_supplier_price("1200.01", calculator)
        assert high > low


class TestInversePrice:

    @pytest.mark.parametrize("cost", BOUNDARY_COSTS)
    def test_round_trip_at_band_boundaries(self, calculator, cost):
        reseller = reseller_price_from_supplier_price(cost, calculator)
        assert supplier_price_from_reseller_price(reseller, calculator) == Decimal(cost)

    @pytest.mark.parametrize("price", ["1100", "1090", "5400", "10500.0105", "33.33"])
    def test_forward_of_inverse_is_within_a_cent(self, calculator, price):
        supplier = supplier_price_from_reseller_price(price, calculator)
        reseller = reseller_price_from_supplier_price(supplier, calculator)
        assert abs(reseller - Decimal(price)) <= Decimal("0.01")

    def test_non_positive_price_rejected(self, calculator):
        with pytest.raises(ValidationError):
            supplier_price_from_reseller_price("0", calculator)

    def test_price_between_band_images_uses_bisection(self):
        """Margin jumps from 5% to 20% at 100: prices in (105, 120) have no preimage."""
        table = TierTable([
            TierBand(min_price=Decimal("0"), max_price=Decimal("100"), margin_percent=Decimal("5")),
            TierBand(min_price=Decimal("100.01"), max_price=None, margin_percent=Decimal("20")),
        ])
        calculator = CommissionCalculator(table)

        supplier = supplier_price_from_reseller_price("110", calculator)

        assert supplier == Decimal("100.00")
        assert reseller_price_from_supplier_price(supplier, calculator) <= Decimal("110")


class TestRecalculation:

    async def _products(self, db):
        docs = {
            "fresh": {"_id": ObjectId(), "supplier_price": Decimal128("1000")},
            "current": {
                "_id": ObjectId(),
                "supplier_price": Decimal128("1000"),
                "marketer_price": Decimal128("1100"),
            },
            "manual": {
                "_id": ObjectId(),
                "supplier_price": Decimal128("1000"),
                "marketer_price": Decimal128("5"),
                "price_manually_adjusted": True,
            },
            "no_cost": {
                "_id": ObjectId(),
                "supplier_price": Decimal128("0"),
                "marketer_price": Decimal128("1100"),
            },
            "broken": {"_id": ObjectId(), "supplier_price": "abc"},
        }
        await db.products.insert_many(list(docs.values()))
        return docs

    async def test_recalculates_catalog(self, db):
        docs = await self._products(db)

        result = await recalculate_all_product_prices(db)

        assert result.total == 5
        assert result.updated == 2
        assert result.unchanged == 1
        assert result.skipped == 1
        assert result.errors == 1
        assert result.failures[0]["product_id"] == str(docs["broken"]["_id"])

        fresh = await db.products.find_one({"_id": docs["fresh"]["_id"]})
        assert from_bson(fresh["marketer_price"]) == Decimal("1100")

        derived = await db.products.find_one({"_id": docs["no_cost"]["_id"]})
        assert from_bson(derived["supplier_price"]) == Decimal("1000")

    async def test_manual_override_is_never_touched(self, db):
        docs = await self._products(db)

        await recalculate_all_product_prices(db)

        manual = await db.products.find_one({"_id": docs["manual"]["_id"]})
        assert from_bson(manual["marketer_price"]) == Decimal("5")

    async def test_progress_is_reported(self, db):
        await self._products(db)
        calls = []

        async def progress(processed, total):
            calls.append((processed, total))

        await recalculate_all_product_prices(db, on_progress=progress)

        assert calls[0] == (0, 5)
        assert calls[-1] == (5, 5)

    async def test_status_defaults_to_idle(self, db):
        assert await get_recalculation_status(db) == {"status": "idle"}

    async def test_background_run_records_completion(self, db):
        await self._products(db)

        await run_price_recalculation(db)

        status = await get_recalculation_status(db)
        assert status["status"] == "completed"
        assert status["result"]["updated"] == 2

    async def test_only_one_caller_claims_the_job(self, db):
        outcomes = await asyncio.gather(claim_recalculation(db), claim_recalculation(db))

        assert sorted(outcomes) == [False, True]
        assert (await get_recalculation_status(db))["status"] == "running"

    async def test_finished_job_can_be_claimed_again(self, db):
        await self._products(db)
        await run_price_recalculation(db)

        assert await claim_recalculation(db) is True

        status = await get_recalculation_status(db)
        assert status["status"] == "running"
        assert "result" not in status
