"""
Operator earnings report: period window, per-role split, top earners and CSV.
"""

from datetime import datetime, timedelta

import pytest
from bson.decimal128 import Decimal128

from settlement.utils.earnings import earnings_report_csv, get_earnings_summary, resolve_period
from settlement.utils.errors import ValidationError
from settlement.utils.profit_service import distribute_profits


class TestResolvePeriod:

    NOW = datetime(2026, 5, 20, 15, 30)

    def test_week(self):
        assert resolve_period("week", now=self.NOW) == (self.NOW - timedelta(days=7), self.NOW)

    def test_month_starts_on_the_first(self):
        start, end = resolve_period("month", now=self.NOW)
        assert start == datetime(2026, 5, 1)
        assert end == self.NOW

    def test_year_starts_in_january(self):
        start, _ = resolve_period("year", now=self.NOW)
        assert start == datetime(2026, 1, 1)

    def test_explicit_range_wins(self):
        start, end = datetime(2025, 1, 1), datetime(2025, 2, 1)
        assert resolve_period("week", start, end, now=self.NOW) == (start, end)

    @pytest.mark.parametrize(
        "period,start,end",
        [
            ("decade", None, None),
            ("month", datetime(2025, 1, 1), None),
            ("month", datetime(2025, 2, 1), datetime(2025, 1, 1)),
        ],
    )
    def test_invalid_input(self, period, start, end):
        with pytest.raises(ValidationError):
            resolve_period(period, start, end, now=self.NOW)


class TestEarningsSummary:

    async def test_totals_by_role(self, db, users, insert_order):
        marketer_order = await insert_order()
        wholesale_order = await insert_order(customer_role="wholesaler", total="1500")
        await distribute_profits(db, marketer_order["_id"])
        await distribute_profits(db, wholesale_order["_id"])

        report = await get_earnings_summary(db)

        statistics = report["statistics"]
        assert statistics["distributed_orders"] == 2
        assert statistics["total_revenue"] == "2000.00"
        assert statistics["total_commission"] == "80.00"
        assert statistics["total_marketer_profit"] == "60.00"
        assert statistics["total_supplier_profit"] == "1860.00"
        assert statistics["total_earnings"] == "2000.00"
        assert statistics["total_withdrawals"] == "0.00"

        assert report["earnings_by_role"] == [
            {
                "role": "marketer",
                "orders": 1,
                "revenue": "500.00",
                "commission": "40.00",
                "marketer_profit": "60.00",
                "supplier_profit": "400.00",
            },
            {
                "role": "wholesaler",
                "orders": 1,
                "revenue": "1500.00",
                "commission": "40.00",
                "marketer_profit": "0.00",
                "supplier_profit": "1460.00",
            },
        ]

    async def test_orders_outside_the_window_are_excluded(self, db, users, insert_order):
        await insert_order(
            profits_distributed=True,
            profits_distributed_at=datetime(2020, 3, 1),
            commission=Decimal128("99"),
        )

        current = await get_earnings_summary(db, period="year")
        assert current["statistics"]["distributed_orders"] == 0

        historic = await get_earnings_summary(
            db, start=datetime(2020, 1, 1), end=datetime(2020, 12, 31)
        )
        assert historic["period"] == "custom"
        assert historic["statistics"]["total_commission"] == "99.00"

    async def test_top_earners_ordered_by_lifetime_earnings(self, db, users, seed_wallet):
        await seed_wallet(users["marketer"]["_id"], balance="50")
        await seed_wallet(users["supplier"]["_id"], balance="900")
        await seed_wallet(users["admin"]["_id"], balance="300")

        report = await get_earnings_summary(db, limit=2)

        assert [row["name"] for row in report["top_earners"]] == ["Supplier", "Operator"]
        assert report["top_earners"][0] == {
            "user_id": str(users["supplier"]["_id"]),
            "name": "Supplier",
            "role": "supplier",
            "balance": "900.00",
            "total_earnings": "900.00",
        }
        assert report["statistics"]["total_wallet_balance"] == "1250.00"

    async def test_report_refreshes_after_distribution(self, db, users, insert_order):
        order = await insert_order()
        assert (await get_earnings_summary(db))["statistics"]["distributed_orders"] == 0

        await distribute_profits(db, order["_id"])

        assert (await get_earnings_summary(db))["statistics"]["distributed_orders"] == 1


class TestEarningsCsv:

    async def test_sections(self, db, users, insert_order):
        order = await insert_order()
        await distribute_profits(db, order["_id"])

        content = earnings_report_csv(await get_earnings_summary(db))
        lines = content.splitlines()

        assert lines[0] == "Earnings report"
        assert lines[1] == "Period,month"
        assert "marketer,1,500.00,40.00,60.00,400.00" in lines
        assert any(line.startswith(f"{users['supplier']['_id']},Supplier,supplier,400.00") for line in lines)
