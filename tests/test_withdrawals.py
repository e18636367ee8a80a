"""
Withdrawal requests: limits, fees, holds and the approval state machine.
"""

from decimal import Decimal

import pytest
import pytest_asyncio
from bson import ObjectId

from settlement.models.settings import FinancialSettingsUpdate, WithdrawalLimits
from settlement.utils.crypto import decrypt_sensitive_value, mask_wallet_number
from settlement.utils.errors import InsufficientBalanceError, NotFoundError, ValidationError
from settlement.utils.settings_provider import update_financial_settings
from settlement.utils.withdrawals import (
    approve_withdrawal,
    calculate_fees,
    complete_withdrawal,
    create_withdrawal,
    list_withdrawals,
    reject_withdrawal,
)

WALLET_NUMBER = "01012345678"


async def set_limits(db, **overrides):
    limits = {"minimum": "100", "maximum": "50000", "fee_percent": "0", "fee_flat": "0", **overrides}
    await update_financial_settings(
        db,
        FinancialSettingsUpdate(withdrawal=WithdrawalLimits(**limits)),
        actor_id="admin",
    )


class TestFees:

    def test_percentage_fee(self):
        assert calculate_fees(Decimal("750"), Decimal("2"), Decimal("0")) == Decimal("15.00")

    def test_flat_fee_is_added(self):
        assert calculate_fees(Decimal("100"), Decimal("1.5"), Decimal("5")) == Decimal("6.50")

    def test_fee_rounds_half_up(self):
        assert calculate_fees(Decimal("100.25"), Decimal("2"), Decimal("0")) == Decimal("2.01")


class TestCreateWithdrawal:

    async def test_request_within_available_balance(self, db, users, seed_wallet, wallet_of):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000", pending="200")
        await set_limits(db, fee_percent="2")

        withdrawal = await create_withdrawal(db, user_id, "750", WALLET_NUMBER)

        assert withdrawal["status"] == "pending"
        assert withdrawal["fees"] == "15.00"
        assert withdrawal["total_amount"] == "765.00"
        assert withdrawal["wallet_number"] == "*******5678"

        wallet = await wallet_of(user_id)
        assert wallet.pending_withdrawals == Decimal("965")
        assert wallet.balance == Decimal("1000")

    async def test_below_minimum_rejected(self, db, users, seed_wallet):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000", pending="200")

        with pytest.raises(ValidationError) as exc_info:
            await create_withdrawal(db, user_id, "50", WALLET_NUMBER)

        assert "Minimum" in exc_info.value.message
        assert await db.withdrawal_requests.count_documents({}) == 0

    async def test_wallet_minimum_raises_the_floor(self, db, users, seed_wallet):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000", minimum="300")

        with pytest.raises(ValidationError):
            await create_withdrawal(db, user_id, "200", WALLET_NUMBER)

    async def test_above_maximum_rejected(self, db, users, seed_wallet):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="100000")

        with pytest.raises(ValidationError):
            await create_withdrawal(db, user_id, "50000.01", WALLET_NUMBER)

    async def test_fees_count_against_available_balance(self, db, users, seed_wallet):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000", pending="200")
        await set_limits(db, fee_percent="2")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await create_withdrawal(db, user_id, "790", WALLET_NUMBER)

        assert exc_info.value.required == Decimal("805.80")
        assert exc_info.value.shortfall == Decimal("5.80")

    @pytest.mark.parametrize("number", ["12345", "abcdefghijkl", "1" * 21, ""])
    async def test_wallet_number_validated(self, db, users, seed_wallet, number):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000")

        with pytest.raises(ValidationError):
            await create_withdrawal(db, user_id, "150", number)

    async def test_amount_precision_validated(self, db, users, seed_wallet):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000")

        with pytest.raises(ValidationError):
            await create_withdrawal(db, user_id, "150.001", WALLET_NUMBER)

    async def test_notes_length_validated(self, db, users, seed_wallet):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000")

        with pytest.raises(ValidationError):
            await create_withdrawal(db, user_id, "150", WALLET_NUMBER, notes="x" * 501)

    async def test_wallet_number_stored_encrypted(self, db, users, seed_wallet):
        user_id = users["marketer"]["_id"]
        await seed_wallet(user_id, balance="1000")

        withdrawal = await create_withdrawal(db, user_id, "150", WALLET_NUMBER)

        stored = await db.withdrawal_requests.find_one({"_id": ObjectId(withdrawal["id"])})
        assert WALLET_NUMBER not in stored["wallet_number_encrypted"]
        assert decrypt_sensitive_value(stored["wallet_number_encrypted"]) == WALLET_NUMBER
        assert stored["wallet_number_masked"] == mask_wallet_number(WALLET_NUMBER)


class TestWithdrawalStateMachine:

    @pytest_asyncio.fixture
    async def pending(self, db, users, seed_wallet):
        await seed_wallet(users["supplier"]["_id"], balance="500")
        return await create_withdrawal(db, users["supplier"]["_id"], "200", WALLET_NUMBER)

    async def test_reject_releases_hold(self, db, users, pending, wallet_of):
        admin_id = str(users["admin"]["_id"])

        rejected = await reject_withdrawal(db, pending["id"], admin_id, "Account mismatch")

        assert rejected["status"] == "rejected"
        assert rejected["rejection_reason"] == "Account mismatch"
        wallet = await wallet_of(users["supplier"]["_id"])
        assert wallet.pending_withdrawals == Decimal("0")
        assert wallet.balance == Decimal("500")

    async def test_reject_requires_reason(self, db, users, pending):
        with pytest.raises(ValidationError):
            await reject_withdrawal(db, pending["id"], str(users["admin"]["_id"]), "  ")

    async def test_approve_then_complete(self, db, users, pending, wallet_of):
        admin_id = str(users["admin"]["_id"])

        approved = await approve_withdrawal(db, pending["id"], admin_id, notes="ok")
        assert approved["status"] == "approved"
        assert approved["processed_by"] == admin_id

        completed = await complete_withdrawal(db, pending["id"], admin_id, transfer_reference="TRX-1")
        assert completed["status"] == "completed"
        assert completed["transfer_reference"] == "TRX-1"

        wallet = await wallet_of(users["supplier"]["_id"])
        assert wallet.balance == Decimal("300")
        assert wallet.pending_withdrawals == Decimal("0")
        assert wallet.total_withdrawals == Decimal("200")

        actions = [doc["action"] async for doc in db.audit_logs.find({"action": {"$regex": "^WITHDRAWAL"}})]
        assert actions == ["WITHDRAWAL_APPROVED", "WITHDRAWAL_COMPLETED"]

    async def test_cannot_complete_pending_request(self, db, users, pending, wallet_of):
        with pytest.raises(ValidationError):
            await complete_withdrawal(db, pending["id"], str(users["admin"]["_id"]))

        wallet = await wallet_of(users["supplier"]["_id"])
        assert wallet.pending_withdrawals == Decimal("200")

    async def test_cannot_reject_approved_request(self, db, users, pending, wallet_of):
        admin_id = str(users["admin"]["_id"])
        await approve_withdrawal(db, pending["id"], admin_id)

        with pytest.raises(ValidationError):
            await reject_withdrawal(db, pending["id"], admin_id, "too late")

        wallet = await wallet_of(users["supplier"]["_id"])
        assert wallet.pending_withdrawals == Decimal("200")

    async def test_cannot_approve_twice(self, db, users, pending):
        admin_id = str(users["admin"]["_id"])
        await approve_withdrawal(db, pending["id"], admin_id)

        with pytest.raises(ValidationError):
            await approve_withdrawal(db, pending["id"], admin_id)

    async def test_unknown_request(self, db, users):
        with pytest.raises(NotFoundError):
            await approve_withdrawal(db, ObjectId(), str(users["admin"]["_id"]))

    async def test_listing_filters(self, db, users, pending):
        await approve_withdrawal(db, pending["id"], str(users["admin"]["_id"]))

        approved = await list_withdrawals(db, status="approved")
        own = await list_withdrawals(db, user_id=users["supplier"]["_id"])
        nothing = await list_withdrawals(db, user_id=users["marketer"]["_id"])

        assert approved["total"] == 1
        assert own["items"][0]["id"] == pending["id"]
        assert nothing["total"] == 0

    async def test_listing_rejects_unknown_status(self, db):
        with pytest.raises(ValidationError):
            await list_withdrawals(db, status="paid")
