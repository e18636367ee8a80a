"""
Withdrawal request workflow.

    pending --approve--> approved --complete--> completed
    pending --reject---> rejected

Creating a request holds `total_amount` against the wallet; rejecting
releases the hold; completing converts it into a permanent debit. Every
transition is a conditional update on the current status.
"""

import logging
from datetime import datetime
from decimal import Decimal

from bson import ObjectId
from pymongo import DESCENDING

from settlement.config.constants import (
    WALLET_NUMBER_MAX_LENGTH,
    WALLET_NUMBER_MIN_LENGTH,
    WITHDRAWAL_NOTES_MAX_LENGTH,
)
from settlement.database import run_transaction
from settlement.utils.audit import log_audit
from settlement.utils.crypto import encrypt_sensitive_value, mask_wallet_number
from settlement.utils.errors import InsufficientBalanceError, NotFoundError, ValidationError
from settlement.utils.money import (
    format_money,
    from_bson,
    has_cent_precision,
    quantize_money,
    to_bson,
    to_decimal,
)
from settlement.utils.settings_provider import get_withdrawal_limits
from settlement.utils.tiers import HUNDRED
from settlement.utils.wallet_service import (
    finalize_withdrawal,
    get_or_create_wallet,
    hold_for_withdrawal,
    release_hold,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_COMPLETED = "completed"

WITHDRAWAL_STATUSES = {STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_COMPLETED}


def calculate_fees(amount: Decimal, fee_percent: Decimal, fee_flat: Decimal) -> Decimal:
    return quantize_money(amount * fee_percent / HUNDRED + fee_flat)


def _validate_wallet_number(wallet_number) -> str:
    value = (wallet_number or "").strip()
    if not value.isdigit() or not (WALLET_NUMBER_MIN_LENGTH <= len(value) <= WALLET_NUMBER_MAX_LENGTH):
        raise ValidationError(
            f"Wallet number must be {WALLET_NUMBER_MIN_LENGTH}-{WALLET_NUMBER_MAX_LENGTH} digits"
        )
    return value


def _validate_amount(amount) -> Decimal:
    value = to_decimal(amount)
    if value <= 0:
        raise ValidationError("Withdrawal amount must be positive", amount=value)
    if not has_cent_precision(value):
        raise ValidationError("Withdrawal amount must have at most 2 decimal places", amount=value)
    return value


def _withdrawal_oid(withdrawal_id) -> ObjectId:
    if isinstance(withdrawal_id, ObjectId):
        return withdrawal_id
    if not ObjectId.is_valid(str(withdrawal_id)):
        raise ValidationError("Invalid withdrawal id", withdrawal_id=str(withdrawal_id))
    return ObjectId(str(withdrawal_id))


def serialize_withdrawal(doc: dict) -> dict:
    def iso(value):
        return value.isoformat() if isinstance(value, datetime) else None

    return {
        "id": str(doc["_id"]),
        "user_id": doc["user_id"],
        "amount": format_money(doc["amount"]),
        "fees": format_money(doc["fees"]),
        "total_amount": format_money(doc["total_amount"]),
        "status": doc["status"],
        "wallet_number": doc.get("wallet_number_masked"),
        "notes": doc.get("notes"),
        "admin_notes": doc.get("admin_notes"),
        "rejection_reason": doc.get("rejection_reason"),
        "transfer_reference": doc.get("transfer_reference"),
        "requested_at": iso(doc.get("requested_at")),
        "processed_at": iso(doc.get("processed_at")),
        "processed_by": doc.get("processed_by"),
        "completed_at": iso(doc.get("completed_at")),
    }


# =====================================================
# CREATE
# =====================================================

async def create_withdrawal(db, user_id, amount, wallet_number, notes: str | None = None) -> dict:
    user_id = str(user_id)
    amount = _validate_amount(amount)
    wallet_number = _validate_wallet_number(wallet_number)
    if notes and len(notes) > WITHDRAWAL_NOTES_MAX_LENGTH:
        raise ValidationError(f"Notes cannot exceed {WITHDRAWAL_NOTES_MAX_LENGTH} characters")

    limits = await get_withdrawal_limits(db)
    wallet = await get_or_create_wallet(db, user_id)

    minimum = max(limits.minimum, wallet.minimum_withdrawal)
    if amount < minimum:
        raise ValidationError(
            f"Minimum withdrawal is {format_money(minimum)}",
            amount=amount,
            minimum=minimum,
        )
    if amount > limits.maximum:
        raise ValidationError(
            f"Maximum withdrawal is {format_money(limits.maximum)}",
            amount=amount,
            maximum=limits.maximum,
        )

    fees = calculate_fees(amount, limits.fee_percent, limits.fee_flat)
    total_amount = amount + fees

    if wallet.raw_available_balance < total_amount:
        raise InsufficientBalanceError(
            "Insufficient available balance",
            available=wallet.available_balance,
            required=total_amount,
        )

    doc = {
        "_id": ObjectId(),
        "user_id": user_id,
        "amount": to_bson(amount),
        "fees": to_bson(fees),
        "total_amount": to_bson(total_amount),
        "status": STATUS_PENDING,
        "wallet_number_encrypted": encrypt_sensitive_value(wallet_number),
        "wallet_number_masked": mask_wallet_number(wallet_number),
        "notes": notes,
        "rejection_reason": None,
        "requested_at": datetime.utcnow(),
        "processed_at": None,
        "processed_by": None,
        "transfer_reference": None,
    }

    async def unit(txn):
        # Hold first: it re-checks availability against the current wallet
        await hold_for_withdrawal(
            db,
            user_id,
            total_amount,
            reference=f"withdrawal:{doc['_id']}:hold",
            txn=txn,
        )
        await db.withdrawal_requests.insert_one(doc, session=txn.session)

        async def undo():
            await db.withdrawal_requests.delete_one({"_id": doc["_id"]})

        txn.on_rollback(undo)
        return doc

    created = await run_transaction(db, unit)

    logger.info(
        "WITHDRAWAL_REQUESTED id=%s user=%s amount=%s fees=%s",
        created["_id"],
        user_id,
        amount,
        fees,
    )
    return serialize_withdrawal(created)


# =====================================================
# TRANSITIONS
# =====================================================

async def _transition_failed(db, oid: ObjectId, action: str):
    current = await db.withdrawal_requests.find_one({"_id": oid}, {"status": 1})
    if not current:
        raise NotFoundError("Withdrawal request not found", withdrawal_id=str(oid))
    raise ValidationError(
        f"Cannot {action} a {current['status']} withdrawal",
        withdrawal_id=str(oid),
        status=current["status"],
    )


async def approve_withdrawal(db, withdrawal_id, admin_id, notes: str | None = None) -> dict:
    oid = _withdrawal_oid(withdrawal_id)
    now = datetime.utcnow()

    result = await db.withdrawal_requests.update_one(
        {"_id": oid, "status": STATUS_PENDING},
        {
            "$set": {
                "status": STATUS_APPROVED,
                "admin_notes": notes,
                "processed_at": now,
                "processed_by": str(admin_id),
            }
        },
    )
    if result.modified_count == 0:
        await _transition_failed(db, oid, "approve")

    await log_audit(
        db,
        actor_id=admin_id,
        actor_role="admin",
        action="WITHDRAWAL_APPROVED",
        metadata={"withdrawal_id": str(oid), "notes": notes},
    )
    logger.info("WITHDRAWAL_APPROVED id=%s admin=%s", oid, admin_id)
    return serialize_withdrawal(await db.withdrawal_requests.find_one({"_id": oid}))


async def reject_withdrawal(db, withdrawal_id, admin_id, reason: str) -> dict:
    oid = _withdrawal_oid(withdrawal_id)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")

    async def unit(txn):
        request = await db.withdrawal_requests.find_one({"_id": oid}, session=txn.session)
        if not request:
            raise NotFoundError("Withdrawal request not found", withdrawal_id=str(oid))

        result = await db.withdrawal_requests.update_one(
            {"_id": oid, "status": STATUS_PENDING},
            {
                "$set": {
                    "status": STATUS_REJECTED,
                    "rejection_reason": reason,
                    "processed_at": datetime.utcnow(),
                    "processed_by": str(admin_id),
                }
            },
            session=txn.session,
        )
        if result.modified_count == 0:
            await _transition_failed(db, oid, "reject")

        async def undo():
            await db.withdrawal_requests.update_one(
                {"_id": oid},
                {"$set": {"status": STATUS_PENDING, "rejection_reason": None, "processed_at": None, "processed_by": None}},
            )

        txn.on_rollback(undo)

        await release_hold(
            db,
            request["user_id"],
            from_bson(request["total_amount"]),
            reference=f"withdrawal:{oid}:release",
            txn=txn,
        )
        return request

    await run_transaction(db, unit)

    await log_audit(
        db,
        actor_id=admin_id,
        actor_role="admin",
        action="WITHDRAWAL_REJECTED",
        metadata={"withdrawal_id": str(oid), "reason": reason},
    )
    logger.info("WITHDRAWAL_REJECTED id=%s admin=%s", oid, admin_id)
    return serialize_withdrawal(await db.withdrawal_requests.find_one({"_id": oid}))


async def complete_withdrawal(db, withdrawal_id, admin_id, transfer_reference: str | None = None) -> dict:
    """Mark the external transfer done; the held amount leaves the balance for good."""
    oid = _withdrawal_oid(withdrawal_id)

    async def unit(txn):
        request = await db.withdrawal_requests.find_one({"_id": oid}, session=txn.session)
        if not request:
            raise NotFoundError("Withdrawal request not found", withdrawal_id=str(oid))

        result = await db.withdrawal_requests.update_one(
            {"_id": oid, "status": STATUS_APPROVED},
            {
                "$set": {
                    "status": STATUS_COMPLETED,
                    "transfer_reference": transfer_reference,
                    "completed_at": datetime.utcnow(),
                    "completed_by": str(admin_id),
                }
            },
            session=txn.session,
        )
        if result.modified_count == 0:
            await _transition_failed(db, oid, "complete")

        async def undo():
            await db.withdrawal_requests.update_one(
                {"_id": oid},
                {"$set": {"status": STATUS_APPROVED, "transfer_reference": None, "completed_at": None}},
            )

        txn.on_rollback(undo)

        await finalize_withdrawal(
            db,
            request["user_id"],
            from_bson(request["total_amount"]),
            reference=f"withdrawal:{oid}:final",
            txn=txn,
        )
        return request

    await run_transaction(db, unit)

    await log_audit(
        db,
        actor_id=admin_id,
        actor_role="admin",
        action="WITHDRAWAL_COMPLETED",
        metadata={"withdrawal_id": str(oid), "transfer_reference": transfer_reference},
    )
    logger.info("WITHDRAWAL_COMPLETED id=%s admin=%s", oid, admin_id)
    return serialize_withdrawal(await db.withdrawal_requests.find_one({"_id": oid}))


# =====================================================
# LISTING
# =====================================================

async def list_withdrawals(db, user_id=None, status: str | None = None, page: int = 1, limit: int = 20) -> dict:
    query = {}
    if user_id is not None:
        query["user_id"] = str(user_id)
    if status is not None:
        if status not in WITHDRAWAL_STATUSES:
            raise ValidationError("Invalid withdrawal status", status=status)
        query["status"] = status

    page = max(page, 1)
    total = await db.withdrawal_requests.count_documents(query)
    cursor = (
        db.withdrawal_requests.find(query)
        .sort([("requested_at", DESCENDING), ("_id", DESCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [serialize_withdrawal(doc) async for doc in cursor]

    return {"items": items, "page": page, "limit": limit, "total": total}
