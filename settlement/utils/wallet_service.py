from datetime import datetime
from decimal import Decimal
import logging

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from settlement.config.constants import (
    OPEN_ORDER_STATUSES,
    ROLE_ADMIN,
    ROLE_MARKETER,
    ROLE_SUPPLIER,
)
from settlement.config.env import WALLET_WRITE_RETRIES
from settlement.models.wallet import (
    TXN_CREDIT,
    TXN_DEBIT,
    TXN_HOLD,
    TXN_RELEASE,
    TXN_WITHDRAWAL,
    WalletState,
)
from settlement.utils.cache import EARNINGS_NAMESPACE, cache
from settlement.utils.errors import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    LedgerInvariantViolation,
    ValidationError,
)
from settlement.utils.events import WALLET_CHANGED, emit
from settlement.utils.money import (
    ZERO,
    bson_safe,
    format_money,
    from_bson,
    has_cent_precision,
    to_bson,
    to_decimal,
)

logger = logging.getLogger(__name__)


# ==============================
# Wallet lookup (lazy creation)
# ==============================

async def get_or_create_wallet(db, user_id, *, session=None) -> WalletState:
    user_id = str(user_id)

    doc = await db.wallets.find_one({"user_id": user_id}, session=session)
    if doc:
        return WalletState.from_doc(doc)

    fields = WalletState.new_doc(user_id)
    fields.pop("user_id")
    try:
        await db.wallets.update_one(
            {"user_id": user_id},
            {"$setOnInsert": fields},
            upsert=True,
            session=session,
        )
        logger.info("WALLET_CREATED user=%s", user_id)
    except DuplicateKeyError:
        # Concurrent first access; the unique index kept a single wallet
        logger.info("WALLET_CREATE_RACE user=%s", user_id)

    doc = await db.wallets.find_one({"user_id": user_id}, session=session)
    return WalletState.from_doc(doc)


# ==============================
# Core: versioned wallet write
# ==============================

def _positive_amount(amount) -> Decimal:
    value = to_decimal(amount)
    if value <= 0:
        raise ValidationError("Amount must be positive", amount=value)
    if not has_cent_precision(value):
        raise ValidationError("Amount must have at most 2 decimal places", amount=value)
    return value


async def _write_deltas(
    db,
    user_id: str,
    deltas: dict,
    *,
    session=None,
    allow_deficit=False,
    enforce=True,
    guard=None,
) -> WalletState:
    for attempt in range(1, WALLET_WRITE_RETRIES + 1):
        wallet = await get_or_create_wallet(db, user_id, session=session)
        if guard is not None:
            guard(wallet)
        previous = wallet.copy()

        wallet.apply(deltas)
        if enforce:
            wallet.check_invariants(previous, allow_deficit=allow_deficit)

        result = await db.wallets.update_one(
            {"_id": wallet.wallet_id, "version": previous.version},
            {
                "$set": {**wallet.to_fields(), "last_transaction_at": datetime.utcnow()},
                "$inc": {"version": 1},
            },
            session=session,
        )
        if result.modified_count == 1:
            wallet.version = previous.version + 1
            return wallet

        logger.warning("WALLET_VERSION_CONFLICT user=%s attempt=%s", user_id, attempt)

    raise ConcurrencyConflictError(
        "Wallet was modified concurrently, retries exhausted",
        user_id=user_id,
    )


async def _mutate(
    db,
    user_id,
    deltas: dict,
    *,
    txn,
    txn_type: str,
    amount: Decimal,
    reason: str,
    reference: str,
    metadata: dict | None = None,
    allow_deficit: bool = False,
    guard=None,
) -> WalletState:
    """
    Apply one ledger mutation: versioned wallet update plus its
    `wallet_transactions` entry. The entry's unique reference rejects a
    second application of the same mutation.
    """
    user_id = str(user_id)
    session = txn.session

    wallet = await _write_deltas(
        db, user_id, deltas, session=session, allow_deficit=allow_deficit, guard=guard
    )

    async def undo_wallet():
        inverse = {field: -delta for field, delta in deltas.items()}
        await _write_deltas(db, user_id, inverse, enforce=False)

    txn.on_rollback(undo_wallet)

    try:
        inserted = await db.wallet_transactions.insert_one(
            {
                "wallet_id": wallet.wallet_id,
                "user_id": user_id,
                "type": txn_type,
                "amount": to_bson(amount),
                "reason": reason,
                "reference": reference,
                "balance_after": to_bson(wallet.balance),
                "metadata": bson_safe(metadata or {}),
                "created_at": datetime.utcnow(),
            },
            session=session,
        )
    except DuplicateKeyError:
        raise LedgerInvariantViolation(
            "Ledger entry already applied",
            user_id=user_id,
            reference=reference,
        )

    async def undo_entry():
        await db.wallet_transactions.delete_one({"_id": inserted.inserted_id})

    txn.on_rollback(undo_entry)

    async def notify():
        await emit(WALLET_CHANGED, user_id=user_id)

    txn.after_commit(notify)

    logger.info(
        "WALLET_%s user=%s amount=%s balance=%s ref=%s",
        txn_type.upper(),
        user_id,
        amount,
        wallet.balance,
        reference,
    )
    return wallet


# ==============================
# Ledger operations
# ==============================

async def credit(db, user_id, amount, reason: str, *, reference: str, txn, metadata=None) -> WalletState:
    amount = _positive_amount(amount)
    return await _mutate(
        db,
        user_id,
        {"balance": amount, "total_earnings": amount},
        txn=txn,
        txn_type=TXN_CREDIT,
        amount=amount,
        reason=reason,
        reference=reference,
        metadata=metadata,
    )


async def debit(
    db,
    user_id,
    amount,
    reason: str,
    *,
    reference: str,
    txn,
    metadata=None,
    allow_deficit: bool = False,
) -> WalletState:
    """
    Reversal of an earlier credit: lowers balance and total earnings by the
    same amount. With allow_deficit the balance may go negative; the wallet
    is then flagged `has_deficit` for manual reconciliation.
    """
    amount = _positive_amount(amount)
    wallet = await _mutate(
        db,
        user_id,
        {"balance": -amount, "total_earnings": -amount},
        txn=txn,
        txn_type=TXN_DEBIT,
        amount=amount,
        reason=reason,
        reference=reference,
        metadata=metadata,
        allow_deficit=allow_deficit,
    )

    if wallet.has_deficit:
        logger.critical(
            "WALLET_DEFICIT user=%s balance=%s pending=%s ref=%s",
            wallet.user_id,
            wallet.balance,
            wallet.pending_withdrawals,
            reference,
        )
    return wallet


async def hold_for_withdrawal(db, user_id, amount, *, reference: str, txn) -> WalletState:
    amount = _positive_amount(amount)

    def ensure_available(wallet: WalletState):
        # Checked against the freshly read wallet so other pending holds count
        if wallet.raw_available_balance < amount:
            raise InsufficientBalanceError(
                "Insufficient available balance",
                available=wallet.available_balance,
                required=amount,
            )

    return await _mutate(
        db,
        user_id,
        {"pending_withdrawals": amount},
        txn=txn,
        txn_type=TXN_HOLD,
        amount=amount,
        reason="withdrawal_hold",
        reference=reference,
        guard=ensure_available,
    )


async def release_hold(db, user_id, amount, *, reference: str, txn) -> WalletState:
    amount = _positive_amount(amount)
    return await _mutate(
        db,
        user_id,
        {"pending_withdrawals": -amount},
        txn=txn,
        txn_type=TXN_RELEASE,
        amount=amount,
        reason="withdrawal_release",
        reference=reference,
    )


async def finalize_withdrawal(db, user_id, amount, *, reference: str, txn) -> WalletState:
    """Only path that lowers balance for money leaving the platform."""
    amount = _positive_amount(amount)
    return await _mutate(
        db,
        user_id,
        {
            "balance": -amount,
            "pending_withdrawals": -amount,
            "total_withdrawals": amount,
        },
        txn=txn,
        txn_type=TXN_WITHDRAWAL,
        amount=amount,
        reason="withdrawal_completed",
        reference=reference,
    )


# ==============================
# Read side
# ==============================

def _id_variants(user_id: str) -> list:
    variants = [user_id]
    if ObjectId.is_valid(user_id):
        variants.append(ObjectId(user_id))
    return variants


async def get_pending_earnings(db, user: dict) -> dict:
    """
    Shares stored on orders that are still open. Marketers earn their
    profit on their own orders, suppliers the supplier share, the operator
    the commission on every open order.
    """
    user_id = str(user["_id"])
    role = user.get("role")

    cached = cache.get(EARNINGS_NAMESPACE, f"pending:{user_id}")
    if cached is not None:
        return cached

    query = {"status": {"$in": sorted(OPEN_ORDER_STATUSES)}}
    if role == ROLE_MARKETER:
        query["marketer_id"] = {"$in": _id_variants(user_id)}
        field = "marketer_profit"
    elif role == ROLE_SUPPLIER:
        query["supplier_id"] = {"$in": _id_variants(user_id)}
        field = "supplier_profit"
    elif role == ROLE_ADMIN:
        field = "commission"
    else:
        query["supplier_id"] = {"$in": _id_variants(user_id)}
        field = "supplier_profit"

    amount = ZERO
    count = 0
    async for order in db.orders.find(query, {field: 1}):
        amount += from_bson(order.get(field))
        count += 1

    summary = {"pending_earnings": format_money(amount), "pending_orders": count}
    cache.set(EARNINGS_NAMESPACE, f"pending:{user_id}", summary, ttl=60)
    return summary


async def get_wallet_status(db, user: dict) -> dict:
    wallet = await get_or_create_wallet(db, user["_id"])
    return {
        **wallet.to_response(),
        **await get_pending_earnings(db, user),
    }


def serialize_wallet_transaction(entry: dict) -> dict:
    return {
        "id": str(entry["_id"]),
        "type": entry["type"],
        "amount": format_money(entry["amount"]),
        "reason": entry.get("reason"),
        "reference": entry.get("reference"),
        "balance_after": format_money(entry.get("balance_after")),
        "created_at": entry["created_at"].isoformat() if entry.get("created_at") else None,
    }


async def list_wallet_transactions(db, user_id, *, page: int = 1, limit: int = 20) -> dict:
    query = {"user_id": str(user_id)}
    page = max(page, 1)

    total = await db.wallet_transactions.count_documents(query)
    cursor = (
        db.wallet_transactions.find(query)
        .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [serialize_wallet_transaction(entry) async for entry in cursor]

    return {"items": items, "page": page, "limit": limit, "total": total}
