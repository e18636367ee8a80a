import os

# Must be set before any settlement module reads config.env
os.environ["MONGODB_URI"] = "mongodb://localhost:27017/settlement_test"
os.environ["MONGO_TRANSACTIONS_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["WALLET_NUMBER_ENCRYPTION_KEY"] = "test-wallet-number-key"
os.environ["ENV"] = "test"
os.environ.pop("PLATFORM_WALLET_USER_ID", None)

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from bson import ObjectId
from bson.decimal128 import Decimal128
from jose import jwt
from mongomock_motor import AsyncMongoMockClient

from settlement.config.constants import DEFAULT_TIER_BANDS
from settlement.config.env import JWT_ALGORITHM, JWT_SECRET
from settlement.models.settings import TierBand
from settlement.models.wallet import WalletState
from settlement.utils.cache import cache, register_cache_invalidation
from settlement.utils.events import unsubscribe_all
from settlement.utils.indexes import ensure_indexes
from settlement.utils.tiers import CommissionCalculator, TierTable
from settlement.utils.wallet_service import get_or_create_wallet


@pytest.fixture(autouse=True)
def fresh_cache():
    cache.clear()
    unsubscribe_all()
    register_cache_invalidation()
    yield
    cache.clear()
    unsubscribe_all()


@pytest.fixture
def calculator():
    table = TierTable([TierBand.from_doc(b) for b in DEFAULT_TIER_BANDS])
    return CommissionCalculator(table, default_margin_percent=Decimal("5"))


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["settlement_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def auth_headers():
    """Bearer headers signed the way the auth service signs them."""
    def _headers(user) -> dict:
        payload = {
            "sub": str(user["_id"]),
            "role": user["role"],
            "exp": datetime.utcnow() + timedelta(minutes=15),
        }
        token = jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# -----------------------------
# USERS
# -----------------------------

@pytest_asyncio.fixture
async def users(db):
    docs = {
        "admin": {"_id": ObjectId(), "role": "admin", "name": "Operator"},
        "supplier": {"_id": ObjectId(), "role": "supplier", "name": "Supplier"},
        "marketer": {"_id": ObjectId(), "role": "marketer", "name": "Marketer"},
        "wholesaler": {"_id": ObjectId(), "role": "wholesaler", "name": "Wholesaler"},
    }
    await db.users.insert_many(list(docs.values()))
    return docs


# -----------------------------
# ORDERS
# -----------------------------

@pytest.fixture
def make_order(users):
    def _make(
        *,
        status="delivered",
        customer_role="marketer",
        items=None,
        total="500",
        product_id=None,
        **extra,
    ):
        buyer = users["marketer"] if customer_role == "marketer" else users["wholesaler"]
        order = {
            "_id": ObjectId(),
            "order_number": f"ORD-{ObjectId()}",
            "items": items if items is not None else [
                {
                    "product_id": str(product_id or ObjectId()),
                    "unit_price": Decimal128("200"),
                    "quantity": 2,
                }
            ],
            "customer_role": customer_role,
            "customer_id": buyer["_id"],
            "supplier_id": users["supplier"]["_id"],
            "total": Decimal128(total),
            "status": status,
            "profits_distributed": False,
        }
        if customer_role == "marketer":
            order["marketer_id"] = buyer["_id"]
        order.update(extra)
        return order

    return _make


@pytest_asyncio.fixture
async def insert_order(db, make_order):
    async def _insert(**kwargs):
        order = make_order(**kwargs)
        await db.orders.insert_one(order)
        return order

    return _insert


# -----------------------------
# WALLETS
# -----------------------------

@pytest_asyncio.fixture
async def seed_wallet(db):
    async def _seed(user_id, *, balance="0", pending="0", minimum="100") -> WalletState:
        await get_or_create_wallet(db, user_id)
        await db.wallets.update_one(
            {"user_id": str(user_id)},
            {
                "$set": {
                    "balance": Decimal128(balance),
                    "pending_withdrawals": Decimal128(pending),
                    "total_earnings": Decimal128(balance),
                    "minimum_withdrawal": Decimal128(minimum),
                }
            },
        )
        return await get_or_create_wallet(db, user_id)

    return _seed


@pytest.fixture
def wallet_of(db):
    async def _wallet(user_id) -> WalletState:
        return await get_or_create_wallet(db, user_id)

    return _wallet
