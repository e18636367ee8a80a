from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from settlement.config.constants import DEFAULT_MINIMUM_WITHDRAWAL
from settlement.utils.errors import LedgerInvariantViolation
from settlement.utils.money import ZERO, format_money, from_bson, to_bson, to_decimal

# ==============================
# Ledger entry types
# ==============================

TXN_CREDIT = "credit"
TXN_DEBIT = "debit"
TXN_HOLD = "hold"
TXN_RELEASE = "release"
TXN_WITHDRAWAL = "withdrawal"


class WalletState:
    """In-memory copy of one `wallets` document, mutated then written back under its version."""

    def __init__(
        self,
        user_id: str,
        balance: Decimal = ZERO,
        pending_withdrawals: Decimal = ZERO,
        total_earnings: Decimal = ZERO,
        total_withdrawals: Decimal = ZERO,
        minimum_withdrawal: Decimal | None = None,
        has_deficit: bool = False,
        version: int = 0,
        wallet_id=None,
    ):
        self.wallet_id = wallet_id
        self.user_id = user_id
        self.balance = balance
        self.pending_withdrawals = pending_withdrawals
        self.total_earnings = total_earnings
        self.total_withdrawals = total_withdrawals
        self.minimum_withdrawal = (
            to_decimal(DEFAULT_MINIMUM_WITHDRAWAL)
            if minimum_withdrawal is None else minimum_withdrawal
        )
        self.has_deficit = has_deficit
        self.version = version

    @classmethod
    def from_doc(cls, doc: dict) -> "WalletState":
        minimum = doc.get("minimum_withdrawal")
        return cls(
            wallet_id=doc.get("_id"),
            user_id=doc["user_id"],
            balance=from_bson(doc.get("balance")),
            pending_withdrawals=from_bson(doc.get("pending_withdrawals")),
            total_earnings=from_bson(doc.get("total_earnings")),
            total_withdrawals=from_bson(doc.get("total_withdrawals")),
            minimum_withdrawal=None if minimum is None else from_bson(minimum),
            has_deficit=bool(doc.get("has_deficit", False)),
            version=int(doc.get("version", 0)),
        )

    @staticmethod
    def new_doc(user_id: str) -> dict:
        now = datetime.utcnow()
        return {
            "user_id": user_id,
            "balance": to_bson(ZERO),
            "pending_withdrawals": to_bson(ZERO),
            "total_earnings": to_bson(ZERO),
            "total_withdrawals": to_bson(ZERO),
            "minimum_withdrawal": to_bson(to_decimal(DEFAULT_MINIMUM_WITHDRAWAL)),
            "has_deficit": False,
            "version": 0,
            "created_at": now,
            "last_transaction_at": None,
        }

    @property
    def raw_available_balance(self) -> Decimal:
        return self.balance - self.pending_withdrawals

    @property
    def available_balance(self) -> Decimal:
        return max(self.raw_available_balance, ZERO)

    def copy(self) -> "WalletState":
        return WalletState(
            wallet_id=self.wallet_id,
            user_id=self.user_id,
            balance=self.balance,
            pending_withdrawals=self.pending_withdrawals,
            total_earnings=self.total_earnings,
            total_withdrawals=self.total_withdrawals,
            minimum_withdrawal=self.minimum_withdrawal,
            has_deficit=self.has_deficit,
            version=self.version,
        )

    def apply(self, deltas: dict) -> None:
        for field, delta in deltas.items():
            setattr(self, field, getattr(self, field) + delta)
        self.has_deficit = self.raw_available_balance < 0

    def check_invariants(self, previous: "WalletState | None" = None, *, allow_deficit: bool = False) -> None:
        """
        A wallet already in deficit (after a reversal) may still be credited;
        only a mutation that makes the deficit worse is rejected.
        """
        problems = []
        if self.pending_withdrawals < 0:
            problems.append("pending withdrawals below zero")

        if not allow_deficit:
            if self.balance < 0 and (previous is None or self.balance < previous.balance):
                problems.append("balance below zero")
            if self.raw_available_balance < 0 and (
                previous is None or self.raw_available_balance < previous.raw_available_balance
            ):
                problems.append("pending withdrawals exceed balance")

        if problems:
            raise LedgerInvariantViolation(
                "Wallet invariant violated: " + ", ".join(problems),
                user_id=self.user_id,
                balance=self.balance,
                pending_withdrawals=self.pending_withdrawals,
            )

    def to_fields(self) -> dict:
        return {
            "balance": to_bson(self.balance),
            "pending_withdrawals": to_bson(self.pending_withdrawals),
            "total_earnings": to_bson(self.total_earnings),
            "total_withdrawals": to_bson(self.total_withdrawals),
            "has_deficit": self.has_deficit,
        }

    def to_response(self) -> dict:
        return {
            "user_id": self.user_id,
            "balance": format_money(self.balance),
            "pending_withdrawals": format_money(self.pending_withdrawals),
            "available_balance": format_money(self.available_balance),
            "raw_available_balance": format_money(self.raw_available_balance),
            "total_earnings": format_money(self.total_earnings),
            "total_withdrawals": format_money(self.total_withdrawals),
            "minimum_withdrawal": format_money(self.minimum_withdrawal),
            "has_deficit": self.has_deficit,
        }


class WithdrawalCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    wallet_number: str
    notes: str | None = None


class WithdrawalDecision(BaseModel):
    action: Literal["approve", "reject"]
    notes: str | None = None
    reason: str | None = None


class WithdrawalComplete(BaseModel):
    transfer_reference: str | None = None
