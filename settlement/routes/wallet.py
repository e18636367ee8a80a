from fastapi import APIRouter, Depends, Query
from typing import Optional

from settlement.database import get_db
from settlement.models.user import WALLET_ROLES
from settlement.models.wallet import WithdrawalCreate
from settlement.utils.guards import clamp_page
from settlement.utils.security import require_role
from settlement.utils.wallet_service import get_wallet_status, list_wallet_transactions
from settlement.utils.withdrawals import create_withdrawal, list_withdrawals


router = APIRouter(prefix="/api", tags=["Wallet"])


# =====================================================
# WALLET
# =====================================================

@router.get("/wallet/status")
async def wallet_status(
    user=Depends(require_role(*WALLET_ROLES)),
    db=Depends(get_db),
):
    return await get_wallet_status(db, user)


@router.get("/wallet/transactions")
async def wallet_transactions(
    page: int = Query(1),
    limit: int = Query(20),
    user=Depends(require_role(*WALLET_ROLES)),
    db=Depends(get_db),
):
    page, limit = clamp_page(page, limit)
    return await list_wallet_transactions(db, user["_id"], page=page, limit=limit)


# =====================================================
# WITHDRAWALS
# =====================================================

@router.post("/withdrawals", status_code=201)
async def request_withdrawal(
    data: WithdrawalCreate,
    user=Depends(require_role(*WALLET_ROLES)),
    db=Depends(get_db),
):
    withdrawal = await create_withdrawal(
        db,
        user["_id"],
        data.amount,
        data.wallet_number,
        notes=data.notes,
    )
    return {"message": "Withdrawal request submitted", "withdrawal": withdrawal}


@router.get("/withdrawals")
async def my_withdrawals(
    status: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
    user=Depends(require_role(*WALLET_ROLES)),
    db=Depends(get_db),
):
    page, limit = clamp_page(page, limit)
    return await list_withdrawals(db, user_id=user["_id"], status=status, page=page, limit=limit)
