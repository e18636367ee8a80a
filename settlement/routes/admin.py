from fastapi import APIRouter, Depends, HTTPException, Query, Response
import asyncio
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel

from settlement.database import get_db
from settlement.models.order import BulkOrderIds, OrderStatusUpdate
from settlement.models.settings import FinancialSettingsUpdate
from settlement.models.wallet import WithdrawalComplete, WithdrawalDecision
from settlement.utils.earnings import earnings_report_csv, get_earnings_summary
from settlement.utils.guards import clamp_page, parse_object_id
from settlement.utils.order_service import bulk_delete_orders, delete_order, update_order_status
from settlement.utils.pricing import claim_recalculation, get_recalculation_status, run_price_recalculation
from settlement.utils.profit_service import (
    distribute_pending_profits,
    distribute_profits,
    reverse_profits,
)
from settlement.utils.security import require_role
from settlement.utils.serializers import serialize_breakdown, serialize_order
from settlement.utils.settings_provider import get_financial_settings, update_financial_settings
from settlement.utils.withdrawals import (
    approve_withdrawal,
    complete_withdrawal,
    list_withdrawals,
    reject_withdrawal,
)


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# SCHEMAS
# =====================================================

class DistributeProfitsRequest(BaseModel):
    order_ids: Optional[List[str]] = None   # None = every delivered, undistributed order


class ReverseProfitsRequest(BaseModel):
    reason: str = "admin_reversal"
    status: Literal["cancelled", "returned"] = "cancelled"


# =====================================================
# ORDERS: PROFITS
# =====================================================

@router.post("/orders/distribute-profits")
async def distribute_profits_bulk(
    data: DistributeProfitsRequest,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    result = await distribute_pending_profits(
        db,
        data.order_ids,
        actor_id=str(admin["_id"]),
        actor_role="admin",
    )
    return result.to_dict()


@router.post("/orders/{order_id}/distribute-profits")
async def distribute_order_profits(
    order_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    oid = parse_object_id(order_id, "order_id")
    breakdown = await distribute_profits(db, oid, actor_id=str(admin["_id"]), actor_role="admin")
    return {"order_id": order_id, "breakdown": serialize_breakdown(breakdown)}


@router.post("/orders/{order_id}/reverse-profits")
async def reverse_order_profits(
    order_id: str,
    data: ReverseProfitsRequest,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    oid = parse_object_id(order_id, "order_id")
    breakdown = await reverse_profits(
        db, oid, data.reason, status=data.status, actor_id=str(admin["_id"])
    )
    return {"order_id": order_id, "reversed": serialize_breakdown(breakdown)}


# =====================================================
# ORDERS: LIFECYCLE
# =====================================================

@router.patch("/orders/{order_id}/status")
async def change_order_status(
    order_id: str,
    data: OrderStatusUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    oid = parse_object_id(order_id, "order_id")
    order = await update_order_status(
        db,
        oid,
        data.status,
        actor_id=str(admin["_id"]),
        reason=data.reason,
    )
    return serialize_order(order)


@router.post("/orders/bulk-delete")
async def bulk_delete(
    data: BulkOrderIds,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    result = await bulk_delete_orders(db, data.order_ids, actor_id=str(admin["_id"]))
    return result.to_dict()


@router.delete("/orders/{order_id}")
async def remove_order(
    order_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    oid = parse_object_id(order_id, "order_id")
    return await delete_order(db, oid, actor_id=str(admin["_id"]))


# =====================================================
# WITHDRAWALS
# =====================================================

@router.get("/withdrawals")
async def admin_withdrawals(
    status: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    page, limit = clamp_page(page, limit)
    return await list_withdrawals(db, user_id=user_id, status=status, page=page, limit=limit)


@router.post("/withdrawals/{withdrawal_id}/decision")
async def withdrawal_decision(
    withdrawal_id: str,
    data: WithdrawalDecision,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    oid = parse_object_id(withdrawal_id, "withdrawal_id")

    if data.action == "approve":
        withdrawal = await approve_withdrawal(db, oid, str(admin["_id"]), notes=data.notes)
    else:
        if not data.reason:
            raise HTTPException(400, "Rejection reason is required")
        withdrawal = await reject_withdrawal(db, oid, str(admin["_id"]), data.reason)

    return {"withdrawal": withdrawal}


@router.post("/withdrawals/{withdrawal_id}/complete")
async def withdrawal_complete(
    withdrawal_id: str,
    data: WithdrawalComplete,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    oid = parse_object_id(withdrawal_id, "withdrawal_id")
    withdrawal = await complete_withdrawal(
        db, oid, str(admin["_id"]), transfer_reference=data.transfer_reference
    )
    return {"withdrawal": withdrawal}


# =====================================================
# FINANCIAL SETTINGS
# =====================================================

@router.get("/settings/financial")
async def financial_settings(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await get_financial_settings(db)


@router.put("/settings/financial")
async def save_financial_settings(
    data: FinancialSettingsUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await update_financial_settings(db, data, actor_id=str(admin["_id"]))


# =====================================================
# PRODUCT PRICES
# =====================================================

# Strong references; the event loop keeps only weak ones to running tasks
_recalculation_tasks = set()


@router.post("/products/recalculate-prices", status_code=202)
async def recalculate_prices(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    if not await claim_recalculation(db):
        raise HTTPException(409, "Price recalculation already running")

    task = asyncio.create_task(run_price_recalculation(db))
    _recalculation_tasks.add(task)
    task.add_done_callback(_recalculation_tasks.discard)
    return {"message": "Price recalculation started"}


@router.get("/products/recalculate-prices/status")
async def recalculate_prices_status(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await get_recalculation_status(db)


# =====================================================
# EARNINGS
# =====================================================

@router.get("/earnings")
async def earnings(
    period: str = Query("month", pattern="^(week|month|year)$"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await get_earnings_summary(db, period=period, start=start_date, end=end_date)


@router.get("/earnings/export")
async def export_earnings(
    period: str = Query("month", pattern="^(week|month|year)$"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    report = await get_earnings_summary(db, period=period, start=start_date, end=end_date)
    filename = f"earnings-report-{report['period']}-{datetime.utcnow().date().isoformat()}.csv"
    return Response(
        content=earnings_report_csv(report),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
