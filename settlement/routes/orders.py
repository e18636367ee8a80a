from fastapi import APIRouter, Depends

from settlement.database import get_db
from settlement.models.order import ProfitPreviewRequest
from settlement.utils.profit_service import preview_breakdown
from settlement.utils.security import get_current_user
from settlement.utils.serializers import serialize_breakdown


router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)


@router.post("/calculate-profits")
async def calculate_profits(
    data: ProfitPreviewRequest,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    """Preview the split of an order before it is placed. Nothing is written."""
    breakdown = await preview_breakdown(
        db,
        [item.model_dump() for item in data.items],
        data.total,
        data.customer_role,
    )
    return serialize_breakdown(breakdown)
