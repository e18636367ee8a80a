from datetime import datetime
from bson import ObjectId

from settlement.utils.money import bson_safe


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
    session=None,
):
    """
    Single source of truth for order settlement events.
    """

    doc = {
        "order_id": ObjectId(order_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": ObjectId(actor_id) if actor_id and ObjectId.is_valid(actor_id) else None,
        "metadata": bson_safe(metadata or {}),
        "created_at": datetime.utcnow(),
    }

    await db.order_timeline.insert_one(doc, session=session)
