from datetime import datetime

from settlement.utils.money import bson_safe


async def log_audit(
    db,
    actor_id: str,
    actor_role: str,
    action: str,
    metadata: dict | None = None,
    *,
    session=None,
):
    await db.audit_logs.insert_one(
        {
            "actor_id": str(actor_id) if actor_id is not None else None,
            "actor_role": actor_role,
            "action": action,
            "metadata": bson_safe(metadata or {}),
            "created_at": datetime.utcnow(),
        },
        session=session,
    )
