import logging
from datetime import datetime

from settlement.utils.money import bson_safe

logger = logging.getLogger(__name__)

ALERT_INVARIANT_VIOLATION = "LEDGER_INVARIANT_VIOLATION"
ALERT_WALLET_DEFICIT = "WALLET_DEFICIT"
ALERT_ROLLBACK_FAILED = "ROLLBACK_FAILED"


async def alert_operator(db, kind: str, message: str, metadata: dict | None = None):
    """
    Operator alerting channel for ledger states that need manual
    reconciliation. Written outside any ledger transaction so the alert
    survives the abort of the operation that raised it.
    """
    logger.critical("%s %s metadata=%s", kind, message, metadata or {})

    try:
        await db.operator_alerts.insert_one({
            "kind": kind,
            "message": message,
            "metadata": bson_safe(metadata or {}),
            "resolved": False,
            "created_at": datetime.utcnow(),
        })
    except Exception:
        # The CRITICAL log line above is the fallback channel
        logger.exception("OPERATOR_ALERT_WRITE_FAILED kind=%s", kind)
