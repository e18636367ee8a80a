import asyncio
import logging

from settlement.config.env import PROFIT_SWEEP_INTERVAL_SECONDS
from settlement.database import get_db
from settlement.utils.profit_service import distribute_pending_profits

logger = logging.getLogger(__name__)


async def run_profit_sweep(db) -> dict:
    """
    One pass over delivered orders whose profits were never distributed
    (deferred after a failure or delivered outside the status hook).
    """
    result = await distribute_pending_profits(db, actor_role="system")
    summary = result.to_dict()["summary"]

    if summary["succeeded"] or summary["failed"]:
        logger.info(
            "PROFIT_SWEEP distributed=%s failed=%s",
            summary["succeeded"],
            summary["failed"],
        )
    return summary


async def profit_distribution_worker():
    db = get_db()

    while True:
        try:
            await run_profit_sweep(db)
        except Exception:
            # Never crash the worker for one bad pass
            logger.exception("PROFIT_SWEEP_ERROR")

        await asyncio.sleep(PROFIT_SWEEP_INTERVAL_SECONDS)
