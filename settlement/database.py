import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConnectionFailure, OperationFailure

from settlement.config.env import (
    MONGO_TRANSACTIONS_ENABLED,
    MONGO_URI,
    TRANSACTION_MAX_RETRIES,
)
from settlement.utils.alerts import (
    ALERT_INVARIANT_VIOLATION,
    ALERT_ROLLBACK_FAILED,
    alert_operator,
)
from settlement.utils.errors import ConcurrencyConflictError, LedgerInvariantViolation

logger = logging.getLogger(__name__)

if not MONGO_URI:
    raise RuntimeError("MONGODB_URI not set")

client = AsyncIOMotorClient(MONGO_URI)
db = client.get_default_database()


def get_db():
    return db


# =====================================================
# LEDGER TRANSACTIONS
# =====================================================

class LedgerTransaction:
    """
    Handle passed to every ledger write.

    With a replica set, `session` is a live Mongo transaction and aborting it
    undoes everything. Without one, each write registers a compensating step
    that is replayed in reverse order if the unit fails.
    """

    def __init__(self, session=None):
        self.session = session
        self._compensations = []
        self._after_commit = []

    @property
    def is_atomic(self) -> bool:
        return self.session is not None

    def on_rollback(self, step) -> None:
        if self.session is None:
            self._compensations.append(step)

    def after_commit(self, step) -> None:
        self._after_commit.append(step)

    async def compensate(self) -> list:
        failures = []
        while self._compensations:
            step = self._compensations.pop()
            try:
                await step()
            except Exception as exc:
                logger.exception("ROLLBACK_STEP_FAILED step=%s", getattr(step, "__name__", step))
                failures.append(exc)
        return failures

    async def run_after_commit(self) -> None:
        for step in self._after_commit:
            try:
                await step()
            except Exception:
                logger.exception("AFTER_COMMIT_STEP_FAILED step=%s", getattr(step, "__name__", step))


async def _run_atomic(db, callback):
    async with await db.client.start_session() as session:
        txn = LedgerTransaction(session)
        async with session.start_transaction():
            result = await callback(txn)
    return txn, result


async def _run_compensated(db, callback):
    txn = LedgerTransaction()
    try:
        result = await callback(txn)
    except Exception as exc:
        failures = await txn.compensate()
        if failures:
            await alert_operator(
                db,
                ALERT_ROLLBACK_FAILED,
                "Compensating writes failed; ledger needs manual reconciliation",
                {"error": str(exc), "rollback_errors": [str(f) for f in failures]},
            )
            raise LedgerInvariantViolation(
                "Rollback incomplete after a failed ledger operation"
            ) from exc
        raise
    return txn, result


async def run_transaction(db, callback, *, max_attempts: int | None = None):
    """
    Run `callback(txn)` as one all-or-nothing ledger unit.
    Races (write conflicts, stale wallet versions) are retried a bounded
    number of times and then surface as ConcurrencyConflictError.
    """
    attempts = max_attempts or TRANSACTION_MAX_RETRIES
    runner = _run_atomic if MONGO_TRANSACTIONS_ENABLED else _run_compensated

    for attempt in range(1, attempts + 1):
        try:
            txn, result = await runner(db, callback)
        except (ConnectionFailure, OperationFailure) as exc:
            if not exc.has_error_label("TransientTransactionError"):
                raise
            if attempt == attempts:
                raise ConcurrencyConflictError(
                    "Ledger transaction aborted by concurrent writes"
                ) from exc
            logger.warning("TRANSACTION_RETRY attempt=%s error=%s", attempt, exc)
            continue
        except ConcurrencyConflictError:
            if attempt == attempts:
                raise
            logger.warning("TRANSACTION_RETRY attempt=%s reason=stale_version", attempt)
            continue
        except LedgerInvariantViolation as exc:
            await alert_operator(db, ALERT_INVARIANT_VIOLATION, exc.message, exc.details)
            raise

        await txn.run_after_commit()
        return result
