from decimal import Decimal


class LedgerError(Exception):
    """Base class for settlement errors surfaced to API callers."""

    status_code = 500
    code = "LEDGER_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = {
                k: str(v) if isinstance(v, Decimal) else v
                for k, v in self.details.items()
            }
        return payload


class ValidationError(LedgerError):
    """Malformed input or out-of-range amount. Nothing was written."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(LedgerError):
    status_code = 404
    code = "NOT_FOUND"


class InsufficientBalanceError(LedgerError):
    status_code = 400
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str, *, available: Decimal, required: Decimal):
        super().__init__(
            message,
            available=available,
            required=required,
            shortfall=required - available,
        )
        self.available = available
        self.required = required
        self.shortfall = required - available


class ConcurrencyConflictError(LedgerError):
    """A concurrent write won the race; safe to retry."""

    status_code = 409
    code = "CONCURRENCY_CONFLICT"


class LedgerInvariantViolation(LedgerError):
    """Fatal: the operation would corrupt the ledger and was aborted."""

    status_code = 500
    code = "LEDGER_INVARIANT_VIOLATION"
