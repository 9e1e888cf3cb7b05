"""Error taxonomy for the SoroSub payment service.

Every error aborts the whole operation: the session is rolled back and no
transfer is attempted past the point of failure. Each class carries the HTTP
status and machine-readable code the API reports it with.
"""


class SorosubError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ValidationError(SorosubError):
    """Malformed input."""
    status_code = 400
    code = "validation_error"


class ExceedsDebtError(ValidationError):
    """Repayment larger than the outstanding debt."""
    code = "exceeds_debt"


class ArithmeticOverflowError(ValidationError):
    """A counter would leave its representable range."""
    code = "arithmetic_overflow"


class AuthorizationError(SorosubError):
    """The caller cannot act as the required principal."""
    status_code = 403
    code = "unauthorized"


class NotFoundError(SorosubError):
    """Unknown subscription or debt."""
    status_code = 404
    code = "not_found"


class ConflictError(SorosubError):
    """Duplicate active subscription."""
    status_code = 409
    code = "conflict"


class DebtTokenMismatchError(ConflictError):
    """Financing in a token other than the one already owed."""
    code = "debt_token_mismatch"


class StateError(SorosubError):
    """Operation not allowed in the current state."""
    status_code = 409
    code = "invalid_state"


class TemporalError(SorosubError):
    """Payment interval has not elapsed yet."""
    status_code = 425
    code = "interval_not_elapsed"


class InsufficientFundsAndCreditError(SorosubError):
    """Payer can neither pay directly nor qualify for BNPL."""
    status_code = 402
    code = "insufficient_funds_and_credit"


class TransferError(SorosubError):
    """The token ledger declined a transfer (funds or allowance)."""
    status_code = 402
    code = "transfer_failed"


class TokenLedgerError(SorosubError):
    """Raised when the token ledger API cannot be reached or errors out."""
    status_code = 502
    code = "token_ledger_unavailable"

    def __init__(self, upstream_status: int, detail: str):
        self.upstream_status = upstream_status
        super().__init__(f"Token ledger error {upstream_status}: {detail}")
