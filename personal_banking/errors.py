"""
Error Taxonomy

Every validation or state failure raised by the ledger core is a
BankingError subclass carrying a stable code and the HTTP status the API
layer reports it with. Storage failures are not wrapped and propagate as-is.
"""


class BankingError(Exception):
    """Base class for all domain errors"""
    code = "banking_error"
    http_status = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        result = {"error": self.code, "detail": self.message}
        if self.details:
            result.update({k: str(v) for k, v in self.details.items()})
        return result


class NotFoundError(BankingError):
    """Entity does not exist"""
    code = "not_found"
    http_status = 404


class ForbiddenError(BankingError):
    """Caller lacks the role or ownership required"""
    code = "forbidden"
    http_status = 403


class InvalidArgumentError(BankingError):
    """Malformed or out-of-range input"""
    code = "invalid_argument"
    http_status = 400


class InvalidStateError(BankingError):
    """Operation not valid for the entity's current status"""
    code = "invalid_state"
    http_status = 409


class InsufficientFundsError(BankingError):
    """Withdrawal exceeds the account balance"""
    code = "insufficient_funds"
    http_status = 400


class ExceedsBalanceError(BankingError):
    """Loan payment exceeds the remaining loan balance"""
    code = "exceeds_balance"
    http_status = 400


class ConflictError(BankingError):
    """Uniqueness violation that could not be resolved by retrying"""
    code = "conflict"
    http_status = 409
