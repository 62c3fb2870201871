"""Error taxonomy shared by every ledger component.

Each error carries a stable `code`, the HTTP status the service answers with,
and whether the caller (usually a payment provider) should retry.
"""


class MonetizationError(Exception):
    """Base class for all ledger errors."""

    code = "MONETIZATION_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidSignature(MonetizationError):
    code = "INVALID_SIGNATURE"
    http_status = 400


class TransientProviderError(MonetizationError):
    code = "TRANSIENT_PROVIDER_ERROR"
    http_status = 503
    retryable = True


class ProviderUnavailable(TransientProviderError):
    code = "PROVIDER_UNAVAILABLE"


class ProviderRejected(MonetizationError):
    """The provider answered but refused the request (bad params, account state)."""

    code = "PROVIDER_REJECTED"
    http_status = 502


class TransientStorageError(MonetizationError):
    code = "TRANSIENT_STORAGE_ERROR"
    http_status = 503
    retryable = True


class ConcurrencyConflict(MonetizationError):
    """Optimistic version guard lost a race; retried by the unit of work."""

    code = "CONCURRENCY_CONFLICT"
    http_status = 503
    retryable = True


class InsufficientBalance(MonetizationError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 409

    def __init__(self, available_cents: int, required_cents: int) -> None:
        super().__init__(
            f"insufficient balance: available={available_cents} required={required_cents}"
        )
        self.available_cents = available_cents
        self.required_cents = required_cents


class MonetizationNotEnabled(MonetizationError):
    code = "MONETIZATION_NOT_ENABLED"
    http_status = 403


class InvalidAmount(MonetizationError):
    code = "INVALID_AMOUNT"
    http_status = 422


class NegativeBalance(MonetizationError):
    """A delta would push a balance component below zero: a logic defect."""

    code = "NEGATIVE_BALANCE"
    http_status = 500


class AccountNotLinked(MonetizationError):
    code = "ACCOUNT_NOT_LINKED"
    http_status = 409


class NotFound(MonetizationError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidTransition(MonetizationError):
    code = "INVALID_TRANSITION"
    http_status = 500
