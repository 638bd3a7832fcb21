from typing import Optional


class LedgerError(Exception):
    """Base class for every error raised above the storage layer."""

    code = "ledger_error"
    retryable = False
    # Safe to show to an end user as-is.
    user_visible = True

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class CurrencyNotFound(LedgerError):
    code = "currency_not_found"

    def __init__(self, currency_code: str):
        super().__init__(f"Currency '{currency_code}' not found")
        self.currency_code = currency_code


class CurrencyInactive(LedgerError):
    code = "currency_inactive"

    def __init__(self, currency_code: str):
        super().__init__(f"Currency '{currency_code}' is not active")
        self.currency_code = currency_code


class CurrencyLocked(LedgerError):
    code = "currency_locked"


class AccountNotFound(LedgerError):
    code = "account_not_found"


class TransactionNotFound(LedgerError):
    code = "transaction_not_found"


class InvalidAmount(LedgerError):
    code = "invalid_amount"


class InvalidOperation(LedgerError):
    code = "invalid_operation"


class SelfTipNotAllowed(InvalidOperation):
    code = "self_tip_not_allowed"

    def __init__(self):
        super().__init__("Cannot reward your own post")


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"

    def __init__(self, currency_code: str, balance: int, required: int):
        super().__init__(
            f"Insufficient {currency_code} balance: have {balance}, need {required}"
        )
        self.currency_code = currency_code
        self.balance = balance
        self.required = required


class VersionConflict(LedgerError):
    code = "version_conflict"
    retryable = True
    user_visible = False

    def __init__(self, account_id, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Account {account_id} version mismatch: expected {expected_version}, found {actual_version}"
        )
        self.account_id = account_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class AttemptTimeout(VersionConflict):
    """The storage unit for an account could not be entered in time."""

    code = "attempt_timeout"

    def __init__(self, account_id, timeout: float):
        LedgerError.__init__(self, f"Timed out after {timeout}s waiting for account {account_id}")
        self.account_id = account_id
        self.expected_version = None
        self.actual_version = None


class Contention(LedgerError):
    code = "contention"
    retryable = True
    user_visible = False


class DuplicateIdempotencyKey(LedgerError):
    code = "duplicate_idempotency_key"

    def __init__(self, idempotency_key: str, existing):
        super().__init__(f"Idempotency key '{idempotency_key}' already used")
        self.idempotency_key = idempotency_key
        self.existing = existing


class StorageFailure(LedgerError):
    code = "storage_failure"
    retryable = True
    user_visible = False


class CompensationFailed(LedgerError):
    code = "compensation_failed"
    user_visible = False

    def __init__(self, transaction_id, cause: Exception):
        super().__init__(f"Could not compensate transaction {transaction_id}: {cause}")
        self.transaction_id = transaction_id
        self.cause = cause


class ItemUnavailable(LedgerError):
    code = "item_unavailable"


class ItemAlreadyOwned(LedgerError):
    code = "item_already_owned"


class ItemGrantFailed(LedgerError):
    code = "item_grant_failed"
