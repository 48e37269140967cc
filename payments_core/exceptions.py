"""Error taxonomy for the money-movement core"""

from decimal import Decimal
from typing import Optional


class PaymentsError(Exception):
    """Base exception for the money-movement core"""

    retryable = False


class InsufficientFundsError(PaymentsError):
    """Source account cannot cover the requested debit"""

    def __init__(self, account_id: str, available: str, requested: str):
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"available {available}, requested {requested}"
        )


class AccountInactiveError(PaymentsError):
    """Account is not in the active state"""

    def __init__(self, account_id: str, status: str):
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} is {status}; only active accounts can transact")


class CurrencyMismatchError(PaymentsError):
    """Source and destination accounts hold different currencies"""

    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(f"Cannot move {from_currency} into a {to_currency} account")


class LimitExceededError(PaymentsError):
    """A daily, monthly or global transaction ceiling would be exceeded"""

    def __init__(self, limit_type: str, threshold: Decimal, message: Optional[str] = None):
        self.limit_type = limit_type
        self.threshold = threshold
        super().__init__(message or f"{limit_type.capitalize()} transaction limit of {threshold} would be exceeded")


class VerificationError(PaymentsError):
    """Base for step-up verification failures"""


class VerificationExpiredError(VerificationError):
    """Verification code was submitted after its expiry"""


class VerificationFailedMaxAttemptsError(VerificationError):
    """Too many wrong codes; the transaction is now failed"""


class InvalidVerificationCodeError(VerificationError):
    """Wrong code, attempts remain"""

    def __init__(self, attempts_remaining: int):
        self.attempts_remaining = attempts_remaining
        super().__init__(f"Invalid verification code, {attempts_remaining} attempt(s) remaining")


class ExecutionFailureError(PaymentsError):
    """Verification passed but the money movement did not"""

    def __init__(self, reason: str, cause: Optional[Exception] = None):
        self.reason = reason
        self.cause = cause
        super().__init__(f"Transfer execution failed: {reason}")


class PersistenceError(PaymentsError):
    """Ledger store or transaction recorder unavailable"""

    retryable = True


class InvalidStateTransitionError(PaymentsError):
    """Requested transition is not allowed from the current state"""

    def __init__(self, entity: str, entity_id: str, current: str, action: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} {entity} {entity_id} in state '{current}'")


class RecordNotFoundError(PaymentsError):
    """Referenced record does not exist"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class ScheduleValidationError(PaymentsError):
    """Scheduled transaction definition is invalid"""
