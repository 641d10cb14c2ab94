"""
Error Taxonomy Module

Domain exceptions raised by the ledger, account store and authorization
components. Every error carries a kind and the numeric details a client
needs to guide the user (minutes remaining, attempts remaining, violated rule).
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Kinds of errors surfaced to callers"""
    INVALID_INPUT = "InvalidInput"
    INVALID_RECIPIENT = "InvalidRecipient"
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    INCORRECT_CREDENTIAL = "IncorrectCredential"
    LOCKED = "Locked"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    BELOW_MINIMUM = "BelowMinimum"
    CONFLICT = "Conflict"
    INTERNAL = "Internal"


class LedgerError(Exception):
    """Base class for all domain errors"""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for API responses and logs"""
        result = {"kind": self.kind.value, "message": self.message}
        for key, value in self.details.items():
            result[key] = str(value) if not isinstance(value, (int, float, bool, str)) else value
        return result


class InvalidInputError(LedgerError):
    """Malformed or non-positive amount, missing required field"""
    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)


class InvalidRecipientError(InvalidInputError):
    """Transfer recipient is not acceptable (e.g. the sender themselves)"""
    kind = ErrorKind.INVALID_RECIPIENT


class NotFoundError(LedgerError):
    """Account, recipient or user absent"""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, entity: Optional[str] = None, **details: Any):
        super().__init__(message, entity=entity, **details)


class UnauthorizedError(LedgerError):
    """Credential missing or not set up"""
    kind = ErrorKind.UNAUTHORIZED


class IncorrectCredentialError(LedgerError):
    """PIN or password mismatch"""
    kind = ErrorKind.INCORRECT_CREDENTIAL

    def __init__(self, message: str, attempts_remaining: int, **details: Any):
        super().__init__(message, attempts_remaining=attempts_remaining, **details)
        self.attempts_remaining = attempts_remaining


class LockedError(LedgerError):
    """Lockout window is active"""
    kind = ErrorKind.LOCKED

    def __init__(self, message: str, minutes_remaining: int, secret_class: Optional[str] = None,
                 **details: Any):
        super().__init__(message, minutes_remaining=minutes_remaining,
                         secret_class=secret_class, **details)
        self.minutes_remaining = minutes_remaining


class InsufficientFundsError(LedgerError):
    """Debit would take the balance below zero"""
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, message: str, rule: str = "non_negative_balance", **details: Any):
        super().__init__(message, rule=rule, **details)
        self.rule = rule


class BelowMinimumError(LedgerError):
    """Debit would take a Savings balance below its fixed minimum"""
    kind = ErrorKind.BELOW_MINIMUM

    def __init__(self, message: str, minimum: Any, rule: str = "savings_minimum_balance",
                 **details: Any):
        super().__init__(message, rule=rule, minimum=minimum, **details)
        self.rule = rule
        self.minimum = minimum


class ConflictError(LedgerError):
    """Concurrent update could not be applied"""
    kind = ErrorKind.CONFLICT


class InternalError(LedgerError):
    """Storage or transport failure"""
    kind = ErrorKind.INTERNAL


class StorageTimeoutError(InternalError):
    """A storage lock or operation exceeded its bounded timeout"""

    def __init__(self, message: str, timeout: Optional[float] = None, **details: Any):
        super().__init__(message, timeout=timeout, **details)
