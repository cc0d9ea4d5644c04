from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    validation = "validation"
    business_rule = "business_rule"
    arithmetic = "arithmetic"


class ErrorKind(str, Enum):
    INVALID_IDENTIFIER = "INVALID_IDENTIFIER"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    AMOUNT_TOO_SMALL = "AMOUNT_TOO_SMALL"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    BALANCE_CEILING_EXCEEDED = "BALANCE_CEILING_EXCEEDED"
    ARITHMETIC_OVERFLOW = "ARITHMETIC_OVERFLOW"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.category]


_CATEGORIES = {
    ErrorKind.INVALID_IDENTIFIER: ErrorCategory.validation,
    ErrorKind.INVALID_AMOUNT: ErrorCategory.validation,
    ErrorKind.AMOUNT_TOO_SMALL: ErrorCategory.validation,
    ErrorKind.INSUFFICIENT_BALANCE: ErrorCategory.business_rule,
    ErrorKind.BALANCE_CEILING_EXCEEDED: ErrorCategory.business_rule,
    ErrorKind.ARITHMETIC_OVERFLOW: ErrorCategory.arithmetic,
}

_STATUS_CODES = {
    ErrorCategory.validation: 400,
    ErrorCategory.business_rule: 409,
    ErrorCategory.arithmetic: 422,
}


class PointServiceError(Exception):
    """Failure of a point operation, tagged with its ErrorKind.

    Validation kinds are raised before any lock is taken. Business rule and
    arithmetic kinds are raised from inside the user's critical section, after
    the read and before any write, so storage is left untouched.
    """

    def __init__(self, kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    def __repr__(self) -> str:
        return f"PointServiceError({self.kind.value}, {self.message!r})"
