"""
Shared errors for usage tracking.
"""

from typing import Any, Optional


class UsageLedgerError(Exception):
    """Base class for errors raised by the usage ledger."""

    pass


class LimitValidationError(UsageLedgerError, ValueError):
    """Raised when an api type, user id or limit value is rejected."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value


class StorageError(UsageLedgerError):
    """Raised when the usage store fails to complete an operation."""

    retryable = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.original_error = original_error


class StorageUnavailable(StorageError):
    """Raised when the usage store cannot be reached. Safe to retry."""

    retryable = True
