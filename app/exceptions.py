"""
HTTP-facing errors for the API usage ledger.

Each error knows its status code, machine-readable code and the response
headers it needs. Errors raised by src.usage are translated with
from_usage_error before they reach a client.

    ApiLedgerException (500)
    ├── ValidationError (400)
    ├── AuthenticationError (401)
    ├── AuthorizationError (403)
    ├── QuotaExceededError (429)
    └── DatabaseError (500)
        └── StorageUnavailableError (503)
"""

from enum import Enum
from typing import Any, Dict, Optional

from src.usage.errors import (
    LimitValidationError,
    StorageError,
    StorageUnavailable,
    UsageLedgerError,
)

MAX_ECHOED_VALUE = 100

# Seconds a client should wait before retrying after a storage outage
STORAGE_RETRY_AFTER = 1


class ErrorCode(str, Enum):
    """Machine-readable codes returned in the `error_code` field."""

    INTERNAL_ERROR = "INTERNAL_ERROR"

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_API_TYPE = "INVALID_API_TYPE"
    VALUE_OUT_OF_RANGE = "VALUE_OUT_OF_RANGE"

    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"

    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"

    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    DATABASE_ERROR = "DATABASE_ERROR"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"


# Field named by a LimitValidationError -> code returned to the client
VALIDATION_CODES = {
    "api_type": ErrorCode.INVALID_API_TYPE,
    "daily_limit": ErrorCode.VALUE_OUT_OF_RANGE,
}


class ApiLedgerException(Exception):
    """
    Base class for errors returned to API clients.

    `message` is shown to the client; `internal_message` only reaches the
    logs. `retryable` is included in the body when it is not None.
    """

    status_code: int = 500
    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message: str = "An unexpected error occurred"
    retryable: Optional[bool] = None

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        self.message = message or self.default_message
        if error_code is not None:
            self.error_code = error_code
        self.details = dict(details or {})
        self.internal_message = internal_message
        super().__init__(self.message)

    @property
    def headers(self) -> Dict[str, str]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code.value,
        }
        if self.retryable is not None:
            body["retryable"] = self.retryable
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ApiLedgerException):
    """An unknown api type, an out-of-range limit or a blank identifier."""

    status_code = 400
    error_code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request data"

    def __init__(
        self,
        message: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if field:
            details["field"] = field
        if value is not None:
            text = str(value)
            if len(text) > MAX_ECHOED_VALUE:
                text = text[:MAX_ECHOED_VALUE] + "..."
            details["value"] = text
        super().__init__(message, error_code=error_code, details=details)


class AuthenticationError(ApiLedgerException):
    """No user identity header, or no admin bearer credentials."""

    status_code = 401
    error_code = ErrorCode.AUTHENTICATION_REQUIRED
    default_message = "Authentication required"

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class AuthorizationError(ApiLedgerException):
    """Admin credentials that do not match, or admin access switched off."""

    status_code = 403
    error_code = ErrorCode.ADMIN_REQUIRED
    default_message = "Admin access denied"


class QuotaExceededError(ApiLedgerException):
    """The user has used all of today's calls for an api type."""

    status_code = 429
    error_code = ErrorCode.QUOTA_EXCEEDED
    default_message = "Daily usage limit reached"
    retryable = False

    def __init__(
        self,
        message: Optional[str] = None,
        api_type: Optional[str] = None,
        limit: Optional[int] = None,
        current_usage: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        self.retry_after = retry_after
        details: Dict[str, Any] = {
            "api_type": api_type,
            "limit": limit,
            "current_usage": current_usage,
            "retry_after": retry_after,
        }
        super().__init__(
            message,
            details={key: value for key, value in details.items() if value is not None},
        )

    @property
    def headers(self) -> Dict[str, str]:
        if self.retry_after:
            return {"Retry-After": str(self.retry_after)}
        return {}


class DatabaseError(ApiLedgerException):
    """
    A usage storage query failed.

    The operation name and driver error only go to the logs.
    """

    status_code = 500
    error_code = ErrorCode.DATABASE_ERROR
    default_message = "A database error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.original_error = original_error
        internal = None
        if operation and original_error:
            internal = f"Database operation '{operation}' failed: {original_error}"
        super().__init__(message, internal_message=internal)


class StorageUnavailableError(DatabaseError):
    """
    Usage storage could not be reached.

    Whether the call was counted is unknown; the client may retry.
    """

    status_code = 503
    error_code = ErrorCode.STORAGE_UNAVAILABLE
    default_message = "Usage storage is temporarily unavailable"
    retryable = True

    @property
    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(STORAGE_RETRY_AFTER)}


def from_usage_error(exc: UsageLedgerError) -> ApiLedgerException:
    """Translate an error raised by src.usage into the one returned to clients."""
    if isinstance(exc, LimitValidationError):
        return ValidationError(
            exc.message,
            field=exc.field,
            value=exc.value,
            error_code=VALIDATION_CODES.get(exc.field or "", ErrorCode.VALIDATION_ERROR),
        )
    if isinstance(exc, StorageUnavailable):
        return StorageUnavailableError(
            operation=exc.operation,
            original_error=exc.original_error or exc,
        )
    if isinstance(exc, StorageError):
        return DatabaseError(
            operation=exc.operation,
            original_error=exc.original_error or exc,
        )
    return ApiLedgerException(internal_message=str(exc))
