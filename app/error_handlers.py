"""
Exception handlers for the API usage ledger.

Every failure is returned in one shape:

    {"success": false, "error": "...", "error_code": "...",
     "retryable": true, "details": {...}}

`retryable` appears only for errors that set it. Server errors never echo
the underlying exception; they are logged with a short reference id that
is returned to the client, and reported to Sentry when it is configured.
"""

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config import get_settings
from src.usage.errors import UsageLedgerError

from .exceptions import ApiLedgerException, ErrorCode, from_usage_error

logger = logging.getLogger(__name__)

# Only these detail keys are ever sent to clients
PUBLIC_DETAIL_KEYS = frozenset({
    "field",
    "value",
    "api_type",
    "limit",
    "current_usage",
    "retry_after",
    "errors",
    "error_reference",
})

# A message mentioning any of these is replaced as a whole
_CREDENTIAL_HINT = re.compile(
    r"(?i)token|secret|password|authorization|credential|bearer|cookie|session"
    r"|postgres(?:ql)?://|\$\{?\w+\}?"
)
_IPV4 = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")

GENERIC_MESSAGE = "The request could not be processed"
MAX_MESSAGE_LENGTH = 300
MAX_FIELD_ERRORS = 10

HTTP_ERROR_CODES = {
    status.HTTP_404_NOT_FOUND: ErrorCode.RESOURCE_NOT_FOUND,
    status.HTTP_405_METHOD_NOT_ALLOWED: ErrorCode.METHOD_NOT_ALLOWED,
}


def public_message(message: Optional[str]) -> Optional[str]:
    """The client-facing form of an error message."""
    if not message:
        return message
    if _CREDENTIAL_HINT.search(message):
        return GENERIC_MESSAGE
    message = _IPV4.sub("[ip]", message)
    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH] + "..."
    return message


def public_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep the whitelisted detail keys; string values go through public_message."""
    return {
        key: public_message(value) if isinstance(value, str) else value
        for key, value in (details or {}).items()
        if key in PUBLIC_DETAIL_KEYS
    }


def error_response(exc: ApiLedgerException, status_code: Optional[int] = None) -> JSONResponse:
    body = exc.to_dict()
    body["error"] = public_message(exc.message)
    details = public_details(exc.details)
    if details:
        body["details"] = details
    else:
        body.pop("details", None)
    return JSONResponse(
        status_code=status_code or exc.status_code,
        content=body,
        headers=exc.headers or None,
    )


def describe_field_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Turn pydantic error dicts into `{"field", "message"}` pairs."""
    described = []
    for error in errors[:MAX_FIELD_ERRORS]:
        parts = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "header")]
        field = ".".join(parts) or "request"
        kind = error.get("type", "")
        if kind == "missing":
            message = f"Field '{field}' is required"
        elif kind.startswith("int"):
            message = f"Field '{field}' must be an integer"
        elif kind.startswith("bool"):
            message = f"Field '{field}' must be a boolean"
        elif kind.startswith("date"):
            message = f"Field '{field}' must be a date (YYYY-MM-DD)"
        else:
            message = public_message(error.get("msg", "Invalid value"))
        described.append({"field": field, "message": message})
    return described


def report_to_sentry(
    exc: BaseException,
    request: Request,
    reference: Optional[str] = None,
) -> Optional[str]:
    """Capture a server error with request tags. Returns the Sentry event id."""
    if not sentry_sdk.get_client().is_active():
        return None
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("http_path", request.url.path)
        scope.set_tag("http_method", request.method)
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            scope.set_tag("request_id", request_id)
        user_id = getattr(request.state, "user_id", None)
        if user_id:
            scope.set_user({"id": user_id})
        if reference:
            scope.set_tag("error_reference", reference)
        return sentry_sdk.capture_exception(exc)


# =============================================================================
# Handlers
# =============================================================================

async def ledger_error_handler(request: Request, exc: ApiLedgerException) -> JSONResponse:
    description = f"{exc.error_code.value} on {request.method} {request.url.path}: {exc.message}"
    if exc.internal_message:
        description += f" ({exc.internal_message})"

    if exc.status_code >= 500:
        logger.error(description, exc_info=exc)
        report_to_sentry(exc, request)
    else:
        logger.warning(description)

    return error_response(exc)


async def usage_error_handler(request: Request, exc: UsageLedgerError) -> JSONResponse:
    """Ledger errors that a route did not translate itself."""
    return await ledger_error_handler(request, from_usage_error(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = describe_field_errors(list(exc.errors()))
    logger.warning(
        f"Rejected {request.method} {request.url.path}: {len(errors)} invalid field(s)"
    )
    message = errors[0]["message"] if len(errors) == 1 else (
        f"Validation failed with {len(errors)} errors"
    )
    return error_response(
        ApiLedgerException(
            message,
            error_code=ErrorCode.VALIDATION_ERROR,
            details={"errors": errors},
        ),
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors raised by Starlette (unknown paths, wrong methods)."""
    error_code = HTTP_ERROR_CODES.get(exc.status_code)
    if error_code is None:
        error_code = (
            ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.VALIDATION_ERROR
        )
    logger.info(f"HTTP {exc.status_code} on {request.method} {request.url.path}")
    return error_response(
        ApiLedgerException(str(exc.detail), error_code=error_code),
        status_code=exc.status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    reference = uuid.uuid4().hex[:8]
    logger.error(
        f"Unhandled {type(exc).__name__} [ref:{reference}] on "
        f"{request.method} {request.url.path}",
        exc_info=exc,
    )
    report_to_sentry(exc, request, reference)

    if get_settings().is_production:
        message = "An unexpected error occurred. Please try again later."
    else:
        message = f"Internal server error: {type(exc).__name__}"
    return error_response(
        ApiLedgerException(message, details={"error_reference": reference})
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiLedgerException, ledger_error_handler)
    app.add_exception_handler(UsageLedgerError, usage_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
