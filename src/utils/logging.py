"""
Logging setup for the API usage ledger.

setup_logging() installs a single stdout handler on the root logger.
Every record carries the current request id and user id, credentials are
masked before the record is formatted, and output is one JSON object per
line in production or a colored console line in development.
"""

import json
import logging
import re
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from src.config import get_settings

SERVICE_NAME = "api-usage-ledger"

MASK = "***"


# =============================================================================
# Request context
# =============================================================================


@dataclass(frozen=True)
class LogContext:
    """Identifiers attached to every record logged while handling a request."""

    request_id: str = "-"
    user_id: str = "-"


_context: ContextVar[LogContext] = ContextVar("ledger_log_context", default=LogContext())


def current_context() -> LogContext:
    return _context.get()


def set_request_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """Update the ids attached to records logged from the current context."""
    context = _context.get()
    _context.set(replace(
        context,
        request_id=request_id or context.request_id,
        user_id=user_id or context.user_id,
    ))


@contextmanager
def request_context(request_id: str) -> Iterator[LogContext]:
    """Scope records to one request. The previous context is restored on exit."""
    token = _context.set(LogContext(request_id=request_id))
    try:
        yield _context.get()
    finally:
        _context.reset(token)


# =============================================================================
# Credential masking
# =============================================================================

_BEARER = re.compile(r"(?i)\bbearer\s+[\w.~+/=-]+")
_CREDENTIAL_PAIR = re.compile(
    r"(?i)\b(password|secret|token|api[_-]?key|authorization)"
    r"([\"']?\s*[:=]\s*[\"']?)[^\s,;\"'}]+"
)
_DSN_PASSWORD = re.compile(r"(postgres(?:ql)?://[^:/@\s]+):[^@\s]+@")


def mask_credentials(text: str) -> str:
    """
    Mask bearer values, key=value credentials and DSN passwords.

    The key names stay visible so the log line still says what was masked.
    """
    if not text:
        return text
    text = _BEARER.sub(f"Bearer {MASK}", text)
    text = _CREDENTIAL_PAIR.sub(lambda m: f"{m.group(1)}{m.group(2)}{MASK}", text)
    return _DSN_PASSWORD.sub(rf"\1:{MASK}@", text)


class ContextFilter(logging.Filter):
    """Attach the request context and render the message with credentials masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _context.get()
        record.request_id = context.request_id
        record.user_id = context.user_id
        record.msg = mask_credentials(record.getMessage())
        record.args = None
        return True


# =============================================================================
# Formatters
# =============================================================================

_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "request_id", "user_id"}


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields passed with `extra=` when the record was logged."""
    return {
        key: value for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:

        {"timestamp": "...", "level": "INFO", "logger": "src.usage.rate_limiter",
         "message": "...", "service": "api-usage-ledger",
         "request_id": "...", "user_id": "...", "extra": {...}}
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "request_id": getattr(record, "request_id", "-"),
            "user_id": getattr(record, "user_id", "-"),
        }
        extras = record_extras(record)
        if extras:
            entry["extra"] = extras
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output: time LEVEL request/user logger: message key=value."""

    LEVEL_COLORS = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "35",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "0")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        ids = (
            f"{getattr(record, 'request_id', '-')[:8]}/"
            f"{getattr(record, 'user_id', '-')[:8]}"
        )
        line = (
            f"{stamp} \033[{color}m{record.levelname:<8}\033[0m "
            f"{ids} {record.name}: {record.getMessage()}"
        )
        extras = record_extras(record)
        if extras:
            line += " " + " ".join(f"{key}={value}" for key, value in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Setup
# =============================================================================

NOISY_LOGGERS = ("uvicorn.access", "httpx", "asyncpg", "asyncio")


def setup_logging(
    service_name: str = SERVICE_NAME,
    level: Optional[int] = None,
    json_output: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the root logger. Call once at startup.

    Args:
        service_name: Name written into JSON records
        level: Overrides LOG_LEVEL
        json_output: Overrides the format choice (JSON when LOG_FORMAT_JSON
            is set or in production)
    """
    settings = get_settings()
    if level is None:
        level = getattr(logging, settings.logging.log_level, logging.INFO)
    if json_output is None:
        json_output = settings.logging.log_format_json or settings.is_production

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter(service_name) if json_output else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        f"Logging configured for {service_name}",
        extra={
            "log_level": logging.getLevelName(level),
            "log_format": "json" if json_output else "console",
        },
    )
    return root


@contextmanager
def log_duration(
    logger: logging.Logger,
    operation: str,
    level: int = logging.DEBUG,
) -> Iterator[None]:
    """Log how long the enclosed block took, whether or not it raised."""
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.log(
            level,
            f"{operation} took {elapsed_ms:.2f}ms",
            extra={"operation": operation, "duration_ms": round(elapsed_ms, 2)},
        )
