"""Utility modules for the API usage ledger."""

from .cache import CacheEntry, TTLStatusCache
from .logging import (
    ConsoleFormatter,
    ContextFilter,
    JSONFormatter,
    LogContext,
    current_context,
    log_duration,
    mask_credentials,
    request_context,
    set_request_context,
    setup_logging,
)

__all__ = [
    # Cache utilities
    "CacheEntry",
    "TTLStatusCache",
    # Logging utilities
    "ConsoleFormatter",
    "ContextFilter",
    "JSONFormatter",
    "LogContext",
    "current_context",
    "log_duration",
    "mask_credentials",
    "request_context",
    "set_request_context",
    "setup_logging",
]
