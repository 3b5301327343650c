"""
Usage tracking and daily limits for rate-limited external APIs.

This module provides the per-user daily usage ledger, its storage
backends and the aggregates used by the admin dashboard.
"""

from .errors import (
    LimitValidationError,
    StorageError,
    StorageUnavailable,
    UsageLedgerError,
)
from .rate_limiter import (
    ApiRateLimiter,
    get_all_user_usage,
    get_or_create_today_usage,
    get_rate_limiter,
    parse_api_type,
    reset_rate_limiter,
)
from .stats import build_usage_summary
from .store import InMemoryUsageStore, UsageStore

__all__ = [
    "ApiRateLimiter",
    "InMemoryUsageStore",
    "LimitValidationError",
    "StorageError",
    "StorageUnavailable",
    "UsageLedgerError",
    "UsageStore",
    "build_usage_summary",
    "get_all_user_usage",
    "get_or_create_today_usage",
    "get_rate_limiter",
    "parse_api_type",
    "reset_rate_limiter",
]
