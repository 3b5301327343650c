"""
Type definitions for the API usage ledger.
"""

from .usage import (
    DEFAULT_FALLBACK_DAILY_LIMIT,
    MAX_DAILY_LIMIT,
    MIN_DAILY_LIMIT,
    UNLIMITED,
    ApiType,
    ApiRequestLog,
    ApiTypeBreakdown,
    DailyUsageRecord,
    GlobalApiLimit,
    LimitSnapshot,
    SyncReport,
    TopUser,
    UsageResult,
    UsageSummary,
    UserApiLimit,
)

__all__ = [
    "DEFAULT_FALLBACK_DAILY_LIMIT",
    "MAX_DAILY_LIMIT",
    "MIN_DAILY_LIMIT",
    "UNLIMITED",
    "ApiType",
    "ApiRequestLog",
    "ApiTypeBreakdown",
    "DailyUsageRecord",
    "GlobalApiLimit",
    "LimitSnapshot",
    "SyncReport",
    "TopUser",
    "UsageResult",
    "UsageSummary",
    "UserApiLimit",
]
