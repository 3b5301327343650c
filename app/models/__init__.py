"""Pydantic models for the API usage ledger."""

from .usage import (
    AllUsageResponse,
    DeleteUserLimitRequest,
    DeleteUserLimitResponse,
    GlobalLimitsResponse,
    ResetDailyUsageRequest,
    ResetDailyUsageResponse,
    SetGlobalLimitRequest,
    SetGlobalLimitResponse,
    SetUserLimitRequest,
    SyncReportResponse,
    TodayUsageStatsResponse,
    UpdateExistingUsageRequest,
    UsageByDateResponse,
    UsageCheckRequest,
    UsageCheckResponse,
    UsageHistoryResponse,
    UserLimitResponse,
    UserLimitsResponse,
)

__all__ = [
    "AllUsageResponse",
    "DeleteUserLimitRequest",
    "DeleteUserLimitResponse",
    "GlobalLimitsResponse",
    "ResetDailyUsageRequest",
    "ResetDailyUsageResponse",
    "SetGlobalLimitRequest",
    "SetGlobalLimitResponse",
    "SetUserLimitRequest",
    "SyncReportResponse",
    "TodayUsageStatsResponse",
    "UpdateExistingUsageRequest",
    "UsageByDateResponse",
    "UsageCheckRequest",
    "UsageCheckResponse",
    "UsageHistoryResponse",
    "UserLimitResponse",
    "UserLimitsResponse",
]
