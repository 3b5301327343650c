"""
Request and response models for the usage and admin endpoints.

api_type fields are plain strings here; the ledger validates them so an
unknown value produces a 400 with the list of accepted types.
"""

from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.types.usage import (
    DailyUsageRecord,
    GlobalApiLimit,
    UsageResult,
    UsageSummary,
    UserApiLimit,
)


def _strip(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


# =============================================================================
# User endpoints
# =============================================================================


class UsageCheckRequest(BaseModel):
    """Body of POST /api/user/usage-status."""

    model_config = ConfigDict(populate_by_name=True)

    api_type: str = Field(..., alias="apiType", description="API type to count a call for")

    @field_validator("api_type")
    @classmethod
    def strip_api_type(cls, v: str) -> str:
        return _strip(v)


class UsageCheckResponse(BaseModel):
    success: bool = True
    usage: UsageResult
    degraded: bool = False


class AllUsageResponse(BaseModel):
    success: bool = True
    usage: Dict[str, UsageResult]


class UsageHistoryResponse(BaseModel):
    success: bool = True
    api_type: str
    days: int
    history: List[DailyUsageRecord]


# =============================================================================
# Admin endpoints
# =============================================================================


class SetGlobalLimitRequest(BaseModel):
    """Body of POST /api/admin/global-limits."""

    api_type: str
    daily_limit: Optional[int] = Field(
        default=None,
        description="Calls per day (1-10000); ignored when is_unlimited",
    )
    is_unlimited: bool = False

    @field_validator("api_type")
    @classmethod
    def strip_api_type(cls, v: str) -> str:
        return _strip(v)


class SetUserLimitRequest(SetGlobalLimitRequest):
    """Body of POST /api/admin/api-user-limits."""

    user_id: str

    @field_validator("user_id")
    @classmethod
    def strip_user_id(cls, v: str) -> str:
        return _strip(v)


class DeleteUserLimitRequest(BaseModel):
    """Body of DELETE /api/admin/api-user-limits."""

    user_id: str
    api_type: str

    @field_validator("user_id", "api_type")
    @classmethod
    def strip_fields(cls, v: str) -> str:
        return _strip(v)


class ResetDailyUsageRequest(BaseModel):
    """Body of POST /api/admin/reset-daily-usage."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str
    api_type: str
    usage_date: Optional[date] = Field(default=None, alias="date", description="Defaults to today")

    @field_validator("user_id", "api_type")
    @classmethod
    def strip_fields(cls, v: str) -> str:
        return _strip(v)


class UpdateExistingUsageRequest(BaseModel):
    """Optional body of POST /api/admin/update-existing-usage."""

    model_config = ConfigDict(populate_by_name=True)

    usage_date: Optional[date] = Field(default=None, alias="date", description="Defaults to today")


class SyncReportResponse(BaseModel):
    success: bool
    usage_date: date
    updated: Dict[str, int]
    failed: List[str]
    total_updated: int


class GlobalLimitsResponse(BaseModel):
    success: bool = True
    limits: List[GlobalApiLimit]


class SetGlobalLimitResponse(BaseModel):
    success: bool = True
    message: str
    sync: SyncReportResponse


class UserLimitsResponse(BaseModel):
    success: bool = True
    limits: List[UserApiLimit]


class UserLimitResponse(BaseModel):
    success: bool = True
    limit: UserApiLimit


class DeleteUserLimitResponse(BaseModel):
    success: bool = True
    deleted: bool


class ResetDailyUsageResponse(BaseModel):
    success: bool = True
    message: str


class UsageByDateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    usage_date: date = Field(..., alias="date")
    usage: List[DailyUsageRecord]


class TodayUsageStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    usage_date: date = Field(..., alias="date")
    usage: List[DailyUsageRecord]
    stats: UsageSummary
