"""
Pydantic models for per-user, per-API daily usage tracking.

This module defines the data models for:
- The closed set of rate-limited API types
- Daily usage records (one row per user, API type and calendar date)
- Global and per-user daily limits
- Usage results returned to callers after a check
- Re-snapshot reports and admin aggregates
- Request log entries for metered calls
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

UNLIMITED = "unlimited"

MIN_DAILY_LIMIT = 1
MAX_DAILY_LIMIT = 10000

DEFAULT_FALLBACK_DAILY_LIMIT = 200


class ApiType(str, Enum):
    """
    Rate-limited external API categories.

    The set is closed: adding a type means extending this enum and the
    CHECK constraints in the migrations.
    """
    ADDRESS_GENERATOR = "address_generator"
    EMAIL2NAME = "email2name"


class LimitSnapshot(BaseModel):
    """The limit in effect for a (user, api_type) at a point in time."""

    daily_limit: int
    is_unlimited: bool = False
    source: Literal["user", "global", "fallback"] = "fallback"


class UsageResult(BaseModel):
    """
    Outcome of a usage check.

    `success` tells whether this call was permitted and counted.
    """

    daily_count: int = Field(..., ge=0, description="Calls counted today")
    daily_limit: int = Field(..., description="Limit snapshot on the usage row")
    remaining: Union[int, Literal["unlimited"]] = Field(
        ...,
        description="Calls left today, or 'unlimited'",
    )
    unlimited: bool = False
    success: bool = True

    @classmethod
    def from_counts(
        cls,
        daily_count: int,
        daily_limit: int,
        is_unlimited: bool,
        success: bool = True,
    ) -> "UsageResult":
        if is_unlimited:
            remaining: Union[int, str] = UNLIMITED
        else:
            remaining = max(0, daily_limit - daily_count)
        return cls(
            daily_count=daily_count,
            daily_limit=daily_limit,
            remaining=remaining,
            unlimited=is_unlimited,
            success=success,
        )


class DailyUsageRecord(BaseModel):
    """
    A single (user_id, api_type, usage_date) counter row.

    daily_limit and is_unlimited are a snapshot taken when the row was
    created or last re-synced from the global limits.
    """

    id: Optional[str] = None
    user_id: str
    api_type: ApiType
    usage_date: date
    daily_count: int = Field(default=0, ge=0)
    daily_limit: int = DEFAULT_FALLBACK_DAILY_LIMIT
    is_unlimited: bool = False
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_exhausted(self) -> bool:
        return not self.is_unlimited and self.daily_count >= self.daily_limit

    def to_result(self, success: bool = True) -> UsageResult:
        return UsageResult.from_counts(
            daily_count=self.daily_count,
            daily_limit=self.daily_limit,
            is_unlimited=self.is_unlimited,
            success=success,
        )


class GlobalApiLimit(BaseModel):
    """Default daily limit for an API type, applied when a user has no override."""

    api_type: ApiType
    daily_limit: int = Field(..., ge=0)
    is_unlimited: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserApiLimit(BaseModel):
    """Per-user override of the global limit for one API type."""

    id: Optional[str] = None
    user_id: str
    api_type: ApiType
    daily_limit: int = Field(..., ge=0)
    is_unlimited: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncReport(BaseModel):
    """
    Result of re-snapshotting existing usage rows from the global limits.

    `updated` maps api_type to the number of rows rewritten; `failed`
    lists the api_types whose update raised a storage error.
    """

    usage_date: date
    updated: Dict[str, int] = Field(default_factory=dict)
    failed: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total_updated(self) -> int:
        return sum(self.updated.values())


class ApiTypeBreakdown(BaseModel):
    """Per-API-type totals for a single date."""

    total_calls: int = 0
    active_users: int = 0
    users: int = 0


class TopUser(BaseModel):
    """A user ranked by total calls across all API types."""

    user_id: str
    total_calls: int
    calls_by_type: Dict[str, int] = Field(default_factory=dict)


class UsageSummary(BaseModel):
    """Aggregated usage across all users for one date."""

    usage_date: date
    total_users: int = 0
    total_api_calls: int = 0
    by_api_type: Dict[str, ApiTypeBreakdown] = Field(default_factory=dict)
    top_users: List[TopUser] = Field(default_factory=list)


class ApiRequestLog(BaseModel):
    """
    One metered API call as seen by the request log.

    Written after the call finishes, whether it succeeded, failed or was
    refused for quota. user_id is None for calls made before a user could
    be identified.
    """

    id: Optional[str] = None
    user_id: Optional[str] = None
    api_type: ApiType
    success: bool
    error_message: Optional[str] = None
    request_data: Optional[Dict[str, Any]] = None
    response_data: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    response_time_ms: Optional[int] = Field(default=None, ge=0)
    created_at: Optional[datetime] = None
