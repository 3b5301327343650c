"""
Admin endpoints for daily API limits and usage.

All routes require the admin bearer token.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from src.types.usage import SyncReport
from src.usage.rate_limiter import ApiRateLimiter, parse_api_type
from src.usage.stats import DEFAULT_TOP_USERS, build_usage_summary

from ..auth import AdminPrincipal, require_admin
from ..dependencies import get_usage_limiter
from ..models import (
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
    UserLimitResponse,
    UserLimitsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


def _report_to_response(report: SyncReport) -> SyncReportResponse:
    return SyncReportResponse(
        success=report.success,
        usage_date=report.usage_date,
        updated=report.updated,
        failed=report.failed,
        total_updated=report.total_updated,
    )


# =============================================================================
# Global limits
# =============================================================================


@router.get("/global-limits", response_model=GlobalLimitsResponse)
async def list_global_limits(
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> GlobalLimitsResponse:
    """Global daily limits, ordered by api type."""
    return GlobalLimitsResponse(limits=await limiter.get_global_limits())


@router.post("/global-limits", response_model=SetGlobalLimitResponse)
async def set_global_limit(
    body: SetGlobalLimitRequest,
    admin: AdminPrincipal = Depends(require_admin),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> SetGlobalLimitResponse:
    """
    Set the global limit for an api type and apply it to today's rows.

    Rows of users with a per-user override keep their snapshot.
    """
    await limiter.set_global_limit(body.api_type, body.daily_limit, body.is_unlimited)
    report = await limiter.update_existing_usage_records()

    label = "unlimited" if body.is_unlimited else str(body.daily_limit)
    logger.info(f"Admin {admin.admin_id} set {body.api_type} global limit to {label}")

    message = f"Global limit for {body.api_type} set to {label}"
    if not report.success:
        message += "; some existing usage rows could not be updated"

    return SetGlobalLimitResponse(message=message, sync=_report_to_response(report))


@router.post("/update-existing-usage", response_model=SyncReportResponse)
async def update_existing_usage(
    body: Optional[UpdateExistingUsageRequest] = Body(default=None),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> SyncReportResponse:
    """Re-snapshot a date's usage rows (default today) from the global limits."""
    usage_date = body.usage_date if body else None
    report = await limiter.update_existing_usage_records(usage_date)
    return _report_to_response(report)


# =============================================================================
# Usage
# =============================================================================


@router.post("/reset-daily-usage", response_model=ResetDailyUsageResponse)
async def reset_daily_usage(
    body: ResetDailyUsageRequest,
    admin: AdminPrincipal = Depends(require_admin),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> ResetDailyUsageResponse:
    """Zero a user's count for one api type. A missing row is not an error."""
    usage_date = body.usage_date or limiter.today()
    await limiter.reset_user_daily_usage(body.user_id, body.api_type, usage_date)
    logger.info(
        f"Admin {admin.admin_id} reset {body.api_type} usage for "
        f"user {body.user_id[:8]}... on {usage_date}"
    )
    return ResetDailyUsageResponse(
        message=f"Daily usage reset for {body.api_type} on {usage_date}",
    )


@router.get("/api-usage-stats", response_model=UsageByDateResponse)
async def get_usage_by_date(
    usage_date: Optional[date] = Query(None, alias="date"),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> UsageByDateResponse:
    """All usage rows for a date (default today), busiest first."""
    usage_date = usage_date or limiter.today()
    records = await limiter.get_all_usage_by_date(usage_date)
    return UsageByDateResponse(usage_date=usage_date, usage=records)


@router.get("/today-usage-stats", response_model=TodayUsageStatsResponse)
async def get_today_usage_stats(
    usage_date: Optional[date] = Query(None, alias="date"),
    top: int = Query(DEFAULT_TOP_USERS, ge=1, le=100),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> TodayUsageStatsResponse:
    """Usage rows for a date plus per-api-type totals and the top users."""
    usage_date = usage_date or limiter.today()
    records = await limiter.get_all_usage_by_date(usage_date)
    summary = build_usage_summary(records, usage_date, top_n=top)
    return TodayUsageStatsResponse(usage_date=usage_date, usage=records, stats=summary)


# =============================================================================
# Per-user overrides
# =============================================================================


@router.get("/api-user-limits", response_model=UserLimitsResponse)
async def list_user_limits(
    user_id: Optional[str] = Query(None),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> UserLimitsResponse:
    """Per-user overrides, for one user or all users."""
    return UserLimitsResponse(limits=await limiter.get_user_limits(user_id))


@router.post("/api-user-limits", response_model=UserLimitResponse)
async def set_user_limit(
    body: SetUserLimitRequest,
    admin: AdminPrincipal = Depends(require_admin),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> UserLimitResponse:
    """
    Create or replace a per-user override.

    It applies from the user's next new daily row; today's row keeps its
    snapshot until it is reset or the day rolls over.
    """
    limit = await limiter.set_user_limit(
        body.user_id,
        body.api_type,
        body.daily_limit,
        body.is_unlimited,
        created_by=admin.admin_id,
    )
    return UserLimitResponse(limit=limit)


@router.put("/api-user-limits", response_model=UserLimitResponse)
async def replace_user_limit(
    body: SetUserLimitRequest,
    admin: AdminPrincipal = Depends(require_admin),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> UserLimitResponse:
    """Same as POST; kept for clients that update with PUT."""
    return await set_user_limit(body, admin, limiter)


@router.delete("/api-user-limits", response_model=DeleteUserLimitResponse)
async def delete_user_limit(
    body: DeleteUserLimitRequest,
    admin: AdminPrincipal = Depends(require_admin),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> DeleteUserLimitResponse:
    """Remove a per-user override. Deleting a missing override is not an error."""
    api_type = parse_api_type(body.api_type)
    deleted = await limiter.delete_user_limit(body.user_id, api_type)
    logger.info(
        f"Admin {admin.admin_id} removed {api_type.value} override for "
        f"user {body.user_id[:8]}... (existed: {deleted})"
    )
    return DeleteUserLimitResponse(deleted=deleted)
