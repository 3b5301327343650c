"""
User-facing daily usage endpoints.
"""

import logging

from fastapi import APIRouter, Depends, Query

from src.types.usage import ApiType, UsageResult
from src.usage.rate_limiter import DEFAULT_HISTORY_DAYS, ApiRateLimiter

from ..auth import get_current_user_id
from ..dependencies import UsageContext, get_usage_limiter
from ..models import (
    AllUsageResponse,
    UsageCheckRequest,
    UsageCheckResponse,
    UsageHistoryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user", tags=["usage"])


@router.post("/usage-status", response_model=UsageCheckResponse)
async def check_usage(
    body: UsageCheckRequest,
    user_id: str = Depends(get_current_user_id),
    usage: UsageContext = Depends(UsageContext),
) -> UsageCheckResponse:
    """
    Count one call of `apiType` for today and return the resulting quota.

    A user who has reached the limit gets `usage.success = false` with
    `remaining = 0`; the call is not counted.
    """
    result, degraded = await usage.count(user_id, body.api_type)
    logger.info(
        f"Usage check for user {user_id[:8]}... on {body.api_type}: "
        f"{'allowed' if result.success else 'denied'} "
        f"({result.daily_count}/{'unlimited' if result.unlimited else result.daily_limit})"
    )
    return UsageCheckResponse(usage=result, degraded=degraded)


@router.get("/usage-status", response_model=AllUsageResponse)
async def get_usage_status(
    user_id: str = Depends(get_current_user_id),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> AllUsageResponse:
    """
    Today's usage for every api type. Read-only.

    Api types without a row today report zero calls and the limit that
    would apply to the next call.
    """
    current = await limiter.get_all_user_usage(user_id)

    usage = {}
    for api_type in ApiType:
        result = current.get(api_type)
        if result is None:
            snapshot = await limiter.resolve_limit(user_id, api_type)
            result = UsageResult.from_counts(
                daily_count=0,
                daily_limit=snapshot.daily_limit,
                is_unlimited=snapshot.is_unlimited,
            )
        usage[api_type.value] = result

    return AllUsageResponse(usage=usage)


@router.get("/usage-history", response_model=UsageHistoryResponse)
async def get_usage_history(
    api_type: str = Query(..., description="API type to list"),
    days: int = Query(DEFAULT_HISTORY_DAYS, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    limiter: ApiRateLimiter = Depends(get_usage_limiter),
) -> UsageHistoryResponse:
    """Daily rows for the last `days` days, newest first."""
    history = await limiter.get_user_usage_history(user_id, api_type, days=days)
    return UsageHistoryResponse(api_type=api_type, days=days, history=history)
