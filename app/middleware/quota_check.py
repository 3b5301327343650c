"""
Daily quota enforcement dependency for FastAPI.

Routes that call a rate-limited external API declare the quota check
as a dependency. The call is counted before the handler runs; once the
user's limit for the day is reached the request gets 429 Too Many
Requests with a Retry-After pointing at the next day boundary.

Every guarded call, refused or not, is written to the request log once
it finishes, with its outcome and response time.
"""

import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import Depends, Request, Response

from app.auth import client_ip, get_current_user_id
from app.dependencies.usage import UsageContext
from app.exceptions import ApiLedgerException, QuotaExceededError
from src.types.usage import UNLIMITED, ApiType, UsageResult
from src.usage.rate_limiter import parse_api_type

logger = logging.getLogger(__name__)

QUOTA_REFUSED_MESSAGE = "Daily limit reached"


def _set_quota_headers(
    response: Response,
    result: UsageResult,
    degraded: bool,
    reset_seconds: int,
) -> None:
    response.headers["X-DailyLimit-Limit"] = (
        UNLIMITED if result.unlimited else str(result.daily_limit)
    )
    response.headers["X-DailyLimit-Remaining"] = str(result.remaining)
    response.headers["X-DailyLimit-Reset"] = str(reset_seconds)
    if degraded:
        response.headers["X-DailyLimit-Degraded"] = "true"


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, ApiLedgerException):
        return f"{exc.error_code.value}: {exc.message}"
    return type(exc).__name__


def require_api_quota(api_type: ApiType) -> Callable:
    """
    Build a dependency that counts one call of `api_type` for the user.

    Usage:
        @router.post("/email2name")
        async def email2name(
            body: Email2NameRequest,
            usage: UsageResult = Depends(require_api_quota(ApiType.EMAIL2NAME)),
        ):
            # Only reached while the user has calls left today
            ...
    """
    api_type = parse_api_type(api_type)

    async def dependency(
        request: Request,
        response: Response,
        user_id: str = Depends(get_current_user_id),
        usage: UsageContext = Depends(UsageContext),
    ) -> AsyncIterator[UsageResult]:
        started = time.perf_counter()
        result, degraded = await usage.count(user_id, api_type)

        async def log_call(success: bool, error_message: Optional[str] = None) -> None:
            response_data: Dict[str, Any] = {
                "daily_count": result.daily_count,
                "daily_limit": result.daily_limit,
                "degraded": degraded,
            }
            await usage.limiter.log_api_request(
                user_id,
                api_type,
                success,
                error_message=error_message,
                request_data={"method": request.method, "path": request.url.path},
                response_data=response_data,
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent"),
                response_time_ms=int((time.perf_counter() - started) * 1000),
            )

        if not result.success:
            logger.warning(
                f"Daily {api_type.value} limit reached for user {user_id[:8]}... "
                f"({result.daily_count}/{result.daily_limit})"
            )
            await log_call(False, QUOTA_REFUSED_MESSAGE)
            raise QuotaExceededError(
                f"Daily limit of {result.daily_limit} {api_type.value} calls reached",
                api_type=api_type.value,
                limit=result.daily_limit,
                current_usage=result.daily_count,
                retry_after=usage.limiter.seconds_until_reset(),
            )

        request.state.usage = result
        _set_quota_headers(response, result, degraded, usage.limiter.seconds_until_reset())

        try:
            yield result
        except Exception as exc:
            await log_call(False, _failure_message(exc))
            raise
        await log_call(True)

    return dependency
