"""
Usage ledger dependencies and the storage failure policy.

Routes never call the ledger's counting operation directly; they go
through count_api_call so that validation errors and storage outages are
handled the same way everywhere.
"""

import logging
from typing import Tuple

from fastapi import Depends

from app.exceptions import from_usage_error
from src.config import get_settings
from src.types.usage import ApiType, UsageResult
from src.usage.errors import LimitValidationError, StorageError, StorageUnavailable
from src.usage.rate_limiter import ApiRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)


def get_usage_limiter() -> ApiRateLimiter:
    """FastAPI dependency returning the process-wide rate limiter."""
    return get_rate_limiter()


class FailurePolicy:
    """
    What a usage check does when storage is unreachable.

    fail_closed surfaces a retryable 503. fail_open lets the call through
    with a degraded result and logs a warning, so the outage is visible
    but the capability stays up. The degraded call is not counted.
    """

    FAIL_CLOSED = "fail_closed"
    FAIL_OPEN = "fail_open"

    def __init__(self, mode: str = FAIL_CLOSED):
        if mode not in (self.FAIL_CLOSED, self.FAIL_OPEN):
            raise ValueError(f"Unknown failure mode: {mode}")
        self.mode = mode

    @property
    def fails_open(self) -> bool:
        return self.mode == self.FAIL_OPEN

    def handle(
        self,
        exc: StorageError,
        user_id: str,
        api_type: ApiType,
        fallback_daily_limit: int,
    ) -> UsageResult:
        """
        Return a degraded result or raise the HTTP-facing storage error.

        Only StorageUnavailable can fail open; any other storage error
        always propagates.
        """
        if self.fails_open and isinstance(exc, StorageUnavailable):
            logger.warning(
                f"Usage storage unavailable, allowing {api_type.value} call for "
                f"user {user_id[:8]}... without counting: {exc}"
            )
            return UsageResult.from_counts(
                daily_count=0,
                daily_limit=fallback_daily_limit,
                is_unlimited=False,
                success=True,
            )
        raise from_usage_error(exc) from exc


def get_failure_policy() -> FailurePolicy:
    """FastAPI dependency returning the configured failure policy."""
    return FailurePolicy(get_settings().rate_limit.rate_limit_failure_mode)


async def count_api_call(
    limiter: ApiRateLimiter,
    policy: FailurePolicy,
    user_id: str,
    api_type: object,
) -> Tuple[UsageResult, bool]:
    """
    Count one call and apply the failure policy.

    Returns:
        Tuple of (usage result, whether the result is degraded)

    Raises:
        ValidationError: For an unknown api type
        StorageUnavailableError / DatabaseError: When the policy does not fail open
    """
    try:
        return await limiter.get_or_create_today_usage(user_id, api_type), False
    except LimitValidationError as e:
        raise from_usage_error(e) from e
    except StorageError as e:
        # api_type was validated before storage was touched
        result = policy.handle(
            e, user_id, ApiType(api_type), limiter.fallback_daily_limit
        )
        return result, True


class UsageContext:
    """Bundle of the limiter and failure policy for route handlers."""

    def __init__(
        self,
        limiter: ApiRateLimiter = Depends(get_usage_limiter),
        policy: FailurePolicy = Depends(get_failure_policy),
    ):
        self.limiter = limiter
        self.policy = policy

    async def count(self, user_id: str, api_type: object) -> Tuple[UsageResult, bool]:
        return await count_api_call(self.limiter, self.policy, user_id, api_type)
