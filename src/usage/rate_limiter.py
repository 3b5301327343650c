"""
Per-user, per-API daily rate limiter.

This module provides the ApiRateLimiter facade over a UsageStore:
- get_or_create_today_usage: count a call and report the remaining quota
- get_all_user_usage / get_user_usage_status: read-only status
- reset_user_daily_usage / update_existing_usage_records: admin maintenance
- global limits and per-user overrides
- log_api_request: best-effort request log of metered calls

The limit is resolved (user override, then global row, then the configured
fallback) only when a day's row is created. Later changes to limits do not
touch existing rows until update_existing_usage_records runs.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from src.config import get_settings
from src.types.usage import (
    DEFAULT_FALLBACK_DAILY_LIMIT,
    MAX_DAILY_LIMIT,
    MIN_DAILY_LIMIT,
    ApiRequestLog,
    ApiType,
    DailyUsageRecord,
    GlobalApiLimit,
    LimitSnapshot,
    SyncReport,
    UsageResult,
    UserApiLimit,
)
from src.usage.errors import LimitValidationError, StorageError
from src.usage.store import InMemoryUsageStore, UsageStore, resolve_limit
from src.utils.logging import log_duration

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_DAYS = 30


def parse_api_type(value: Any) -> ApiType:
    """Coerce a raw value to an ApiType or raise LimitValidationError."""
    if isinstance(value, ApiType):
        return value
    try:
        return ApiType(value)
    except ValueError:
        allowed = ", ".join(api_type.value for api_type in ApiType)
        raise LimitValidationError(
            f"Invalid api_type '{value}'. Must be one of: {allowed}",
            field="api_type",
            value=value,
        ) from None


def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise LimitValidationError(
            "user_id must be a non-empty string",
            field="user_id",
            value=user_id,
        )
    return user_id


def normalize_limit(daily_limit: Optional[int], is_unlimited: bool) -> int:
    """
    Validate a limit and return the value to store.

    Unlimited entries are stored with a limit of 0.
    """
    if is_unlimited:
        return 0
    if (
        daily_limit is None
        or isinstance(daily_limit, bool)
        or not isinstance(daily_limit, int)
        or not MIN_DAILY_LIMIT <= daily_limit <= MAX_DAILY_LIMIT
    ):
        raise LimitValidationError(
            f"Daily limit must be between {MIN_DAILY_LIMIT} and {MAX_DAILY_LIMIT}",
            field="daily_limit",
            value=daily_limit,
        )
    return daily_limit


class ApiRateLimiter:
    """
    Daily usage ledger for rate-limited external APIs.

    Storage errors are never swallowed: StorageUnavailable and StorageError
    propagate to the caller, which decides on a failure policy.
    """

    def __init__(
        self,
        store: UsageStore,
        fallback_daily_limit: int = DEFAULT_FALLBACK_DAILY_LIMIT,
        timezone: str = "UTC",
        today_provider: Optional[Callable[[], date]] = None,
    ):
        self.store = store
        self.fallback_daily_limit = fallback_daily_limit
        self.timezone = ZoneInfo(timezone)
        self._today_provider = today_provider

    def today(self) -> date:
        """The current calendar date in the ledger's timezone."""
        if self._today_provider is not None:
            return self._today_provider()
        return datetime.now(self.timezone).date()

    def seconds_until_reset(self, now: Optional[datetime] = None) -> int:
        """
        Seconds until the next day boundary in the ledger's timezone.

        Both instants are compared in UTC, so days that gain or lose an
        hour to a DST switch give the real elapsed time.
        """
        now = (now or datetime.now(dt_timezone.utc)).astimezone(dt_timezone.utc)
        local_today = now.astimezone(self.timezone).date()
        next_midnight = datetime.combine(
            local_today + timedelta(days=1), time.min, tzinfo=self.timezone
        ).astimezone(dt_timezone.utc)
        return max(1, int((next_midnight - now).total_seconds()))

    # =========================================================================
    # Usage
    # =========================================================================

    async def get_or_create_today_usage(self, user_id: str, api_type: Any) -> UsageResult:
        """
        Count one call for today and report the resulting quota.

        A denied call is not counted and returns success=False with
        remaining=0. The increment is not idempotent: a caller that times
        out cannot tell whether the call was counted.
        """
        user_id = validate_user_id(user_id)
        api_type = parse_api_type(api_type)
        usage_date = self.today()

        with log_duration(logger, "usage_check"):
            record, allowed = await self.store.increment_usage(
                user_id, api_type, usage_date, self.fallback_daily_limit
            )

        if not allowed:
            logger.info(
                f"Daily limit reached for user {user_id[:8]}... on {api_type.value} "
                f"({record.daily_count}/{record.daily_limit})"
            )
        return record.to_result(success=allowed)

    async def get_user_usage_status(
        self, user_id: str, api_type: Any
    ) -> Optional[DailyUsageRecord]:
        """Today's row for one api type, or None if no call was made yet."""
        user_id = validate_user_id(user_id)
        api_type = parse_api_type(api_type)
        return await self.store.get_usage(user_id, api_type, self.today())

    async def get_all_user_usage(self, user_id: str) -> Dict[ApiType, Optional[UsageResult]]:
        """Today's status for every api type. Never creates rows."""
        user_id = validate_user_id(user_id)
        records = await self.store.list_user_usage(user_id, self.today())
        by_type = {record.api_type: record for record in records}
        return {
            api_type: by_type[api_type].to_result() if api_type in by_type else None
            for api_type in ApiType
        }

    async def resolve_limit(self, user_id: str, api_type: Any) -> LimitSnapshot:
        """The limit a row created right now would snapshot."""
        user_id = validate_user_id(user_id)
        api_type = parse_api_type(api_type)
        return resolve_limit(
            await self.store.get_user_limit(user_id, api_type),
            await self.store.get_global_limit(api_type),
            self.fallback_daily_limit,
        )

    async def get_all_usage_by_date(
        self, usage_date: Optional[date] = None
    ) -> List[DailyUsageRecord]:
        return await self.store.list_usage_by_date(usage_date or self.today())

    async def get_user_usage_history(
        self, user_id: str, api_type: Any, days: int = DEFAULT_HISTORY_DAYS
    ) -> List[DailyUsageRecord]:
        """Rows for the last `days` days including today, newest first."""
        user_id = validate_user_id(user_id)
        api_type = parse_api_type(api_type)
        if days < 1:
            raise LimitValidationError("days must be at least 1", field="days", value=days)
        until = self.today()
        since = until - timedelta(days=days - 1)
        return await self.store.list_user_history(user_id, api_type, since, until)

    async def reset_user_daily_usage(
        self, user_id: str, api_type: Any, usage_date: Optional[date] = None
    ) -> bool:
        """
        Zero the count for one user and api type.

        A missing row is a no-op and still reports success.
        """
        user_id = validate_user_id(user_id)
        api_type = parse_api_type(api_type)
        usage_date = usage_date or self.today()

        existed = await self.store.reset_usage(user_id, api_type, usage_date)
        if existed:
            logger.info(
                f"Reset {api_type.value} usage for user {user_id[:8]}... on {usage_date}"
            )
        else:
            logger.info(
                f"No {api_type.value} usage to reset for user {user_id[:8]}... on {usage_date}"
            )
        return True

    async def update_existing_usage_records(
        self, usage_date: Optional[date] = None
    ) -> SyncReport:
        """
        Re-snapshot the limit on a date's rows from the current global limits.

        Each api type is updated independently; a storage error on one is
        recorded in the report and does not stop the others.
        """
        usage_date = usage_date or self.today()
        report = SyncReport(usage_date=usage_date)

        for limit in await self.store.list_global_limits():
            try:
                count = await self.store.resnapshot_usage(
                    limit.api_type, usage_date, limit.daily_limit, limit.is_unlimited
                )
            except StorageError as e:
                logger.error(
                    f"Failed to update {limit.api_type.value} usage rows for {usage_date}: {e}"
                )
                report.failed.append(limit.api_type.value)
                continue
            report.updated[limit.api_type.value] = count

        logger.info(
            f"Re-snapshotted {report.total_updated} usage rows for {usage_date} "
            f"(failed: {report.failed or 'none'})"
        )
        return report

    # =========================================================================
    # Global limits
    # =========================================================================

    async def get_global_limits(self) -> List[GlobalApiLimit]:
        return await self.store.list_global_limits()

    async def get_global_limit(self, api_type: Any) -> Optional[GlobalApiLimit]:
        return await self.store.get_global_limit(parse_api_type(api_type))

    async def set_global_limit(
        self, api_type: Any, daily_limit: Optional[int], is_unlimited: bool = False
    ) -> bool:
        """Validate and upsert a global limit. Existing rows keep their snapshot."""
        api_type = parse_api_type(api_type)
        stored_limit = normalize_limit(daily_limit, is_unlimited)
        await self.store.upsert_global_limit(api_type, stored_limit, is_unlimited)
        logger.info(
            f"Global limit for {api_type.value} set to "
            f"{'unlimited' if is_unlimited else stored_limit}"
        )
        return True

    async def seed_global_limits(self, defaults: Dict[ApiType, int]) -> int:
        """Create global rows for api types without one. Returns rows created."""
        for api_type, daily_limit in defaults.items():
            normalize_limit(daily_limit, False)
        created = await self.store.insert_missing_global_limits(defaults)
        if created:
            logger.info(f"Seeded {created} global api limits")
        return created

    # =========================================================================
    # Per-user overrides
    # =========================================================================

    async def set_user_limit(
        self,
        user_id: str,
        api_type: Any,
        daily_limit: Optional[int],
        is_unlimited: bool = False,
        created_by: Optional[str] = None,
    ) -> UserApiLimit:
        """
        Upsert a per-user override. It applies from the next row created;
        today's row keeps its snapshot.
        """
        user_id = validate_user_id(user_id)
        api_type = parse_api_type(api_type)
        stored_limit = normalize_limit(daily_limit, is_unlimited)
        limit = await self.store.upsert_user_limit(
            user_id, api_type, stored_limit, is_unlimited, created_by
        )
        logger.info(
            f"User limit for {user_id[:8]}... on {api_type.value} set to "
            f"{'unlimited' if is_unlimited else stored_limit}"
        )
        return limit

    async def get_user_limits(self, user_id: Optional[str] = None) -> List[UserApiLimit]:
        if user_id is not None:
            validate_user_id(user_id)
        return await self.store.list_user_limits(user_id)

    async def delete_user_limit(self, user_id: str, api_type: Any) -> bool:
        user_id = validate_user_id(user_id)
        api_type = parse_api_type(api_type)
        deleted = await self.store.delete_user_limit(user_id, api_type)
        if deleted:
            logger.info(f"Removed user limit for {user_id[:8]}... on {api_type.value}")
        return deleted

    # =========================================================================
    # Request log
    # =========================================================================

    async def log_api_request(
        self,
        user_id: Optional[str],
        api_type: Any,
        success: bool,
        error_message: Optional[str] = None,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        response_time_ms: Optional[int] = None,
    ) -> Optional[ApiRequestLog]:
        """
        Record one metered call in the request log.

        Best effort: a storage failure is logged and None is returned, so
        the call being logged is never failed by its own log entry.
        """
        entry = ApiRequestLog(
            user_id=user_id,
            api_type=parse_api_type(api_type),
            success=success,
            error_message=error_message,
            request_data=request_data,
            response_data=response_data,
            ip_address=ip_address,
            user_agent=user_agent,
            response_time_ms=max(0, response_time_ms) if response_time_ms is not None else None,
        )
        try:
            return await self.store.insert_request_log(entry)
        except StorageError as e:
            logger.warning(f"Could not write {entry.api_type.value} request log entry: {e}")
            return None


# =============================================================================
# Singleton
# =============================================================================

_rate_limiter: Optional[ApiRateLimiter] = None


def create_store(backend: str) -> UsageStore:
    """Build a usage store by backend name ("memory" or "postgres")."""
    if backend == "postgres":
        from src.usage.postgres_store import PostgresUsageStore

        return PostgresUsageStore()
    return InMemoryUsageStore()


def get_rate_limiter() -> ApiRateLimiter:
    """Get the singleton rate limiter, configured from settings."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        backend = settings.storage_backend
        _rate_limiter = ApiRateLimiter(
            store=create_store(backend),
            fallback_daily_limit=settings.rate_limit.rate_limit_fallback_daily_limit,
            timezone=settings.rate_limit.rate_limit_timezone,
        )
        logger.info(f"Rate limiter initialized with {backend} storage")
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Drop the singleton so the next call rebuilds it from settings."""
    global _rate_limiter
    _rate_limiter = None


# Convenience functions for direct access
async def get_or_create_today_usage(user_id: str, api_type: Any) -> UsageResult:
    """Count one call for today."""
    return await get_rate_limiter().get_or_create_today_usage(user_id, api_type)


async def get_all_user_usage(user_id: str) -> Dict[ApiType, Optional[UsageResult]]:
    """Today's status for every api type."""
    return await get_rate_limiter().get_all_user_usage(user_id)
