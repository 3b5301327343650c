"""
Postgres-backed usage store.

Counting relies on a single INSERT ... ON CONFLICT DO UPDATE statement
whose WHERE clause carries the limit check, so the database row lock
serializes concurrent calls for the same (user, api_type, date) key and
nothing is read and written back by the application. When the
conditional update is skipped no row is returned, which means the call
was denied; a follow-up SELECT reports the current state.

Tables are created by migrations/001_api_usage.sql.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import asyncpg

from src.db import get_pool
from src.types.usage import (
    ApiRequestLog,
    ApiType,
    DailyUsageRecord,
    GlobalApiLimit,
    UserApiLimit,
)
from src.usage.errors import StorageError, StorageUnavailable
from src.usage.store import UsageStore

logger = logging.getLogger(__name__)

PoolFactory = Callable[[], Awaitable[Optional[asyncpg.Pool]]]

# Errors that mean the database could not be reached, not that a query was wrong.
UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.InterfaceError,
    asyncpg.PostgresConnectionError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
)

USAGE_COLUMNS = (
    "id, user_id, api_type, usage_date, daily_count, daily_limit, "
    "is_unlimited, last_used_at, created_at, updated_at"
)

INCREMENT_USAGE_SQL = f"""
    WITH resolved AS (
        SELECT
            COALESCE(u.daily_limit, g.daily_limit, $4::int) AS daily_limit,
            COALESCE(u.is_unlimited, g.is_unlimited, FALSE) AS is_unlimited
        FROM (SELECT 1) AS anchor
        LEFT JOIN api_user_limits u ON u.user_id = $1 AND u.api_type = $2
        LEFT JOIN global_api_limits g ON g.api_type = $2
    )
    INSERT INTO api_usage (
        user_id, api_type, usage_date, daily_count, daily_limit,
        is_unlimited, last_used_at, created_at, updated_at
    )
    SELECT $1, $2, $3, 1, resolved.daily_limit, resolved.is_unlimited, NOW(), NOW(), NOW()
    FROM resolved
    ON CONFLICT (user_id, api_type, usage_date) DO UPDATE
    SET daily_count = api_usage.daily_count + 1,
        last_used_at = NOW(),
        updated_at = NOW()
    WHERE api_usage.is_unlimited OR api_usage.daily_count < api_usage.daily_limit
    RETURNING {USAGE_COLUMNS}
"""

SELECT_USAGE_SQL = f"""
    SELECT {USAGE_COLUMNS}
    FROM api_usage
    WHERE user_id = $1 AND api_type = $2 AND usage_date = $3
"""

GLOBAL_LIMIT_COLUMNS = "api_type, daily_limit, is_unlimited, created_at, updated_at"

USER_LIMIT_COLUMNS = (
    "id, user_id, api_type, daily_limit, is_unlimited, created_by, created_at, updated_at"
)

INSERT_REQUEST_LOG_SQL = """
    INSERT INTO api_request_logs (
        user_id, api_type, success, error_message, request_data, response_data,
        ip_address, user_agent, response_time_ms
    )
    VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9)
    RETURNING id, created_at
"""


def _json_or_none(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _rowcount(status: Optional[str]) -> int:
    """Parse the affected row count from a command tag like 'UPDATE 3'."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


def _usage_from_row(row: Any) -> DailyUsageRecord:
    data = dict(row)
    if data.get("id") is not None:
        data["id"] = str(data["id"])
    return DailyUsageRecord(**data)


def _user_limit_from_row(row: Any) -> UserApiLimit:
    data = dict(row)
    if data.get("id") is not None:
        data["id"] = str(data["id"])
    return UserApiLimit(**data)


class PostgresUsageStore(UsageStore):
    """
    Usage store backed by the shared asyncpg pool.

    Connection failures are raised as StorageUnavailable; other database
    errors as StorageError.
    """

    backend_name = "postgres"

    def __init__(self, pool_factory: PoolFactory = get_pool):
        self._pool_factory = pool_factory

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        try:
            pool = await self._pool_factory()
        except UNAVAILABLE_ERRORS as e:
            logger.error("Postgres pool unavailable during %s: %s", operation, e)
            raise StorageUnavailable(
                "Usage storage is unavailable",
                operation=operation,
                original_error=e,
            ) from e

        if pool is None:
            raise StorageUnavailable(
                "Usage storage is not configured",
                operation=operation,
            )

        try:
            async with pool.acquire() as conn:
                yield conn
        except StorageError:
            raise
        except UNAVAILABLE_ERRORS as e:
            logger.error("Postgres connection failed during %s: %s", operation, e)
            raise StorageUnavailable(
                "Usage storage is unavailable",
                operation=operation,
                original_error=e,
            ) from e
        except asyncpg.PostgresError as e:
            logger.error("Postgres error during %s: %s", operation, e)
            raise StorageError(
                "Usage storage operation failed",
                operation=operation,
                original_error=e,
            ) from e

    # -- daily usage rows -----------------------------------------------------

    async def increment_usage(
        self,
        user_id: str,
        api_type: ApiType,
        usage_date: date,
        fallback_daily_limit: int,
    ) -> Tuple[DailyUsageRecord, bool]:
        async with self._connection("increment_usage") as conn:
            row = await conn.fetchrow(
                INCREMENT_USAGE_SQL,
                user_id,
                api_type.value,
                usage_date,
                fallback_daily_limit,
            )
            if row is not None:
                return _usage_from_row(row), True

            row = await conn.fetchrow(
                SELECT_USAGE_SQL, user_id, api_type.value, usage_date
            )

        if row is None:
            raise StorageError(
                "Usage row vanished after a denied increment",
                operation="increment_usage",
            )
        return _usage_from_row(row), False

    async def get_usage(
        self, user_id: str, api_type: ApiType, usage_date: date
    ) -> Optional[DailyUsageRecord]:
        async with self._connection("get_usage") as conn:
            row = await conn.fetchrow(
                SELECT_USAGE_SQL, user_id, api_type.value, usage_date
            )
        return _usage_from_row(row) if row else None

    async def list_user_usage(
        self, user_id: str, usage_date: date
    ) -> List[DailyUsageRecord]:
        async with self._connection("list_user_usage") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {USAGE_COLUMNS}
                FROM api_usage
                WHERE user_id = $1 AND usage_date = $2
                """,
                user_id,
                usage_date,
            )
        return [_usage_from_row(row) for row in rows]

    async def list_usage_by_date(self, usage_date: date) -> List[DailyUsageRecord]:
        async with self._connection("list_usage_by_date") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {USAGE_COLUMNS}
                FROM api_usage
                WHERE usage_date = $1
                ORDER BY daily_count DESC, user_id
                """,
                usage_date,
            )
        return [_usage_from_row(row) for row in rows]

    async def list_user_history(
        self, user_id: str, api_type: ApiType, since: date, until: date
    ) -> List[DailyUsageRecord]:
        async with self._connection("list_user_history") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {USAGE_COLUMNS}
                FROM api_usage
                WHERE user_id = $1 AND api_type = $2
                  AND usage_date >= $3 AND usage_date <= $4
                ORDER BY usage_date DESC
                """,
                user_id,
                api_type.value,
                since,
                until,
            )
        return [_usage_from_row(row) for row in rows]

    async def reset_usage(
        self, user_id: str, api_type: ApiType, usage_date: date
    ) -> bool:
        async with self._connection("reset_usage") as conn:
            status = await conn.execute(
                """
                UPDATE api_usage
                SET daily_count = 0,
                    updated_at = NOW()
                WHERE user_id = $1 AND api_type = $2 AND usage_date = $3
                """,
                user_id,
                api_type.value,
                usage_date,
            )
        return _rowcount(status) > 0

    async def resnapshot_usage(
        self,
        api_type: ApiType,
        usage_date: date,
        daily_limit: int,
        is_unlimited: bool,
    ) -> int:
        async with self._connection("resnapshot_usage") as conn:
            status = await conn.execute(
                """
                UPDATE api_usage
                SET daily_limit = $3,
                    is_unlimited = $4,
                    updated_at = NOW()
                WHERE api_type = $1 AND usage_date = $2
                  AND NOT EXISTS (
                      SELECT 1 FROM api_user_limits u
                      WHERE u.user_id = api_usage.user_id
                        AND u.api_type = api_usage.api_type
                  )
                """,
                api_type.value,
                usage_date,
                daily_limit,
                is_unlimited,
            )
        return _rowcount(status)

    # -- global limits --------------------------------------------------------

    async def list_global_limits(self) -> List[GlobalApiLimit]:
        async with self._connection("list_global_limits") as conn:
            rows = await conn.fetch(
                f"SELECT {GLOBAL_LIMIT_COLUMNS} FROM global_api_limits ORDER BY api_type"
            )
        return [GlobalApiLimit(**dict(row)) for row in rows]

    async def get_global_limit(self, api_type: ApiType) -> Optional[GlobalApiLimit]:
        async with self._connection("get_global_limit") as conn:
            row = await conn.fetchrow(
                f"SELECT {GLOBAL_LIMIT_COLUMNS} FROM global_api_limits WHERE api_type = $1",
                api_type.value,
            )
        return GlobalApiLimit(**dict(row)) if row else None

    async def upsert_global_limit(
        self, api_type: ApiType, daily_limit: int, is_unlimited: bool
    ) -> GlobalApiLimit:
        async with self._connection("upsert_global_limit") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO global_api_limits (api_type, daily_limit, is_unlimited, created_at, updated_at)
                VALUES ($1, $2, $3, NOW(), NOW())
                ON CONFLICT (api_type) DO UPDATE
                SET daily_limit = EXCLUDED.daily_limit,
                    is_unlimited = EXCLUDED.is_unlimited,
                    updated_at = NOW()
                RETURNING {GLOBAL_LIMIT_COLUMNS}
                """,
                api_type.value,
                daily_limit,
                is_unlimited,
            )
        return GlobalApiLimit(**dict(row))

    async def insert_missing_global_limits(self, limits: Dict[ApiType, int]) -> int:
        if not limits:
            return 0
        api_types = [api_type.value for api_type in limits]
        daily_limits = [limits[api_type] for api_type in limits]
        async with self._connection("insert_missing_global_limits") as conn:
            status = await conn.execute(
                """
                INSERT INTO global_api_limits (api_type, daily_limit, is_unlimited, created_at, updated_at)
                SELECT t.api_type, t.daily_limit, FALSE, NOW(), NOW()
                FROM UNNEST($1::text[], $2::int[]) AS t(api_type, daily_limit)
                ON CONFLICT (api_type) DO NOTHING
                """,
                api_types,
                daily_limits,
            )
        return _rowcount(status)

    # -- per-user overrides ---------------------------------------------------

    async def list_user_limits(
        self, user_id: Optional[str] = None
    ) -> List[UserApiLimit]:
        async with self._connection("list_user_limits") as conn:
            if user_id is None:
                rows = await conn.fetch(
                    f"SELECT {USER_LIMIT_COLUMNS} FROM api_user_limits "
                    "ORDER BY user_id, api_type"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {USER_LIMIT_COLUMNS} FROM api_user_limits "
                    "WHERE user_id = $1 ORDER BY api_type",
                    user_id,
                )
        return [_user_limit_from_row(row) for row in rows]

    async def get_user_limit(
        self, user_id: str, api_type: ApiType
    ) -> Optional[UserApiLimit]:
        async with self._connection("get_user_limit") as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_LIMIT_COLUMNS} FROM api_user_limits "
                "WHERE user_id = $1 AND api_type = $2",
                user_id,
                api_type.value,
            )
        return _user_limit_from_row(row) if row else None

    async def upsert_user_limit(
        self,
        user_id: str,
        api_type: ApiType,
        daily_limit: int,
        is_unlimited: bool,
        created_by: Optional[str] = None,
    ) -> UserApiLimit:
        async with self._connection("upsert_user_limit") as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO api_user_limits (
                    user_id, api_type, daily_limit, is_unlimited, created_by, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, NOW(), NOW())
                ON CONFLICT (user_id, api_type) DO UPDATE
                SET daily_limit = EXCLUDED.daily_limit,
                    is_unlimited = EXCLUDED.is_unlimited,
                    created_by = EXCLUDED.created_by,
                    updated_at = NOW()
                RETURNING {USER_LIMIT_COLUMNS}
                """,
                user_id,
                api_type.value,
                daily_limit,
                is_unlimited,
                created_by,
            )
        return _user_limit_from_row(row)

    async def delete_user_limit(self, user_id: str, api_type: ApiType) -> bool:
        async with self._connection("delete_user_limit") as conn:
            status = await conn.execute(
                "DELETE FROM api_user_limits WHERE user_id = $1 AND api_type = $2",
                user_id,
                api_type.value,
            )
        return _rowcount(status) > 0

    # -- request log ----------------------------------------------------------

    async def insert_request_log(self, entry: ApiRequestLog) -> ApiRequestLog:
        async with self._connection("insert_request_log") as conn:
            row = await conn.fetchrow(
                INSERT_REQUEST_LOG_SQL,
                entry.user_id,
                entry.api_type.value,
                entry.success,
                entry.error_message,
                _json_or_none(entry.request_data),
                _json_or_none(entry.response_data),
                entry.ip_address,
                entry.user_agent,
                entry.response_time_ms,
            )
        return entry.model_copy(update={"id": str(row["id"]), "created_at": row["created_at"]})

    # -- lifecycle ------------------------------------------------------------

    async def ping(self) -> None:
        async with self._connection("ping") as conn:
            await conn.fetchval("SELECT 1")
