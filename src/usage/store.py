"""
Storage backends for daily API usage counters and limits.

A backend owns four collections:
- daily usage rows keyed by (user_id, api_type, usage_date)
- global limits keyed by api_type
- per-user limit overrides keyed by (user_id, api_type)
- a request log of metered calls, append-only

`increment_usage` is the only write on the hot path. Every backend must
perform the limit check and the increment as one atomic step, so that
concurrent calls for the same key can never count past the limit.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from src.types.usage import (
    ApiRequestLog,
    ApiType,
    DailyUsageRecord,
    GlobalApiLimit,
    LimitSnapshot,
    UserApiLimit,
)

logger = logging.getLogger(__name__)

UsageKey = Tuple[str, ApiType, date]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_limit(
    user_limit: Optional[UserApiLimit],
    global_limit: Optional[GlobalApiLimit],
    fallback_daily_limit: int,
) -> LimitSnapshot:
    """Pick the limit in effect: user override, then global row, then fallback."""
    if user_limit is not None:
        return LimitSnapshot(
            daily_limit=user_limit.daily_limit,
            is_unlimited=user_limit.is_unlimited,
            source="user",
        )
    if global_limit is not None:
        return LimitSnapshot(
            daily_limit=global_limit.daily_limit,
            is_unlimited=global_limit.is_unlimited,
            source="global",
        )
    return LimitSnapshot(daily_limit=fallback_daily_limit, source="fallback")


# =============================================================================
# Backend Interface
# =============================================================================


class UsageStore(ABC):
    """Abstract base class for usage storage backends."""

    backend_name = "abstract"

    # -- daily usage rows -----------------------------------------------------

    @abstractmethod
    async def increment_usage(
        self,
        user_id: str,
        api_type: ApiType,
        usage_date: date,
        fallback_daily_limit: int,
    ) -> Tuple[DailyUsageRecord, bool]:
        """
        Count one call against the (user_id, api_type, usage_date) row.

        A missing row is created with daily_count=1 and a snapshot of the
        limit in effect. An existing row is incremented only when it is
        unlimited or below its limit.

        Returns:
            Tuple of (row state after the operation, whether the call was counted).
        """
        pass

    @abstractmethod
    async def get_usage(
        self, user_id: str, api_type: ApiType, usage_date: date
    ) -> Optional[DailyUsageRecord]:
        pass

    @abstractmethod
    async def list_user_usage(
        self, user_id: str, usage_date: date
    ) -> List[DailyUsageRecord]:
        pass

    @abstractmethod
    async def list_usage_by_date(self, usage_date: date) -> List[DailyUsageRecord]:
        """All rows for a date, highest daily_count first."""
        pass

    @abstractmethod
    async def list_user_history(
        self, user_id: str, api_type: ApiType, since: date, until: date
    ) -> List[DailyUsageRecord]:
        """Rows for one user and api type between two dates, newest first."""
        pass

    @abstractmethod
    async def reset_usage(
        self, user_id: str, api_type: ApiType, usage_date: date
    ) -> bool:
        """Zero daily_count on a row. Returns False when no row exists."""
        pass

    @abstractmethod
    async def resnapshot_usage(
        self,
        api_type: ApiType,
        usage_date: date,
        daily_limit: int,
        is_unlimited: bool,
    ) -> int:
        """
        Rewrite the limit snapshot on a date's rows for one api type.

        Rows belonging to users with a per-user override are left alone.
        Returns the number of rows updated.
        """
        pass

    # -- global limits --------------------------------------------------------

    @abstractmethod
    async def list_global_limits(self) -> List[GlobalApiLimit]:
        pass

    @abstractmethod
    async def get_global_limit(self, api_type: ApiType) -> Optional[GlobalApiLimit]:
        pass

    @abstractmethod
    async def upsert_global_limit(
        self, api_type: ApiType, daily_limit: int, is_unlimited: bool
    ) -> GlobalApiLimit:
        pass

    @abstractmethod
    async def insert_missing_global_limits(self, limits: Dict[ApiType, int]) -> int:
        """Create global rows for api types that have none. Returns rows created."""
        pass

    # -- per-user overrides ---------------------------------------------------

    @abstractmethod
    async def list_user_limits(
        self, user_id: Optional[str] = None
    ) -> List[UserApiLimit]:
        pass

    @abstractmethod
    async def get_user_limit(
        self, user_id: str, api_type: ApiType
    ) -> Optional[UserApiLimit]:
        pass

    @abstractmethod
    async def upsert_user_limit(
        self,
        user_id: str,
        api_type: ApiType,
        daily_limit: int,
        is_unlimited: bool,
        created_by: Optional[str] = None,
    ) -> UserApiLimit:
        pass

    @abstractmethod
    async def delete_user_limit(self, user_id: str, api_type: ApiType) -> bool:
        pass

    # -- request log ----------------------------------------------------------

    @abstractmethod
    async def insert_request_log(self, entry: ApiRequestLog) -> ApiRequestLog:
        """Append one request log entry and return it with id and created_at set."""
        pass

    # -- lifecycle ------------------------------------------------------------

    @abstractmethod
    async def ping(self) -> None:
        """Raise a StorageError if the backend cannot serve requests."""
        pass

    async def close(self) -> None:
        return None


# =============================================================================
# In-Memory Backend
# =============================================================================


class InMemoryUsageStore(UsageStore):
    """
    Thread-safe in-memory usage store.

    Suitable for single-instance deployments, development and tests.
    Every method body runs under one lock with no await inside it, so
    the check-and-increment cannot interleave with another caller.
    """

    backend_name = "memory"

    def __init__(self):
        self._usage: Dict[UsageKey, DailyUsageRecord] = {}
        self._global_limits: Dict[ApiType, GlobalApiLimit] = {}
        self._user_limits: Dict[Tuple[str, ApiType], UserApiLimit] = {}
        self._request_logs: List[ApiRequestLog] = []
        self._lock = threading.RLock()

    async def increment_usage(
        self,
        user_id: str,
        api_type: ApiType,
        usage_date: date,
        fallback_daily_limit: int,
    ) -> Tuple[DailyUsageRecord, bool]:
        key = (user_id, api_type, usage_date)
        with self._lock:
            now = _utcnow()
            record = self._usage.get(key)

            if record is None:
                snapshot = resolve_limit(
                    self._user_limits.get((user_id, api_type)),
                    self._global_limits.get(api_type),
                    fallback_daily_limit,
                )
                record = DailyUsageRecord(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    api_type=api_type,
                    usage_date=usage_date,
                    daily_count=1,
                    daily_limit=snapshot.daily_limit,
                    is_unlimited=snapshot.is_unlimited,
                    last_used_at=now,
                    created_at=now,
                    updated_at=now,
                )
                self._usage[key] = record
                return record.model_copy(), True

            if record.is_exhausted:
                return record.model_copy(), False

            record.daily_count += 1
            record.last_used_at = now
            record.updated_at = now
            return record.model_copy(), True

    async def get_usage(
        self, user_id: str, api_type: ApiType, usage_date: date
    ) -> Optional[DailyUsageRecord]:
        with self._lock:
            record = self._usage.get((user_id, api_type, usage_date))
            return record.model_copy() if record else None

    async def list_user_usage(
        self, user_id: str, usage_date: date
    ) -> List[DailyUsageRecord]:
        with self._lock:
            return [
                record.model_copy()
                for (uid, _, day), record in self._usage.items()
                if uid == user_id and day == usage_date
            ]

    async def list_usage_by_date(self, usage_date: date) -> List[DailyUsageRecord]:
        with self._lock:
            records = [
                record.model_copy()
                for (_, _, day), record in self._usage.items()
                if day == usage_date
            ]
        return sorted(records, key=lambda r: r.daily_count, reverse=True)

    async def list_user_history(
        self, user_id: str, api_type: ApiType, since: date, until: date
    ) -> List[DailyUsageRecord]:
        with self._lock:
            records = [
                record.model_copy()
                for (uid, kind, day), record in self._usage.items()
                if uid == user_id and kind == api_type and since <= day <= until
            ]
        return sorted(records, key=lambda r: r.usage_date, reverse=True)

    async def reset_usage(
        self, user_id: str, api_type: ApiType, usage_date: date
    ) -> bool:
        with self._lock:
            record = self._usage.get((user_id, api_type, usage_date))
            if record is None:
                return False
            record.daily_count = 0
            record.updated_at = _utcnow()
            return True

    async def resnapshot_usage(
        self,
        api_type: ApiType,
        usage_date: date,
        daily_limit: int,
        is_unlimited: bool,
    ) -> int:
        updated = 0
        with self._lock:
            now = _utcnow()
            for (uid, kind, day), record in self._usage.items():
                if kind != api_type or day != usage_date:
                    continue
                if (uid, kind) in self._user_limits:
                    continue
                record.daily_limit = daily_limit
                record.is_unlimited = is_unlimited
                record.updated_at = now
                updated += 1
        return updated

    async def list_global_limits(self) -> List[GlobalApiLimit]:
        with self._lock:
            limits = [limit.model_copy() for limit in self._global_limits.values()]
        return sorted(limits, key=lambda l: l.api_type.value)

    async def get_global_limit(self, api_type: ApiType) -> Optional[GlobalApiLimit]:
        with self._lock:
            limit = self._global_limits.get(api_type)
            return limit.model_copy() if limit else None

    async def upsert_global_limit(
        self, api_type: ApiType, daily_limit: int, is_unlimited: bool
    ) -> GlobalApiLimit:
        with self._lock:
            now = _utcnow()
            existing = self._global_limits.get(api_type)
            limit = GlobalApiLimit(
                api_type=api_type,
                daily_limit=daily_limit,
                is_unlimited=is_unlimited,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._global_limits[api_type] = limit
            return limit.model_copy()

    async def insert_missing_global_limits(self, limits: Dict[ApiType, int]) -> int:
        created = 0
        with self._lock:
            now = _utcnow()
            for api_type, daily_limit in limits.items():
                if api_type in self._global_limits:
                    continue
                self._global_limits[api_type] = GlobalApiLimit(
                    api_type=api_type,
                    daily_limit=daily_limit,
                    created_at=now,
                    updated_at=now,
                )
                created += 1
        return created

    async def list_user_limits(
        self, user_id: Optional[str] = None
    ) -> List[UserApiLimit]:
        with self._lock:
            limits = [
                limit.model_copy()
                for (uid, _), limit in self._user_limits.items()
                if user_id is None or uid == user_id
            ]
        return sorted(limits, key=lambda l: (l.user_id, l.api_type.value))

    async def get_user_limit(
        self, user_id: str, api_type: ApiType
    ) -> Optional[UserApiLimit]:
        with self._lock:
            limit = self._user_limits.get((user_id, api_type))
            return limit.model_copy() if limit else None

    async def upsert_user_limit(
        self,
        user_id: str,
        api_type: ApiType,
        daily_limit: int,
        is_unlimited: bool,
        created_by: Optional[str] = None,
    ) -> UserApiLimit:
        with self._lock:
            now = _utcnow()
            existing = self._user_limits.get((user_id, api_type))
            limit = UserApiLimit(
                id=existing.id if existing else str(uuid.uuid4()),
                user_id=user_id,
                api_type=api_type,
                daily_limit=daily_limit,
                is_unlimited=is_unlimited,
                created_by=created_by,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._user_limits[(user_id, api_type)] = limit
            return limit.model_copy()

    async def delete_user_limit(self, user_id: str, api_type: ApiType) -> bool:
        with self._lock:
            return self._user_limits.pop((user_id, api_type), None) is not None

    async def insert_request_log(self, entry: ApiRequestLog) -> ApiRequestLog:
        with self._lock:
            stored = entry.model_copy(update={"id": str(uuid.uuid4()), "created_at": _utcnow()})
            self._request_logs.append(stored)
            return stored.model_copy()

    def request_logs(self) -> List[ApiRequestLog]:
        """Logged calls, oldest first."""
        with self._lock:
            return [entry.model_copy() for entry in self._request_logs]

    async def ping(self) -> None:
        return None

    def clear(self) -> None:
        """Drop all rows. Used by tests."""
        with self._lock:
            self._usage.clear()
            self._global_limits.clear()
            self._user_limits.clear()
            self._request_logs.clear()
