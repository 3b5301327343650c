"""
Aggregates over a day's usage rows for the admin dashboard.
"""

from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List

from src.types.usage import (
    ApiType,
    ApiTypeBreakdown,
    DailyUsageRecord,
    TopUser,
    UsageSummary,
)

DEFAULT_TOP_USERS = 10


def build_usage_summary(
    records: Iterable[DailyUsageRecord],
    usage_date: date,
    top_n: int = DEFAULT_TOP_USERS,
) -> UsageSummary:
    """
    Summarize one date's usage rows.

    `users` counts every row of an api type; `active_users` only rows with
    at least one counted call (a reset row has daily_count 0). Top users
    are ranked by total calls across api types, ties broken by user id.
    """
    records: List[DailyUsageRecord] = list(records)

    by_api_type: Dict[str, ApiTypeBreakdown] = {
        api_type.value: ApiTypeBreakdown() for api_type in ApiType
    }
    totals: Dict[str, int] = defaultdict(int)
    per_type: Dict[str, Dict[str, int]] = defaultdict(dict)

    for record in records:
        kind = record.api_type.value
        breakdown = by_api_type[kind]
        breakdown.total_calls += record.daily_count
        breakdown.users += 1
        if record.daily_count > 0:
            breakdown.active_users += 1

        totals[record.user_id] += record.daily_count
        per_type[record.user_id][kind] = record.daily_count

    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    top_users = [
        TopUser(
            user_id=user_id,
            total_calls=total,
            calls_by_type={
                api_type.value: per_type[user_id].get(api_type.value, 0)
                for api_type in ApiType
            },
        )
        for user_id, total in ranked[:top_n]
    ]

    return UsageSummary(
        usage_date=usage_date,
        total_users=len(totals),
        total_api_calls=sum(totals.values()),
        by_api_type=by_api_type,
        top_users=top_users,
    )
