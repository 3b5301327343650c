"""
FastAPI dependencies for the API usage ledger.

This module provides reusable dependencies for:
- Resolving the rate limiter
- Applying the storage failure policy to usage checks

Usage:
    from app.dependencies import UsageContext, get_usage_limiter
"""

from app.dependencies.usage import (
    FailurePolicy,
    UsageContext,
    count_api_call,
    get_failure_policy,
    get_usage_limiter,
)

__all__ = [
    "FailurePolicy",
    "UsageContext",
    "count_api_call",
    "get_failure_policy",
    "get_usage_limiter",
]
