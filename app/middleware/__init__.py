"""Middleware components for the API usage ledger."""

from .logging import RequestLoggingMiddleware
from .quota_check import require_api_quota

__all__ = [
    # Logging
    "RequestLoggingMiddleware",
    # Quota
    "require_api_quota",
]
