"""
Pytest configuration and shared fixtures for the API usage ledger tests.

This module provides common fixtures used across all test files:
- Test client setup with an in-memory ledger
- Admin headers
- A fixed "today" for date-dependent tests
"""

import os
import sys
from datetime import date

import pytest

# Environment setup before any imports
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RATE_LIMIT_STORAGE"] = "memory"
os.environ["RATE_LIMIT_FAILURE_MODE"] = "fail_closed"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SENTRY_DSN", None)

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

TEST_ADMIN_TOKEN = "test-admin-token"
TODAY = date(2024, 3, 15)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Rebuild settings and the process-wide limiter around every test."""
    from src.config import get_settings
    from src.usage.rate_limiter import reset_rate_limiter

    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture
def limiter():
    """Ledger over a fresh in-memory store, pinned to TODAY."""
    from src.usage import ApiRateLimiter, InMemoryUsageStore

    return ApiRateLimiter(InMemoryUsageStore(), today_provider=lambda: TODAY)


@pytest.fixture
def client(limiter):
    """FastAPI test client wired to the `limiter` fixture."""
    from fastapi.testclient import TestClient

    from app.dependencies import get_usage_limiter
    from server import app

    app.dependency_overrides[get_usage_limiter] = lambda: limiter
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    """Authorization header accepted by the admin routes."""
    return {"Authorization": f"Bearer {TEST_ADMIN_TOKEN}"}


@pytest.fixture
def user_headers():
    """Identity header for a regular user."""
    return {"X-User-ID": "user-123"}
