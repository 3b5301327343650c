"""
Tests for the user usage endpoints.

Tests POST /api/user/usage-status, GET /api/user/usage-status and
GET /api/user/usage-history, including the storage failure policy.
"""

import os
import sys
import unittest
from datetime import date

# Set environment before imports
os.environ["ENVIRONMENT"] = "development"
os.environ["RATE_LIMIT_STORAGE"] = "memory"

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from fastapi.testclient import TestClient

from app.dependencies import FailurePolicy, get_failure_policy, get_usage_limiter
from src.types.usage import ApiType
from src.usage import ApiRateLimiter, InMemoryUsageStore, StorageError, StorageUnavailable

TODAY = date(2024, 3, 15)
USER_HEADERS = {"X-User-ID": "user-123"}


class UnavailableStore(InMemoryUsageStore):
    """A store whose database cannot be reached."""

    async def increment_usage(self, *args, **kwargs):
        raise StorageUnavailable("Usage storage is unavailable", operation="increment_usage")


class BrokenStore(InMemoryUsageStore):
    """A store whose queries fail."""

    async def increment_usage(self, *args, **kwargs):
        raise StorageError("Usage storage operation failed", operation="increment_usage")


class UsageRouteTestCase(unittest.TestCase):
    """Shared setup: the app wired to an in-memory ledger."""

    store_class = InMemoryUsageStore
    failure_mode = "fail_closed"

    def setUp(self):
        from server import app

        self.app = app
        self.limiter = ApiRateLimiter(self.store_class(), today_provider=lambda: TODAY)
        app.dependency_overrides[get_usage_limiter] = lambda: self.limiter
        app.dependency_overrides[get_failure_policy] = lambda: FailurePolicy(self.failure_mode)
        self.client = TestClient(app)

    def tearDown(self):
        self.app.dependency_overrides.clear()

    def check(self, api_type="email2name", headers=USER_HEADERS):
        return self.client.post(
            "/api/user/usage-status", json={"apiType": api_type}, headers=headers
        )


class TestCheckUsage(UsageRouteTestCase):
    """Tests for POST /api/user/usage-status."""

    def test_first_call_counts(self):
        """The first call should be counted and report the remaining quota."""
        response = self.check()

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["success"])
        self.assertFalse(data["degraded"])
        self.assertEqual(data["usage"]["daily_count"], 1)
        self.assertEqual(data["usage"]["daily_limit"], 200)
        self.assertEqual(data["usage"]["remaining"], 199)
        self.assertTrue(data["usage"]["success"])

    def set_global_limit(self, api_type, daily_limit=None, is_unlimited=False):
        response = self.client.post(
            "/api/admin/global-limits",
            json={
                "api_type": api_type,
                "daily_limit": daily_limit,
                "is_unlimited": is_unlimited,
            },
            headers={"Authorization": "Bearer test-admin-token"},
        )
        self.assertEqual(response.status_code, 200)

    def test_limit_reached_returns_success_false(self):
        """A call past the limit is reported, not counted, with status 200."""
        self.set_global_limit("email2name", 2)
        for _ in range(2):
            self.assertTrue(self.check().json()["usage"]["success"])

        response = self.check()
        data = response.json()

        self.assertEqual(response.status_code, 200)
        self.assertFalse(data["usage"]["success"])
        self.assertEqual(data["usage"]["remaining"], 0)
        self.assertEqual(data["usage"]["daily_count"], 2)

    def test_unlimited_reports_sentinel(self):
        """Unlimited api types report remaining as 'unlimited'."""
        self.set_global_limit("address_generator", is_unlimited=True)

        data = self.check("address_generator").json()

        self.assertEqual(data["usage"]["remaining"], "unlimited")
        self.assertTrue(data["usage"]["unlimited"])

    def test_snake_case_field_accepted(self):
        """api_type should be accepted as well as apiType."""
        response = self.client.post(
            "/api/user/usage-status",
            json={"api_type": "address_generator"},
            headers=USER_HEADERS,
        )
        self.assertEqual(response.status_code, 200)

    def test_unknown_api_type_returns_400(self):
        """Unknown api types should be rejected with the accepted values."""
        response = self.check("geocoder")

        self.assertEqual(response.status_code, 400)
        data = response.json()
        self.assertFalse(data["success"])
        self.assertEqual(data["error_code"], "INVALID_API_TYPE")
        self.assertIn("email2name", data["error"])
        self.assertEqual(data["details"]["field"], "api_type")

    def test_missing_api_type_returns_422(self):
        response = self.client.post("/api/user/usage-status", json={}, headers=USER_HEADERS)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error_code"], "VALIDATION_ERROR")

    def test_missing_user_header_returns_401(self):
        """Calls without a user identity should be rejected."""
        response = self.check(headers={})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error_code"], "AUTHENTICATION_REQUIRED")
        self.assertEqual(response.json()["error"], "User identity header is required")

    def test_blank_user_header_returns_401(self):
        response = self.check(headers={"X-User-ID": "   "})
        self.assertEqual(response.status_code, 401)

    def test_users_are_isolated(self):
        self.check(headers={"X-User-ID": "user-a"})
        data = self.check(headers={"X-User-ID": "user-b"}).json()

        self.assertEqual(data["usage"]["daily_count"], 1)


class TestFailClosed(UsageRouteTestCase):
    """Storage outages surface as a retryable 503 by default."""

    store_class = UnavailableStore

    def test_unavailable_storage_returns_503(self):
        response = self.check()

        self.assertEqual(response.status_code, 503)
        data = response.json()
        self.assertEqual(data["error_code"], "STORAGE_UNAVAILABLE")
        self.assertTrue(data["retryable"])
        self.assertEqual(response.headers.get("Retry-After"), "1")


class TestFailOpen(UsageRouteTestCase):
    """fail_open lets calls through while storage is unreachable."""

    store_class = UnavailableStore
    failure_mode = "fail_open"

    def test_unavailable_storage_returns_degraded_result(self):
        response = self.check()

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["degraded"])
        self.assertTrue(data["usage"]["success"])
        self.assertEqual(data["usage"]["daily_count"], 0)
        self.assertEqual(data["usage"]["daily_limit"], 200)

    def test_invalid_api_type_still_rejected(self):
        """fail_open never hides validation errors."""
        self.assertEqual(self.check("geocoder").status_code, 400)


class TestFailOpenQueryError(UsageRouteTestCase):
    """fail_open only applies to unreachable storage."""

    store_class = BrokenStore
    failure_mode = "fail_open"

    def test_query_error_returns_500(self):
        response = self.check()

        self.assertEqual(response.status_code, 500)
        data = response.json()
        self.assertEqual(data["error_code"], "DATABASE_ERROR")
        self.assertNotIn("retryable", data)


class TestUsageStatus(UsageRouteTestCase):
    """Tests for GET /api/user/usage-status."""

    def test_new_user_sees_defaults_for_every_type(self):
        """Types without a row report zero calls and the applicable limit."""
        response = self.client.get("/api/user/usage-status", headers=USER_HEADERS)

        self.assertEqual(response.status_code, 200)
        usage = response.json()["usage"]
        self.assertEqual(set(usage), {t.value for t in ApiType})
        for item in usage.values():
            self.assertEqual(item["daily_count"], 0)
            self.assertEqual(item["remaining"], 200)

    def test_reflects_counted_calls_without_counting(self):
        """Reading status should not change the count."""
        self.check()
        self.check()

        first = self.client.get("/api/user/usage-status", headers=USER_HEADERS).json()
        second = self.client.get("/api/user/usage-status", headers=USER_HEADERS).json()

        self.assertEqual(first, second)
        self.assertEqual(first["usage"]["email2name"]["daily_count"], 2)
        self.assertEqual(first["usage"]["address_generator"]["daily_count"], 0)

    def test_requires_user_header(self):
        response = self.client.get("/api/user/usage-status")
        self.assertEqual(response.status_code, 401)


class TestUsageHistory(UsageRouteTestCase):
    """Tests for GET /api/user/usage-history."""

    def test_history_lists_todays_row(self):
        self.check()

        response = self.client.get(
            "/api/user/usage-history",
            params={"api_type": "email2name", "days": 7},
            headers=USER_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["days"], 7)
        self.assertEqual(len(data["history"]), 1)
        self.assertEqual(data["history"][0]["usage_date"], TODAY.isoformat())
        self.assertEqual(data["history"][0]["daily_count"], 1)

    def test_history_rejects_invalid_days(self):
        response = self.client.get(
            "/api/user/usage-history",
            params={"api_type": "email2name", "days": 0},
            headers=USER_HEADERS,
        )
        self.assertEqual(response.status_code, 422)

    def test_history_rejects_unknown_type(self):
        response = self.client.get(
            "/api/user/usage-history",
            params={"api_type": "geocoder"},
            headers=USER_HEADERS,
        )
        self.assertEqual(response.status_code, 400)


class TestRequestTracing(UsageRouteTestCase):
    """Responses carry the request id and timing headers."""

    def test_request_id_header(self):
        response = self.check()

        self.assertIn("X-Request-ID", response.headers)
        self.assertIn("X-Response-Time", response.headers)

    def test_incoming_request_id_is_echoed(self):
        response = self.check(headers={**USER_HEADERS, "X-Request-ID": "req-abc"})
        self.assertEqual(response.headers["X-Request-ID"], "req-abc")


if __name__ == "__main__":
    unittest.main()
