"""
Tests for the admin endpoints.

Tests admin authentication, global limits, re-snapshotting, resets,
usage statistics and per-user overrides under /api/admin.
"""

import asyncio
import os
import sys
import unittest
from datetime import date

# Set environment before imports
os.environ["ENVIRONMENT"] = "development"
os.environ["RATE_LIMIT_STORAGE"] = "memory"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from fastapi.testclient import TestClient

from app.auth import AdminAuthenticator, get_admin_authenticator
from app.dependencies import get_usage_limiter
from src.usage import ApiRateLimiter, InMemoryUsageStore

TODAY = date(2024, 3, 15)
ADMIN_TOKEN = "test-admin-token"
ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


class AdminRouteTestCase(unittest.TestCase):
    """Shared setup: the app wired to an in-memory ledger and a known admin token."""

    def setUp(self):
        from server import app

        self.app = app
        self.limiter = ApiRateLimiter(InMemoryUsageStore(), today_provider=lambda: TODAY)
        app.dependency_overrides[get_usage_limiter] = lambda: self.limiter
        app.dependency_overrides[get_admin_authenticator] = lambda: AdminAuthenticator(ADMIN_TOKEN)
        self.client = TestClient(app)

    def tearDown(self):
        self.app.dependency_overrides.clear()

    def count_calls(self, user_id, api_type, times=1):
        for _ in range(times):
            response = self.client.post(
                "/api/user/usage-status",
                json={"apiType": api_type},
                headers={"X-User-ID": user_id},
            )
            self.assertEqual(response.status_code, 200)

    def run_async(self, coro):
        return asyncio.run(coro)


class TestAdminAuthentication(AdminRouteTestCase):
    """Every admin route requires the admin bearer token."""

    def test_missing_header_returns_401(self):
        response = self.client.get("/api/admin/global-limits")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error_code"], "AUTHENTICATION_REQUIRED")
        self.assertEqual(response.headers.get("WWW-Authenticate"), "Bearer")

    def test_wrong_token_returns_403(self):
        response = self.client.get(
            "/api/admin/global-limits",
            headers={"Authorization": "Bearer wrong"},
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error_code"], "ADMIN_REQUIRED")
        self.assertEqual(response.json()["error"], "Admin access denied")

    def test_no_configured_token_disables_admin(self):
        """Without an admin token configured every admin call is refused."""
        self.app.dependency_overrides[get_admin_authenticator] = lambda: AdminAuthenticator(None)

        response = self.client.get("/api/admin/global-limits", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"], "Admin access is disabled")

    def test_user_header_is_not_admin(self):
        response = self.client.get(
            "/api/admin/global-limits",
            headers={"X-User-ID": "user-123"},
        )
        self.assertEqual(response.status_code, 401)

    def test_admin_id_is_token_fingerprint(self):
        principal = AdminAuthenticator(ADMIN_TOKEN).verify(ADMIN_TOKEN)

        self.assertTrue(principal.admin_id.startswith("admin-"))
        self.assertEqual(len(principal.admin_id), len("admin-") + 12)
        self.assertNotIn(ADMIN_TOKEN, principal.admin_id)


class TestGlobalLimits(AdminRouteTestCase):
    """Tests for /api/admin/global-limits."""

    def test_list_global_limits(self):
        self.run_async(self.limiter.set_global_limit("email2name", 150))

        response = self.client.get("/api/admin/global-limits", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 200)
        limits = response.json()["limits"]
        self.assertEqual(len(limits), 1)
        self.assertEqual(limits[0]["api_type"], "email2name")
        self.assertEqual(limits[0]["daily_limit"], 150)

    def test_set_global_limit_resnapshots_todays_rows(self):
        """Setting a global limit should update today's rows without touching counts."""
        self.count_calls("user-1", "address_generator", times=3)

        response = self.client.post(
            "/api/admin/global-limits",
            json={"api_type": "address_generator", "daily_limit": 500},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["success"])
        self.assertIn("500", data["message"])
        self.assertEqual(data["sync"]["updated"]["address_generator"], 1)
        self.assertEqual(data["sync"]["usage_date"], TODAY.isoformat())

        record = self.run_async(
            self.limiter.get_user_usage_status("user-1", "address_generator")
        )
        self.assertEqual(record.daily_limit, 500)
        self.assertEqual(record.daily_count, 3)

    def test_set_unlimited(self):
        response = self.client.post(
            "/api/admin/global-limits",
            json={"api_type": "email2name", "is_unlimited": True},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("unlimited", response.json()["message"])
        limit = self.run_async(self.limiter.get_global_limit("email2name"))
        self.assertTrue(limit.is_unlimited)
        self.assertEqual(limit.daily_limit, 0)

    def test_out_of_range_limit_returns_400(self):
        for bad in (0, 10001, -5):
            with self.subTest(limit=bad):
                response = self.client.post(
                    "/api/admin/global-limits",
                    json={"api_type": "email2name", "daily_limit": bad},
                    headers=ADMIN_HEADERS,
                )
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error_code"], "VALUE_OUT_OF_RANGE")

    def test_missing_limit_returns_400(self):
        response = self.client.post(
            "/api/admin/global-limits",
            json={"api_type": "email2name"},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(response.status_code, 400)

    def test_unknown_api_type_returns_400(self):
        response = self.client.post(
            "/api/admin/global-limits",
            json={"api_type": "geocoder", "daily_limit": 10},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error_code"], "INVALID_API_TYPE")


class TestUpdateExistingUsage(AdminRouteTestCase):
    """Tests for /api/admin/update-existing-usage."""

    def test_update_without_body_uses_today(self):
        self.count_calls("user-1", "email2name")
        self.run_async(self.limiter.set_global_limit("email2name", 42))

        response = self.client.post("/api/admin/update-existing-usage", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["total_updated"], 1)
        self.assertEqual(data["failed"], [])

    def test_update_for_explicit_date(self):
        self.run_async(self.limiter.set_global_limit("email2name", 42))

        response = self.client.post(
            "/api/admin/update-existing-usage",
            json={"date": "2024-03-01"},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["usage_date"], "2024-03-01")
        self.assertEqual(response.json()["total_updated"], 0)


class TestResetDailyUsage(AdminRouteTestCase):
    """Tests for /api/admin/reset-daily-usage."""

    def test_reset_zeroes_count(self):
        self.count_calls("user-1", "email2name", times=5)

        response = self.client.post(
            "/api/admin/reset-daily-usage",
            json={"user_id": "user-1", "api_type": "email2name"},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["success"])
        record = self.run_async(self.limiter.get_user_usage_status("user-1", "email2name"))
        self.assertEqual(record.daily_count, 0)

    def test_reset_missing_row_succeeds(self):
        response = self.client.post(
            "/api/admin/reset-daily-usage",
            json={"user_id": "nobody", "api_type": "email2name", "date": "2024-03-10"},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("2024-03-10", response.json()["message"])

    def test_reset_requires_user_id(self):
        response = self.client.post(
            "/api/admin/reset-daily-usage",
            json={"api_type": "email2name"},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(response.status_code, 422)


class TestUsageStats(AdminRouteTestCase):
    """Tests for /api/admin/api-usage-stats and /api/admin/today-usage-stats."""

    def setUp(self):
        super().setUp()
        self.count_calls("heavy", "email2name", times=4)
        self.count_calls("heavy", "address_generator", times=1)
        self.count_calls("light", "email2name", times=1)

    def test_usage_by_date(self):
        response = self.client.get("/api/admin/api-usage-stats", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["date"], TODAY.isoformat())
        self.assertEqual(len(data["usage"]), 3)
        self.assertEqual(data["usage"][0]["user_id"], "heavy")
        self.assertEqual(data["usage"][0]["daily_count"], 4)

    def test_usage_by_other_date_is_empty(self):
        response = self.client.get(
            "/api/admin/api-usage-stats",
            params={"date": "2024-01-01"},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["usage"], [])

    def test_today_usage_stats(self):
        response = self.client.get("/api/admin/today-usage-stats", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 200)
        stats = response.json()["stats"]
        self.assertEqual(stats["total_users"], 2)
        self.assertEqual(stats["total_api_calls"], 6)
        self.assertEqual(stats["by_api_type"]["email2name"]["total_calls"], 5)
        self.assertEqual(stats["top_users"][0]["user_id"], "heavy")
        self.assertEqual(stats["top_users"][0]["total_calls"], 5)

    def test_today_usage_stats_top_param(self):
        response = self.client.get(
            "/api/admin/today-usage-stats",
            params={"top": 1},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(len(response.json()["stats"]["top_users"]), 1)


class TestUserLimits(AdminRouteTestCase):
    """Tests for /api/admin/api-user-limits."""

    def test_create_list_and_delete_override(self):
        response = self.client.post(
            "/api/admin/api-user-limits",
            json={"user_id": "vip", "api_type": "email2name", "daily_limit": 1000},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(response.status_code, 200)
        limit = response.json()["limit"]
        self.assertEqual(limit["daily_limit"], 1000)
        self.assertTrue(limit["created_by"].startswith("admin-"))

        listed = self.client.get(
            "/api/admin/api-user-limits",
            params={"user_id": "vip"},
            headers=ADMIN_HEADERS,
        ).json()["limits"]
        self.assertEqual(len(listed), 1)

        deleted = self.client.request(
            "DELETE",
            "/api/admin/api-user-limits",
            json={"user_id": "vip", "api_type": "email2name"},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(deleted.status_code, 200)
        self.assertTrue(deleted.json()["deleted"])

        again = self.client.request(
            "DELETE",
            "/api/admin/api-user-limits",
            json={"user_id": "vip", "api_type": "email2name"},
            headers=ADMIN_HEADERS,
        )
        self.assertFalse(again.json()["deleted"])

    def test_put_replaces_override(self):
        for limit in (10, 20):
            response = self.client.put(
                "/api/admin/api-user-limits",
                json={"user_id": "vip", "api_type": "email2name", "daily_limit": limit},
                headers=ADMIN_HEADERS,
            )
            self.assertEqual(response.status_code, 200)

        limits = self.run_async(self.limiter.get_user_limits("vip"))
        self.assertEqual(len(limits), 1)
        self.assertEqual(limits[0].daily_limit, 20)

    def test_override_applies_to_new_rows(self):
        self.client.post(
            "/api/admin/api-user-limits",
            json={"user_id": "vip", "api_type": "email2name", "daily_limit": 3},
            headers=ADMIN_HEADERS,
        )

        self.count_calls("vip", "email2name", times=3)
        response = self.client.post(
            "/api/user/usage-status",
            json={"apiType": "email2name"},
            headers={"X-User-ID": "vip"},
        )

        self.assertFalse(response.json()["usage"]["success"])
        self.assertEqual(response.json()["usage"]["daily_limit"], 3)

    def test_invalid_override_returns_400(self):
        response = self.client.post(
            "/api/admin/api-user-limits",
            json={"user_id": "vip", "api_type": "email2name", "daily_limit": 0},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(response.status_code, 400)

    def test_delete_with_unknown_type_returns_400(self):
        response = self.client.request(
            "DELETE",
            "/api/admin/api-user-limits",
            json={"user_id": "vip", "api_type": "geocoder"},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
