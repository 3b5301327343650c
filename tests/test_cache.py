"""
Tests for the health probe cache.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.utils.cache import TTLStatusCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestTTLStatusCache(unittest.TestCase):
    """Tests for TTLStatusCache."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = TTLStatusCache(ttl=60, name="test", clock=self.clock)

    def test_empty_cache_returns_none(self):
        self.assertIsNone(self.cache.get())
        self.assertIsNone(self.cache.age())

    def test_value_served_until_ttl(self):
        """A stored status should be returned until the TTL passes."""
        self.cache.set({"connected": True})
        self.clock.now += 59

        self.assertEqual(self.cache.get(), {"connected": True})
        self.assertEqual(self.cache.age(), 59)

    def test_value_expires(self):
        """A status older than the TTL should be dropped."""
        self.cache.set({"connected": True})
        self.clock.now += 60

        self.assertIsNone(self.cache.get())
        self.assertIsNone(self.cache.age())

    def test_clear(self):
        self.cache.set({"connected": False})
        self.cache.clear()

        self.assertIsNone(self.cache.get())
        self.assertFalse(self.cache.stats["cached"])

    def test_zero_ttl_never_caches(self):
        cache = TTLStatusCache(ttl=0, clock=self.clock)
        cache.set("up")
        self.assertIsNone(cache.get())


if __name__ == "__main__":
    unittest.main()
