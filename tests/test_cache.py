"""Tests for the TTL caches."""

import unittest
from unittest.mock import MagicMock
import sys
from pathlib import Path

# Add src to path so we can import trainpulse
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainpulse.cache import MemoryCache, SafeCache


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMemoryCache(unittest.TestCase):
    """Test expiry and eviction."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = MemoryCache(clock=self.clock, max_entries=3)

    def test_get_before_and_after_expiry(self):
        """Test values expire after their TTL."""
        self.cache.set("feed:ACE:latest", [1, 2], 15)
        self.clock.now = 14.9
        self.assertEqual(self.cache.get("feed:ACE:latest"), [1, 2])
        self.clock.now = 15
        self.assertIsNone(self.cache.get("feed:ACE:latest"))
        self.assertEqual(len(self.cache), 0)

    def test_missing_key(self):
        """Test a missing key returns None."""
        self.assertIsNone(self.cache.get("nope"))

    def test_expired_entries_evicted_on_set(self):
        """Test expired entries are evicted on write."""
        self.cache.set("a", 1, 5)
        self.cache.set("b", 2, 50)
        self.clock.now = 10
        self.cache.set("c", 3, 5)
        self.assertEqual(len(self.cache), 2)

    def test_max_entries_drops_soonest_expiry(self):
        """Test a full cache drops the entry closest to expiry."""
        self.cache.set("a", 1, 30)
        self.cache.set("b", 2, 10)
        self.cache.set("c", 3, 60)
        self.cache.set("d", 4, 60)

        self.assertIsNone(self.cache.get("b"))
        self.assertEqual(self.cache.get("a"), 1)
        self.assertEqual(self.cache.get("d"), 4)

    def test_delete_and_clear(self):
        """Test deleting one key and clearing all."""
        self.cache.set("a", 1, 30)
        self.cache.set("b", 2, 30)
        self.cache.delete("a")
        self.assertIsNone(self.cache.get("a"))
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)


class TestSafeCache(unittest.TestCase):
    """Test that cache failures never propagate."""

    def test_absent_backend(self):
        """Test a missing backend behaves as a miss."""
        cache = SafeCache(None)
        self.assertFalse(cache.enabled)
        cache.set("k", 1, 10)
        self.assertIsNone(cache.get("k"))

    def test_failing_backend(self):
        """Test backend errors are swallowed."""
        backend = MagicMock()
        backend.get.side_effect = RuntimeError("connection refused")
        backend.set.side_effect = RuntimeError("connection refused")
        backend.delete.side_effect = RuntimeError("connection refused")
        cache = SafeCache(backend)

        self.assertIsNone(cache.get("k"))
        cache.set("k", 1, 10)
        cache.delete("k")
        backend.set.assert_called_once_with("k", 1, 10)

    def test_passes_through(self):
        """Test values pass through to a working backend."""
        cache = SafeCache(MemoryCache())
        cache.set("k", "v", 10)
        self.assertEqual(cache.get("k"), "v")


if __name__ == "__main__":
    unittest.main()
