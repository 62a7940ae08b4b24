"""
Unit tests for the sliding window rate limiter.

Tests:
- Window admission and recovery
- Key independence
- Reset time calculation
- Limiter registry
"""

import unittest

from broker_tools.cache import (
    DEFAULT_RATE_LIMITS,
    RateLimitConfig,
    RateLimiterManager,
    SlidingWindowRateLimiter,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestSlidingWindowRateLimiter(unittest.TestCase):
    """Test admission control."""

    def setUp(self):
        self.clock = FakeClock()
        self.limiter = SlidingWindowRateLimiter(
            window_seconds=1.0, max_requests=3, name="test", time_func=self.clock
        )

    def test_admits_up_to_limit_then_recovers(self):
        """Three calls admitted, fourth rejected, admitted again after the window."""
        results = [self.limiter.can_make_request("k") for _ in range(4)]
        self.assertEqual(results, [True, True, True, False])

        self.clock.advance(1.001)
        self.assertTrue(self.limiter.can_make_request("k"))

    def test_rejected_call_is_not_recorded(self):
        """A rejected request must not extend the window."""
        for _ in range(3):
            self.limiter.can_make_request("k")
        self.clock.advance(0.5)
        self.assertFalse(self.limiter.can_make_request("k"))

        self.clock.advance(0.501)
        self.assertTrue(self.limiter.can_make_request("k"))

    def test_keys_are_independent(self):
        """Exhausting one key leaves another untouched."""
        for _ in range(3):
            self.assertTrue(self.limiter.can_make_request("brokerage-u1-a1"))
        self.assertFalse(self.limiter.can_make_request("brokerage-u1-a1"))

        for _ in range(3):
            self.assertTrue(self.limiter.can_make_request("brokerage-u1-a2"))

    def test_zero_max_requests_always_rejects(self):
        """max_requests=0 never admits."""
        limiter = SlidingWindowRateLimiter(window_seconds=1.0, max_requests=0, time_func=self.clock)
        self.assertFalse(limiter.can_make_request("k"))
        self.clock.advance(10)
        self.assertFalse(limiter.can_make_request("k"))

    def test_rate_limit_override(self):
        """Per-call limit overrides max_requests."""
        self.assertTrue(self.limiter.can_make_request("k", rate_limit=1))
        self.assertFalse(self.limiter.can_make_request("k", rate_limit=1))
        self.assertTrue(self.limiter.can_make_request("k"))

    def test_time_until_reset_no_history(self):
        """Unknown keys reset immediately."""
        self.assertEqual(self.limiter.get_time_until_reset("never-seen"), 0.0)

    def test_time_until_reset_counts_from_oldest(self):
        """Reset time is measured from the oldest request in the window."""
        self.limiter.can_make_request("k")
        self.clock.advance(0.25)
        self.limiter.can_make_request("k")
        self.clock.advance(0.25)

        self.assertAlmostEqual(self.limiter.get_time_until_reset("k"), 0.5)

        self.clock.advance(0.6)
        # oldest request left the window; the second one is now the oldest
        self.assertAlmostEqual(self.limiter.get_time_until_reset("k"), 0.15)

        self.clock.advance(1.0)
        self.assertEqual(self.limiter.get_time_until_reset("k"), 0.0)

    def test_is_limited_does_not_consume(self):
        """is_limited is read-only."""
        for _ in range(2):
            self.limiter.can_make_request("k")
        self.assertFalse(self.limiter.is_limited("k"))
        self.assertFalse(self.limiter.is_limited("k"))
        self.assertTrue(self.limiter.can_make_request("k"))
        self.assertTrue(self.limiter.is_limited("k"))

    def test_reset_single_key(self):
        for _ in range(3):
            self.limiter.can_make_request("a")
            self.limiter.can_make_request("b")

        self.limiter.reset("a")
        self.assertTrue(self.limiter.can_make_request("a"))
        self.assertFalse(self.limiter.can_make_request("b"))

    def test_stats(self):
        for _ in range(4):
            self.limiter.can_make_request("k")
        self.limiter.can_make_request("other")

        stats = self.limiter.get_stats()
        self.assertEqual(stats["service"], "test")
        self.assertEqual(stats["tracked_keys"], 2)
        self.assertEqual(stats["limited_keys"], 1)
        self.assertEqual(stats["admitted"], 4)
        self.assertEqual(stats["rejected"], 1)


class TestRateLimiterManager(unittest.TestCase):
    """Test the per-service registry."""

    def test_defaults(self):
        manager = RateLimiterManager()
        brokerage = manager.get_limiter("brokerage")
        llm = manager.get_limiter("llm")

        self.assertEqual(brokerage.max_requests, DEFAULT_RATE_LIMITS["brokerage"].max_requests)
        self.assertEqual(brokerage.max_requests, 15)
        self.assertEqual(llm.max_requests, 10)
        self.assertEqual(brokerage.window_seconds, 60.0)

    def test_same_instance_per_service(self):
        manager = RateLimiterManager()
        self.assertIs(manager.get_limiter("brokerage"), manager.get_limiter("brokerage"))

    def test_unknown_service_uses_default_config(self):
        manager = RateLimiterManager()
        limiter = manager.get_limiter("market-data")
        self.assertEqual(limiter.name, "market-data")
        self.assertEqual(limiter.max_requests, DEFAULT_RATE_LIMITS["default"].max_requests)

    def test_explicit_configs_and_shared_clock(self):
        clock = FakeClock()
        manager = RateLimiterManager(
            {"brokerage": RateLimitConfig(window_seconds=2.0, max_requests=1, name="brokerage")},
            time_func=clock,
        )
        limiter = manager.get_limiter("brokerage")
        self.assertTrue(limiter.can_make_request("k"))
        self.assertFalse(limiter.can_make_request("k"))
        clock.advance(2.0)
        self.assertTrue(limiter.can_make_request("k"))

        self.assertIn("brokerage", manager.get_all_stats())


if __name__ == "__main__":
    unittest.main()
