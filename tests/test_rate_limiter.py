"""
Comprehensive unit tests for governor/rate_limiter.py

Tests cover:
- Window admission (deny at limit, re-permit after the window slides)
- Monthly credit quota vs expected cost
- time_until_reset per window and across windows
- time_until_credits as monthly credits age out
- Unknown services and windows
- Storage failure policy (fail-closed admission, fail-open reporting)
- Usage statistics, health status, recommended batch size
- Quota alerts (thresholds, once per day)
- Pruning old usage records
"""

import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from governor.errors import ConfigurationError
from governor.rate_limiter import (
    MemoryUsageLog,
    RateLimiter,
    ServiceLimits,
    UsageStoreError,
)


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 2, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


TEST_LIMITS = {
    "svc": {
        "windows": {
            "hour": {"seconds": 3600, "limit": 5},
            "minute": {"seconds": 60, "limit": 3},
        },
        "monthly_quota": 10,
        "costs": {"default": 1, "big": 4},
    },
    "unmetered": {
        "windows": {"minute": {"seconds": 60, "limit": 10}},
    },
}


def make_limiter(limits=None):
    clock = FakeClock()
    log = MemoryUsageLog()
    alerts = MagicMock()
    limiter = RateLimiter(log, limits or TEST_LIMITS, clock=clock, alert_sender=alerts)
    return limiter, log, clock, alerts


class TestServiceLimits(unittest.TestCase):
    """Test per-service configuration parsing."""

    def test_windows_sorted_shortest_first(self):
        limits = ServiceLimits.from_config("svc", TEST_LIMITS["svc"])
        self.assertEqual(list(limits.windows), ["minute", "hour"])
        self.assertEqual(limits.longest_window, 3600)

    def test_cost_lookup_falls_back_to_default(self):
        limits = ServiceLimits.from_config("svc", TEST_LIMITS["svc"])
        self.assertEqual(limits.cost_for("big"), 4)
        self.assertEqual(limits.cost_for("unknown_op"), 1)
        self.assertEqual(limits.cost_for(None), 1)

    def test_missing_windows_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            ServiceLimits.from_config("broken", {"monthly_quota": 5})

    def test_default_dataforseo_costs(self):
        limiter = RateLimiter(MemoryUsageLog())
        self.assertEqual(limiter.cost_for("dataforseo", "competitor_analysis"), 2)
        self.assertEqual(limiter.cost_for("dataforseo", "backlinks"), 1)


class TestAdmission(unittest.TestCase):
    """Test can_make_request against window limits."""

    def test_allows_under_limit(self):
        limiter, _, _, _ = make_limiter()
        self.assertTrue(limiter.can_make_request("svc"))

    def test_denies_when_minute_window_full(self):
        limiter, _, _, _ = make_limiter()
        for _ in range(3):
            self.assertTrue(limiter.can_make_request("svc"))
            limiter.record_request("svc", 1)
        self.assertFalse(limiter.can_make_request("svc"))

    def test_repermits_after_window_slides(self):
        limiter, _, clock, _ = make_limiter()
        for _ in range(3):
            limiter.record_request("svc", 1)
        self.assertFalse(limiter.can_make_request("svc"))

        clock.advance(61)
        self.assertTrue(limiter.can_make_request("svc"))

    def test_denies_when_hour_window_full(self):
        limiter, _, clock, _ = make_limiter()
        for _ in range(3):
            limiter.record_request("svc", 0)
        clock.advance(61)
        for _ in range(2):
            limiter.record_request("svc", 0)
        self.assertFalse(limiter.can_make_request("svc"))

    def test_denial_does_not_write_usage(self):
        limiter, log, _, _ = make_limiter()
        for _ in range(3):
            limiter.record_request("svc", 1)
        before = len(log)
        self.assertFalse(limiter.can_make_request("svc"))
        self.assertEqual(len(log), before)

    def test_failed_requests_count_against_windows(self):
        limiter, _, _, _ = make_limiter()
        for _ in range(3):
            limiter.record_failed_request("svc", "HTTP 500")
        self.assertFalse(limiter.can_make_request("svc"))

    def test_unknown_service_raises(self):
        limiter, _, _, _ = make_limiter()
        with self.assertRaises(ConfigurationError):
            limiter.can_make_request("nope")


class TestCredits(unittest.TestCase):
    """Test the monthly credit quota."""

    def test_insufficient_credits_denies(self):
        limiter, _, _, _ = make_limiter()
        limiter.record_request("svc", 8)
        self.assertFalse(limiter.can_make_request("svc", expected_cost=3))
        self.assertTrue(limiter.can_make_request("svc", expected_cost=2))

    def test_credit_wait_until_oldest_credits_age_out(self):
        limiter, _, clock, _ = make_limiter()
        limiter.record_request("svc", 6)
        clock.advance(3600)
        limiter.record_request("svc", 4)
        clock.advance(100)
        # 10/10 used; one credit frees when the 6-credit record ages out
        self.assertAlmostEqual(limiter.time_until_credits("svc", 1), 2592000 - 3700)
        # 7 credits need both records gone
        self.assertAlmostEqual(limiter.time_until_credits("svc", 7), 2592000 - 100)

    def test_credit_wait_zero_when_covered(self):
        limiter, _, _, _ = make_limiter()
        limiter.record_request("svc", 9)
        self.assertEqual(limiter.time_until_credits("svc", 1), 0.0)
        self.assertEqual(limiter.time_until_credits("unmetered", 500), 0.0)

    def test_credit_wait_ignores_failed_requests(self):
        limiter, _, clock, _ = make_limiter()
        limiter.record_failed_request("svc", "HTTP 500")
        clock.advance(10)
        limiter.record_request("svc", 10)
        self.assertAlmostEqual(limiter.time_until_credits("svc", 1), 2592000.0)

    def test_cost_above_quota_waits_full_month(self):
        limiter, _, _, _ = make_limiter()
        self.assertEqual(limiter.time_until_credits("svc", 11), 2592000.0)

    def test_service_without_quota_only_checks_windows(self):
        limiter, _, _, _ = make_limiter()
        limiter.record_request("unmetered", 1000)
        self.assertTrue(limiter.can_make_request("unmetered", expected_cost=500))

    def test_credits_return_after_thirty_days(self):
        limiter, _, clock, _ = make_limiter()
        limiter.record_request("svc", 10)
        self.assertFalse(limiter.can_make_request("svc", 1))
        clock.advance(2592000 + 1)
        self.assertTrue(limiter.can_make_request("svc", 1))


class TestTimeUntilReset(unittest.TestCase):
    """Test wait computation."""

    def test_zero_when_not_saturated(self):
        limiter, _, _, _ = make_limiter()
        limiter.record_request("svc", 1)
        self.assertEqual(limiter.time_until_reset("svc"), 0.0)
        self.assertEqual(limiter.time_until_reset("svc", "minute"), 0.0)

    def test_minute_window_wait(self):
        limiter, _, clock, _ = make_limiter()
        for _ in range(3):
            limiter.record_request("svc", 0)
        clock.advance(20)
        self.assertAlmostEqual(limiter.time_until_reset("svc", "minute"), 40.0)

    def test_longest_wait_across_saturated_windows(self):
        limiter, _, clock, _ = make_limiter()
        for _ in range(3):
            limiter.record_request("svc", 0)
        clock.advance(30)
        for _ in range(2):
            limiter.record_request("svc", 0)
        # minute resets in 30s, hour (5/5, oldest 30s ago) in 3570s
        self.assertAlmostEqual(limiter.time_until_reset("svc"), 3570.0)
        self.assertAlmostEqual(limiter.time_until_reset("svc", "hour"), 3570.0)

    def test_unknown_window_raises(self):
        limiter, _, _, _ = make_limiter()
        with self.assertRaises(ConfigurationError):
            limiter.time_until_reset("svc", "week")


class TestStorageFailurePolicy(unittest.TestCase):
    """Admission fails closed; reporting fails open; recording never raises."""

    def _broken_limiter(self):
        log = MagicMock()
        log.summarize.side_effect = UsageStoreError("connection refused")
        log.append.side_effect = UsageStoreError("connection refused")
        log.prune.side_effect = UsageStoreError("connection refused")
        return RateLimiter(log, TEST_LIMITS, clock=FakeClock(), alert_sender=MagicMock())

    def test_admission_denied(self):
        self.assertFalse(self._broken_limiter().can_make_request("svc"))

    def test_credit_wait_is_zero(self):
        limiter = self._broken_limiter()
        limiter.usage_log.credit_records.side_effect = UsageStoreError("connection refused")
        self.assertEqual(limiter.time_until_credits("svc"), 0.0)

    def test_record_returns_false(self):
        self.assertFalse(self._broken_limiter().record_request("svc", 1))

    def test_time_until_reset_is_zero(self):
        self.assertEqual(self._broken_limiter().time_until_reset("svc"), 0.0)

    def test_statistics_are_zeros(self):
        stats = self._broken_limiter().get_usage_statistics("svc")
        self.assertFalse(stats["store_available"])
        self.assertEqual(stats["windows"]["minute"]["requests"], 0)
        self.assertEqual(stats["remaining_credits"], 10)

    def test_prune_returns_zero(self):
        self.assertEqual(self._broken_limiter().prune(), 0)

    def test_quota_alerts_skipped(self):
        limiter = self._broken_limiter()
        self.assertIsNone(limiter.check_quota_alerts("svc"))


class TestReporting(unittest.TestCase):
    """Test statistics, health and batch size."""

    def test_usage_statistics(self):
        limiter, _, _, _ = make_limiter()
        limiter.record_request("svc", 2)
        limiter.record_request("svc", 1)
        stats = limiter.get_usage_statistics("svc")

        minute = stats["windows"]["minute"]
        self.assertEqual(minute["requests"], 2)
        self.assertEqual(minute["credits"], 3)
        self.assertEqual(minute["remaining"], 1)
        self.assertAlmostEqual(minute["percentage"], 66.67)
        self.assertEqual(stats["remaining_credits"], 7)

    def test_health_warning_and_critical(self):
        limits = {"api": {"windows": {"minute": {"seconds": 60, "limit": 10}}}}
        limiter, _, _, _ = make_limiter(limits)

        self.assertEqual(limiter.get_health_status("api")["status"], "healthy")
        for _ in range(8):
            limiter.record_request("api", 1)
        health = limiter.get_health_status("api")
        self.assertEqual(health["status"], "warning")
        self.assertTrue(health["issues"])

        limiter.record_request("api", 1)
        self.assertEqual(limiter.get_health_status("api")["status"], "critical")

    def test_recommended_batch_size(self):
        limiter, _, _, _ = make_limiter()
        self.assertEqual(limiter.get_recommended_batch_size("svc", max_batch_size=10), 3)
        self.assertEqual(limiter.get_recommended_batch_size("svc", max_batch_size=2), 2)

    def test_recommended_batch_size_never_below_one(self):
        limiter, _, _, _ = make_limiter()
        for _ in range(3):
            limiter.record_request("svc", 1)
        self.assertEqual(limiter.get_recommended_batch_size("svc"), 1)


class TestQuotaAlerts(unittest.TestCase):
    """Test monthly quota alerting."""

    def test_no_alert_below_threshold(self):
        limiter, _, _, alerts = make_limiter()
        limiter.record_request("svc", 5)
        self.assertIsNone(limiter.check_quota_alerts("svc"))
        alerts.assert_not_called()

    def test_warning_sent_once_per_day(self):
        limiter, _, clock, alerts = make_limiter()
        limiter.record_request("svc", 8)

        self.assertEqual(limiter.check_quota_alerts("svc"), "warning")
        self.assertIsNone(limiter.check_quota_alerts("svc"))
        self.assertEqual(alerts.call_count, 1)

        clock.advance(86400)
        self.assertEqual(limiter.check_quota_alerts("svc"), "warning")
        self.assertEqual(alerts.call_count, 2)

    def test_critical_after_warning(self):
        limiter, _, _, alerts = make_limiter()
        limiter.record_request("svc", 8)
        limiter.check_quota_alerts("svc")
        limiter.record_request("svc", 2)

        self.assertEqual(limiter.check_quota_alerts("svc"), "critical")
        message, level, title = alerts.call_args[0]
        self.assertEqual(level, "critical")
        self.assertIn("10/10", message)

    def test_service_without_quota(self):
        limiter, _, _, _ = make_limiter()
        self.assertIsNone(limiter.check_quota_alerts("unmetered"))


class TestPrune(unittest.TestCase):
    """Test usage pruning."""

    def test_prune_removes_rows_past_longest_window(self):
        limiter, log, clock, _ = make_limiter()
        limiter.record_request("svc", 1)
        clock.advance(7200)
        limiter.record_request("svc", 1)

        removed = limiter.prune(older_than=clock() - timedelta(seconds=3600))
        self.assertEqual(removed, 1)
        self.assertEqual(len(log), 1)


if __name__ == "__main__":
    unittest.main()
