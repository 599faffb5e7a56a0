"""
Unit tests for governor/gateway.py

Tests cover:
- Cache hits spend no quota
- Denied requests raise QuotaExceededError with a retry hint
- Exhausted monthly credits defer jobs until the credits age out
- Successful and failed fetches are recorded
- Results are cached under the operation's category
"""

import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from governor.cache import MemoryCacheStore, ResponseCache
from governor.errors import QuotaExceededError
from governor.gateway import MeteredGateway
from governor.job_queue import JobStatus, MemoryJobQueue
from governor.rate_limiter import MemoryUsageLog, RateLimiter
from governor.scheduler import JobProcessor


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 2, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


LIMITS = {
    "dataforseo": {
        "windows": {"minute": {"seconds": 60, "limit": 2}},
        "monthly_quota": 100,
        "costs": {"default": 1, "competitor_analysis": 2},
    },
}


class TestMeteredGateway(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.usage = MemoryUsageLog()
        self.limiter = RateLimiter(self.usage, LIMITS, clock=self.clock, alert_sender=MagicMock())
        self.cache = ResponseCache(
            MemoryCacheStore(), ttls={"default": 3600}, clock=self.clock, purge_probability=0,
        )
        self.gateway = MeteredGateway(self.limiter, self.cache)

    def _call(self, fetch, target="example.com", operation="backlinks", **kwargs):
        return self.gateway.call("dataforseo", operation, target, {"limit": 10}, fetch, **kwargs)

    def test_fetch_recorded_and_cached(self):
        fetch = MagicMock(return_value={"total": 5})

        self.assertEqual(self._call(fetch), {"total": 5})
        self.assertEqual(self._call(fetch), {"total": 5})

        fetch.assert_called_once()
        self.assertEqual(len(self.usage), 1)
        self.assertEqual(self.cache.stats()["hits"], 1)

    def test_operation_cost_used(self):
        self._call(MagicMock(return_value=[1]), operation="competitor_analysis")
        stats = self.limiter.get_usage_statistics("dataforseo")
        self.assertEqual(stats["remaining_credits"], 98)

    def test_cache_entry_credits_saved_matches_cost(self):
        self._call(MagicMock(return_value=[1]), operation="competitor_analysis")
        self.assertEqual(self.cache.stats()["credits_saved"], 2)

    def test_denied_raises_with_retry_after(self):
        self._call(MagicMock(return_value=1), target="a.io")
        self.clock.advance(15)
        self._call(MagicMock(return_value=1), target="b.io")

        fetch = MagicMock()
        with self.assertRaises(QuotaExceededError) as ctx:
            self._call(fetch, target="c.io")
        fetch.assert_not_called()
        self.assertEqual(ctx.exception.service, "dataforseo")
        self.assertAlmostEqual(ctx.exception.retry_after, 45.0)

    def test_cached_value_served_even_when_limited(self):
        self._call(MagicMock(return_value="cached"), target="a.io")
        self._call(MagicMock(return_value=1), target="b.io")

        self.assertEqual(self._call(MagicMock(), target="a.io"), "cached")

    def test_failed_fetch_recorded_and_reraised(self):
        fetch = MagicMock(side_effect=ConnectionError("reset by peer"))

        with self.assertRaises(ConnectionError):
            self._call(fetch)

        self.assertEqual(len(self.usage), 1)
        stats = self.limiter.get_usage_statistics("dataforseo")
        self.assertEqual(stats["windows"]["minute"]["requests"], 1)
        self.assertEqual(stats["remaining_credits"], 100)
        self.assertEqual(self.cache.stats()["total_entries"], 0)

    def test_use_cache_false_always_fetches(self):
        fetch = MagicMock(return_value=1)
        self._call(fetch, use_cache=False)
        self._call(fetch, use_cache=False)
        self.assertEqual(fetch.call_count, 2)
        self.assertEqual(self.cache.stats()["total_entries"], 0)

    def test_without_cache(self):
        gateway = MeteredGateway(self.limiter)
        self.assertEqual(gateway.call("dataforseo", "backlinks", "a.io", None, lambda: 7), 7)


CREDIT_LIMITS = {
    "tomba": {
        "windows": {"minute": {"seconds": 60, "limit": 10}},
        "monthly_quota": 1,
    },
}


class TestCreditExhaustion(unittest.TestCase):
    """Monthly credits running out defer until they age out."""

    def setUp(self):
        self.clock = FakeClock()
        self.limiter = RateLimiter(MemoryUsageLog(), CREDIT_LIMITS, clock=self.clock, alert_sender=MagicMock())
        self.gateway = MeteredGateway(self.limiter)
        self.gateway.call("tomba", "domain_search", "a.io", None, lambda: 1)
        self.clock.advance(120)

    def test_retry_after_is_credit_reset(self):
        with self.assertRaises(QuotaExceededError) as ctx:
            self.gateway.call("tomba", "domain_search", "b.io", None, MagicMock())
        self.assertAlmostEqual(ctx.exception.retry_after, 2592000 - 120)

    def test_deferred_job_not_due_again_until_credits_return(self):
        queue = MemoryJobQueue()
        processor = JobProcessor(queue, interval=0, clock=self.clock, alert_sender=MagicMock())
        fetch = MagicMock(return_value={"emails": []})
        processor.register(
            "email_search",
            lambda payload: self.gateway.call("tomba", "domain_search", payload["domain"], None, fetch),
        )
        job_id = processor.enqueue("email_search", {"domain": "b.io"})

        self.assertEqual(processor.process_job(job_id), JobStatus.RETRYING)
        for _ in range(50):
            self.clock.advance(61)
            self.assertEqual(processor.process_batch()["processed"], 0)

        job = queue.get(job_id)
        self.assertEqual(job["attempts"], 0)
        self.assertEqual(job["scheduled_at"], datetime(2026, 3, 2, 12, 0, 0) + timedelta(seconds=2592000))
        fetch.assert_not_called()

        self.clock.now = job["scheduled_at"] + timedelta(seconds=1)
        self.assertEqual(processor.process_batch()["completed"], 1)
        fetch.assert_called_once()


if __name__ == "__main__":
    unittest.main()
