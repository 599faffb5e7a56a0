"""
Unit tests for governor/job_queue.py (in-memory queue)

Tests cover:
- Due ordering: priority desc, created_at asc, id asc
- Delayed jobs
- Exclusive claim
- Guarded updates
- Stuck-job lookup, status counts, recent jobs
"""

import unittest
from datetime import datetime, timedelta
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from governor.job_queue import JobStatus, MemoryJobQueue, new_job_document

NOW = datetime(2026, 3, 2, 12, 0, 0)


class TestNewJobDocument(unittest.TestCase):
    def test_defaults(self):
        doc = new_job_document("email_search", now=NOW)
        self.assertEqual(doc["status"], JobStatus.PENDING)
        self.assertEqual(doc["attempts"], 0)
        self.assertEqual(doc["payload"], {})
        self.assertEqual(doc["created_at"], NOW)
        self.assertIsNone(doc["scheduled_at"])
        self.assertEqual(doc["max_attempts"], 3)

    def test_explicit_max_attempts(self):
        doc = new_job_document("email_search", max_attempts=1, now=NOW)
        self.assertEqual(doc["max_attempts"], 1)


class TestFetchDue(unittest.TestCase):
    """Test selection order and scheduling."""

    def setUp(self):
        self.queue = MemoryJobQueue()

    def test_priority_then_age_then_id(self):
        low = self.queue.enqueue("t", priority=0, now=NOW)
        high_new = self.queue.enqueue("t", priority=5, now=NOW + timedelta(seconds=10))
        high_old = self.queue.enqueue("t", priority=5, now=NOW)
        high_old_twin = self.queue.enqueue("t", priority=5, now=NOW)

        due = self.queue.fetch_due(NOW + timedelta(minutes=1), limit=10)
        self.assertEqual([j["id"] for j in due], [high_old, high_old_twin, high_new, low])

    def test_limit(self):
        for _ in range(5):
            self.queue.enqueue("t", now=NOW)
        self.assertEqual(len(self.queue.fetch_due(NOW, limit=3)), 3)

    def test_future_jobs_not_due(self):
        later = self.queue.enqueue("t", scheduled_at=NOW + timedelta(minutes=5), now=NOW)
        self.assertEqual(self.queue.fetch_due(NOW, 10), [])
        due = self.queue.fetch_due(NOW + timedelta(minutes=5), 10)
        self.assertEqual([j["id"] for j in due], [later])

    def test_only_claimable_statuses(self):
        job_id = self.queue.enqueue("t", now=NOW)
        self.queue.claim(job_id, NOW)
        self.assertEqual(self.queue.fetch_due(NOW, 10), [])


class TestClaimAndUpdate(unittest.TestCase):
    """Test the guarded transitions."""

    def setUp(self):
        self.queue = MemoryJobQueue()
        self.job_id = self.queue.enqueue("t", {"domain": "example.com"}, now=NOW)

    def test_claim_is_exclusive(self):
        first = self.queue.claim(self.job_id, NOW)
        second = self.queue.claim(self.job_id, NOW)

        self.assertEqual(first["status"], JobStatus.PROCESSING)
        self.assertEqual(first["started_at"], NOW)
        self.assertIsNone(second)

    def test_claim_unknown(self):
        self.assertIsNone(self.queue.claim("99999999", NOW))

    def test_retrying_jobs_are_claimable(self):
        self.queue.claim(self.job_id, NOW)
        self.queue.update(self.job_id, {"status": JobStatus.RETRYING, "scheduled_at": NOW})
        self.assertIsNotNone(self.queue.claim(self.job_id, NOW))

    def test_update_requires_expected_status(self):
        self.assertFalse(self.queue.update(self.job_id, {"status": JobStatus.COMPLETED}))
        self.assertEqual(self.queue.get(self.job_id)["status"], JobStatus.PENDING)

        self.queue.claim(self.job_id, NOW)
        self.assertTrue(self.queue.update(self.job_id, {"status": JobStatus.COMPLETED}))
        self.assertEqual(self.queue.get(self.job_id)["status"], JobStatus.COMPLETED)

    def test_get_returns_copy(self):
        job = self.queue.get(self.job_id)
        job["status"] = "tampered"
        self.assertEqual(self.queue.get(self.job_id)["status"], JobStatus.PENDING)


class TestReporting(unittest.TestCase):
    def setUp(self):
        self.queue = MemoryJobQueue()

    def test_find_stuck(self):
        old = self.queue.enqueue("t", now=NOW)
        fresh = self.queue.enqueue("t", now=NOW)
        self.queue.claim(old, NOW - timedelta(hours=1))
        self.queue.claim(fresh, NOW)

        stuck = self.queue.find_stuck(NOW - timedelta(minutes=30))
        self.assertEqual([j["id"] for j in stuck], [old])

    def test_status_counts(self):
        self.queue.enqueue("t", now=NOW - timedelta(days=2))
        a = self.queue.enqueue("t", now=NOW)
        self.queue.enqueue("t", now=NOW)
        self.queue.claim(a, NOW)

        counts = self.queue.status_counts(NOW - timedelta(hours=24))
        self.assertEqual(counts[JobStatus.PENDING], 1)
        self.assertEqual(counts[JobStatus.PROCESSING], 1)
        self.assertEqual(counts[JobStatus.FAILED], 0)

    def test_recent_newest_first(self):
        first = self.queue.enqueue("t", now=NOW)
        second = self.queue.enqueue("t", now=NOW + timedelta(seconds=1))
        self.assertEqual([j["id"] for j in self.queue.recent(10)], [second, first])
        self.assertEqual(len(self.queue.recent(1)), 1)


if __name__ == "__main__":
    unittest.main()
