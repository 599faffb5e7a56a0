"""
Unit tests for utils/ (logging setup, retry decorator, ELK formatter)

Tests cover:
- retry_with_backoff: success, retries with growing delay, give-up, filters
- get_logger namespace
- ELKFormatter JSON output with extra fields and exceptions
- LogTimer outcome logging
- log_performance_metric
- config.parse_imap_accounts / validate_config
"""

import json
import logging
import unittest
from datetime import datetime
from unittest.mock import MagicMock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
from governor.errors import ConfigurationError
from utils.elk_logging import ELKFormatter, LogTimer, log_performance_metric
from utils.logging_utils import get_logger, retry_with_backoff


class TestRetryWithBackoff(unittest.TestCase):
    """Test the retry decorator."""

    def test_success_first_try(self):
        sleeps = []

        @retry_with_backoff(max_retries=3, sleep=sleeps.append)
        def ok():
            return "done"

        self.assertEqual(ok(), "done")
        self.assertEqual(sleeps, [])

    def test_retries_then_succeeds(self):
        sleeps = []
        attempts = {"n": 0}

        @retry_with_backoff(max_retries=3, initial_delay=1.0, backoff_factor=2.0,
                            exceptions=(OSError,), sleep=sleeps.append)
        def flaky():
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise OSError("connection reset")
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_gives_up_and_reraises_last(self):
        sleeps = []
        on_retry = MagicMock()

        @retry_with_backoff(max_retries=2, exceptions=(OSError,), on_retry=on_retry, sleep=sleeps.append)
        def down():
            raise OSError("refused")

        with self.assertRaises(OSError):
            down()
        self.assertEqual(len(sleeps), 2)
        self.assertEqual(on_retry.call_count, 2)
        self.assertEqual(on_retry.call_args[0][0], 2)

    def test_unlisted_exception_not_retried(self):
        sleeps = []

        @retry_with_backoff(max_retries=3, exceptions=(OSError,), sleep=sleeps.append)
        def bad():
            raise ValueError("bad input")

        with self.assertRaises(ValueError):
            bad()
        self.assertEqual(sleeps, [])


class TestGetLogger(unittest.TestCase):
    def test_namespace(self):
        self.assertEqual(get_logger("main").name, "governor.main")
        self.assertEqual(get_logger("governor.cache").name, "governor.cache")


class TestELKFormatter(unittest.TestCase):
    """Test JSON log lines."""

    def _record(self, msg="hello", exc_info=None, **extra):
        record = logging.LogRecord("governor.test", logging.INFO, __file__, 10, msg, None, exc_info)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        data = json.loads(ELKFormatter().format(self._record()))
        self.assertEqual(data["level"], "INFO")
        self.assertEqual(data["logger"], "governor.test")
        self.assertEqual(data["message"], "hello")
        self.assertIn("@timestamp", data)

    def test_extra_fields_lifted(self):
        record = self._record(service="dataforseo", duration_ms=12.5, at=datetime(2026, 3, 2, 12, 0))
        data = json.loads(ELKFormatter().format(record))
        self.assertEqual(data["service"], "dataforseo")
        self.assertEqual(data["duration_ms"], 12.5)
        self.assertEqual(data["at"], "2026-03-02T12:00:00")

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        data = json.loads(ELKFormatter().format(self._record(exc_info=exc_info)))
        self.assertEqual(data["exception"]["type"], "RuntimeError")
        self.assertEqual(data["exception"]["message"], "boom")


class TestLogTimer(unittest.TestCase):
    def test_ok_outcome(self):
        logger = MagicMock()
        with LogTimer("cache.purge", logger=logger, service="dataforseo") as timer:
            pass
        self.assertIsNotNone(timer.duration_ms)
        extra = logger.info.call_args[1]["extra"]
        self.assertEqual(extra["outcome"], "ok")
        self.assertEqual(extra["service"], "dataforseo")

    def test_error_outcome_does_not_swallow(self):
        logger = MagicMock()
        with self.assertRaises(KeyError):
            with LogTimer("job.x", logger=logger):
                raise KeyError("domain")
        self.assertEqual(logger.error.call_args[1]["extra"]["outcome"], "error")


class TestPerformanceMetric(unittest.TestCase):
    def test_metric_extra(self):
        with patch("utils.elk_logging.logging.getLogger") as get:
            log_performance_metric("jobs_per_batch", 4, unit="jobs")
        extra = get.return_value.info.call_args[1]["extra"]
        self.assertEqual(extra["metric_name"], "jobs_per_batch")
        self.assertEqual(extra["metric_value"], 4)
        self.assertEqual(extra["metric_unit"], "jobs")


class TestConfig(unittest.TestCase):
    """Test config helpers."""

    @patch.dict(os.environ, {"IMAP_ACCOUNTS": "a@x.io:pw1, b@x.io:p:w2,broken"})
    def test_parse_imap_accounts(self):
        self.assertEqual(config.parse_imap_accounts(), {"a@x.io": "pw1", "b@x.io": "p:w2"})

    @patch("config.ALERT_WEBHOOK_URL", "")
    @patch("config.STORAGE_BACKEND", "memory")
    def test_validate_config_warnings(self):
        warnings = config.validate_config()
        self.assertTrue(any("ALERT_WEBHOOK_URL" in w for w in warnings))

    @patch("config.GOOGLE_CLIENT_ID", None)
    @patch("config.STORAGE_BACKEND", "memory")
    def test_validate_config_missing_oauth(self):
        with self.assertRaises(ConfigurationError) as ctx:
            config.validate_config(require_oauth=True)
        self.assertIn("GOOGLE_CLIENT_ID", str(ctx.exception))

    @patch("config.STORAGE_BACKEND", "postgres")
    def test_validate_config_bad_backend(self):
        with self.assertRaises(ConfigurationError):
            config.validate_config()


if __name__ == "__main__":
    unittest.main()
