"""
Structured logging for ELK (Elasticsearch, Logstash, Kibana).

Every record becomes one JSON line. Fields passed through `extra=` (service,
job_id, operation, duration_ms, outcome, ...) are lifted to top-level keys
so dashboards can filter on them.
"""

import json
import logging
import time
import traceback
from datetime import datetime, timezone
from typing import Any

# LogRecord attributes that are not user-supplied context
_RESERVED = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname', 'levelno',
    'lineno', 'module', 'msecs', 'message', 'pathname', 'process', 'processName',
    'relativeCreated', 'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName',
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return str(value)


class ELKFormatter(logging.Formatter):
    """JSON formatter for ELK stack"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            '@timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in log_data:
                log_data[key] = _jsonable(value)

        return json.dumps(log_data)


def log_performance_metric(metric_name: str, value: float, unit: str = None, **kwargs):
    """
    Log a performance metric for monitoring dashboards

    Args:
        metric_name: Name of the metric
        value: Metric value
        unit: Unit of measurement
        **kwargs: Additional tags/dimensions
    """
    logger = logging.getLogger('governor.performance')
    logger.info(
        f"Metric: {metric_name}",
        extra={
            'metric_name': metric_name,
            'metric_value': value,
            'metric_unit': unit,
            **kwargs
        }
    )


class LogTimer:
    """
    Context manager that logs an operation's duration and outcome.

        with LogTimer("cache.purge", service="dataforseo"):
            cache.purge_expired()
    """

    def __init__(self, operation: str, logger: logging.Logger = None, **context):
        self.operation = operation
        self.context = context
        self.logger = logger or logging.getLogger('governor.performance')
        self.start_time = None
        self.duration_ms = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.debug(f"Starting: {self.operation}", extra={'operation': self.operation, **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = round((time.monotonic() - self.start_time) * 1000, 1)

        if exc_type:
            self.logger.error(
                f"Failed: {self.operation} ({self.duration_ms:.0f}ms)",
                extra={
                    'operation': self.operation,
                    'duration_ms': self.duration_ms,
                    'outcome': 'error',
                    **self.context
                },
                exc_info=(exc_type, exc_val, exc_tb)
            )
        else:
            self.logger.info(
                f"Done: {self.operation} ({self.duration_ms:.0f}ms)",
                extra={
                    'operation': self.operation,
                    'duration_ms': self.duration_ms,
                    'outcome': 'ok',
                    **self.context
                },
            )
        return False
