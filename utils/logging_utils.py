"""
Logging configuration for the outreach governor.
Plain text for terminals, JSON (see elk_logging) for log shipping.
"""
import logging
import sys
import time
from functools import wraps
from typing import Any, Callable

PLAIN_FORMAT = '%(asctime)s [%(name)s] %(levelname)s %(message)s'


def setup_logging(level: str = "INFO", log_file: str = None, structured: bool = False):
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path to write logs
        structured: Emit one JSON object per line instead of plain text
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if structured:
        from .elk_logging import ELKFormatter
        formatter = ELKFormatter()
    else:
        formatter = logging.Formatter(PLAIN_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []  # idempotent when called twice
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

    # pymongo's own debug output drowns ours
    logging.getLogger("pymongo").setLevel(max(log_level, logging.WARNING))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the governor namespace."""
    if not name.startswith("governor"):
        name = f"governor.{name}"
    return logging.getLogger(name)


# =============================================================================
# RETRY DECORATOR
# =============================================================================

def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    on_retry: Callable = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Retry a function with exponential backoff. For short, in-call retries
    (socket connects); job-level retries belong to the job processor.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay after each retry
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay).
                  Defaults to a warning on the wrapped function's logger.
        sleep: Injected for tests

    Usage:
        @retry_with_backoff(max_retries=2, exceptions=(OSError,))
        def connect():
            ...
    """
    def decorator(func: Callable) -> Callable:
        logger = logging.getLogger(func.__module__)

        def _log_retry(attempt, exc, delay):
            logger.warning(
                f"⚠️ {func.__name__} failed ({exc}), retry {attempt}/{max_retries} in {delay:.1f}s"
            )

        callback = on_retry or _log_retry

        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt == max_retries:
                        break
                    callback(attempt + 1, e, delay)
                    sleep(delay)
                    delay *= backoff_factor

            raise last_exception

        return wrapper
    return decorator
