"""Utils package for the outreach governor."""
from .logging_utils import (
    setup_logging,
    get_logger,
    retry_with_backoff,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'retry_with_backoff',
]
