"""Time helpers. Storage uses naive UTC datetimes, like pymongo returns them."""

from datetime import datetime

import pytz

import config


def utcnow() -> datetime:
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_local(dt: datetime) -> datetime:
    """Convert a stored naive-UTC datetime to TARGET_TIMEZONE for display."""
    if dt is None:
        return None
    tz = pytz.timezone(config.TARGET_TIMEZONE)
    return pytz.UTC.localize(dt).astimezone(tz)


def format_local(dt: datetime) -> str:
    local = to_local(dt)
    return local.strftime("%Y-%m-%d %H:%M:%S %Z") if local else "-"
