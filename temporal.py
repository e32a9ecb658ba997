"""
Timestamp coercion and age helpers.

Store metadata carries timestamps in whatever shape the backing store
returns them: epoch milliseconds, ISO-8601 strings, or ``datetime`` values.
Everything age-related in the engine goes through this module so that the
lifecycle, decay and retrieval math agree on what "now" and "age" mean.
"""

import logging
from datetime import datetime
from typing import Optional, Any

from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 24.0


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce epoch-ms numbers, ISO strings and datetimes to a naive local datetime.

    Returns None for missing or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return datetime.fromtimestamp(int(stripped) / 1000.0)
        try:
            parsed = dateutil_parser.parse(stripped)
        except (ValueError, OverflowError) as e:
            logger.debug(f"Unparseable timestamp '{value}': {e}")
            return None
        if parsed.tzinfo is not None:
            return parsed.astimezone().replace(tzinfo=None)
        return parsed
    logger.debug(f"Unsupported timestamp type {type(value).__name__}")
    return None


def to_timestamp_ms(value: Any) -> Optional[int]:
    """Epoch milliseconds for anything ``to_datetime`` accepts."""
    dt = to_datetime(value)
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


def now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


def age_in_hours(value: Any, now: Optional[datetime] = None) -> float:
    """Hours elapsed since ``value``. A missing timestamp means age 0."""
    dt = to_datetime(value)
    if dt is None:
        return 0.0
    reference = now or datetime.now()
    return max((reference - dt).total_seconds() / 3600.0, 0.0)


def age_in_days(value: Any, now: Optional[datetime] = None) -> float:
    return age_in_hours(value, now) / HOURS_PER_DAY
