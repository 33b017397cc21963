"""Time utilities for ledger day keys.

KEY PRINCIPLE: every timestamp in the ledger is integer (or float) Unix
seconds, and every calendar day key is the UTC date in ISO form (YYYY-MM-DD).
Flush boundaries and daily aggregation share the same UTC day so that a
flushed interval never spans two daily buckets.
"""

import logging
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# Constants - NOT configurable
TIMEZONE = timezone.utc
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400


def now_timestamp() -> float:
    """Current time as Unix seconds."""
    return time.time()


def utc_day_key(timestamp_sec: float) -> str:
    """Convert Unix seconds to the UTC calendar day key.

    Example:
        >>> utc_day_key(0)
        '1970-01-01'
        >>> utc_day_key(86399)
        '1970-01-01'
        >>> utc_day_key(86400)
        '1970-01-02'
    """
    return datetime.fromtimestamp(timestamp_sec, tz=TIMEZONE).date().isoformat()


def today_key(now: float | None = None) -> str:
    """Day key for today (or for the supplied 'now')."""
    return utc_day_key(now_timestamp() if now is None else now)


def format_timestamp(timestamp_sec: float) -> str:
    """ISO-8601 representation of Unix seconds, for logs and audit details."""
    try:
        return datetime.fromtimestamp(timestamp_sec, tz=TIMEZONE).isoformat()
    except (OverflowError, OSError, ValueError):
        return f"<invalid timestamp {timestamp_sec}>"
