"""Timestamp normalization for chat transcripts.

Hosts hand us dates in whatever shape they happen to store them: epoch
milliseconds, epoch seconds, ``datetime`` objects or free-form strings such as
``"October 20, 2025 12:16pm"``. Everything downstream (chunk headers, the
retrieval cutoff, stored payloads) works on epoch milliseconds, so this module
funnels all of those into one representation.

Neither function ever raises: an unusable input degrades to "now".
"""
from __future__ import annotations

import logging
import math
import time
from datetime import date, datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

MS_THRESHOLD = 1_000_000_000_000
SECONDS_THRESHOLD = 1_000_000_000

# Formats tried after ISO-8601, in order.
_DATE_FORMATS = (
    "%B %d, %Y %I:%M%p",        # October 20, 2025 12:16pm
    "%B %d, %Y %I:%M %p",
    "%B %d, %Y %H:%M",
    "%B %d, %Y at %H:%M:%S",
    "%B %d, %Y",
    "%b %d, %Y %I:%M%p",
    "%b %d, %Y %H:%M",
    "%b %d, %Y",
    "%d %B %Y %H:%M",
    "%d %B %Y",
    "%a %b %d %Y %H:%M:%S",     # Mon Oct 20 2025 12:16:00
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _datetime_ms(value: datetime) -> Optional[int]:
    try:
        return int(value.timestamp() * 1000)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_string(text: str) -> Optional[int]:
    candidate = text.strip()
    if not candidate:
        return None

    iso = candidate[:-1] + "+00:00" if candidate.endswith(("Z", "z")) else candidate
    try:
        return _datetime_ms(datetime.fromisoformat(iso))
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return _datetime_ms(datetime.strptime(candidate, fmt))
        except ValueError:
            continue
    return None


def normalize_timestamp(value: Any) -> int | float:
    """Convert ``value`` to epoch milliseconds.

    Parameters
    ----------
    value : int | float | datetime | date | str | Any
        Numbers above ``1e12`` are already milliseconds and are returned
        unchanged. Numbers strictly between ``1e9`` and ``1e12`` are seconds.
        ``datetime`` objects use their own epoch value (naive ones are read as
        local time). Strings go through ISO-8601 and then a list of common
        calendar formats.

    Returns
    -------
    int | float
        Epoch milliseconds. Anything that cannot be interpreted yields the
        current time instead of an error.
    """
    if _is_number(value) and math.isfinite(value):
        if value > MS_THRESHOLD:
            return value
        if SECONDS_THRESHOLD < value < MS_THRESHOLD:
            return value * 1000

    if isinstance(value, datetime):
        ms = _datetime_ms(value)
        if ms is not None:
            return ms
    elif isinstance(value, date):
        ms = _datetime_ms(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))
        if ms is not None:
            return ms

    if isinstance(value, str):
        ms = _parse_string(value)
        if ms is not None:
            return ms

    logger.debug("Could not normalize timestamp %r, using current time", value)
    return now_ms()


def format_date(timestamp_ms: Any) -> str:
    """Render epoch milliseconds as ``YYYY-MM-DD`` (UTC).

    Falls back to today's date when ``timestamp_ms`` is not a usable instant.
    """
    try:
        if not _is_number(timestamp_ms) or not math.isfinite(timestamp_ms):
            raise ValueError("not a finite number")
        moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        logger.warning("Error formatting date %r: %s", timestamp_ms, e)
        moment = datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%d")
