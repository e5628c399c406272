from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

DEFAULT_HOUR = 9
DAYPART_HOURS = {"morning": 9, "afternoon": 13, "evening": 17}

_RANGE_RE = re.compile(
    r"(?<![\d-])\b(\d{1,2})(?::(\d{2}))?\s*(?:-|–|to)\s*(\d{1,2})(?::\d{2})?(?![\d-])"
    r"\s*(a\.?m\.?|p\.?m\.?)?",
    re.IGNORECASE,
)
# "at 3", "at 10:30" or "10 o'clock" with no am/pm; dateutil would read the
# bare number as a day of the month.
_BARE_HOUR_RE = re.compile(
    r"(?:\bat\s+(\d{1,2})(?::(\d{2}))?|\b(\d{1,2})(?::(\d{2}))?\s*o['’]?\s*clock)"
    r"(?!\s*[ap]\.?m\b|[\d:-])",
    re.IGNORECASE,
)
_DAYPART_RE = re.compile(r"\b(?:this\s+)?(morning|afternoon|evening)\b", re.IGNORECASE)
_SPOKEN_RANGE_RE = re.compile(r"(\d{1,2}(?::\d{2})?)\s*[-–]\s*(\d{1,2}(?::\d{2})?)")


@dataclass(frozen=True)
class ResolvedTime:
    start: datetime
    parsed: bool  # False when nothing in the text could be understood


def _fallback(now: datetime) -> datetime:
    tomorrow = now + timedelta(days=1)
    return tomorrow.replace(hour=DEFAULT_HOUR, minute=0, second=0, microsecond=0)


def _meridiem_hour(hour: int, meridiem: str | None) -> int:
    if meridiem:
        is_pm = meridiem.lower().startswith("p")
        hour = hour % 12
        return hour + 12 if is_pm else hour
    # Bare business hours: "2-4" means afternoon, "9-11" means morning.
    if 1 <= hour <= 6 or hour == 12:
        return hour % 12 + 12
    return hour


def _clock(hour: int, minute: int) -> tuple[int, int] | None:
    if 0 <= hour <= 23 and 0 <= minute <= 59:
        return hour, minute
    return None


def resolve_start_time(preferred: str | None, now: datetime) -> ResolvedTime:
    """Turn a caller's free-text preferred time into a start timestamp.

    Understands "today", "tomorrow", weekday names, explicit dates, parts of
    the day, clock times ("at 3", "10 o'clock", "2pm") and windows such as
    "9-11" or "2 to 4 PM". Bare hours follow the business-hours reading of
    windows, so "at 3" is 3 PM. When nothing parses, or the only reading is
    already in the past, the result is tomorrow at 9 AM with ``parsed=False``.
    """
    if not preferred:
        return ResolvedTime(_fallback(now), False)

    text = preferred.lower()
    base = now.replace(hour=DEFAULT_HOUR, minute=0, second=0, microsecond=0)
    keyword = False
    if "tomorrow" in text:
        base += timedelta(days=1)
        text = text.replace("tomorrow", " ")
        keyword = True
    elif "today" in text:
        text = text.replace("today", " ")
        keyword = True

    meridiem = None
    daypart = _DAYPART_RE.search(text)
    if daypart:
        base = base.replace(hour=DAYPART_HOURS[daypart.group(1)])
        meridiem = "am" if daypart.group(1) == "morning" else "pm"
        text = text[: daypart.start()] + " " + text[daypart.end():]
        keyword = True

    window = _RANGE_RE.search(text)
    clock = None
    if window:
        hour = _meridiem_hour(int(window.group(1)), window.group(4) or meridiem)
        clock = _clock(hour, int(window.group(2) or 0))
    else:
        window = _BARE_HOUR_RE.search(text)
        if window:
            hour = window.group(1) or window.group(3)
            minute = window.group(2) or window.group(4) or 0
            clock = _clock(_meridiem_hour(int(hour), meridiem), int(minute))
    if clock:
        base = base.replace(hour=clock[0], minute=clock[1])
        text = text[: window.start()] + " " + text[window.end():]
        keyword = True

    try:
        start = date_parser.parse(text, fuzzy=True, default=base)
    except (ValueError, OverflowError):
        if not keyword:
            logger.info("Could not parse preferred time %r; using tomorrow 9 AM", preferred)
            return ResolvedTime(_fallback(now), False)
        start = base

    if start.tzinfo is None:
        start = start.replace(tzinfo=now.tzinfo)
    if start <= now:
        start += timedelta(days=1)
    if start <= now:
        logger.info("Preferred time %r is in the past; using tomorrow 9 AM", preferred)
        return ResolvedTime(_fallback(now), False)
    return ResolvedTime(start, True)


def spoken_window(window_text: str) -> str:
    """'9-11 AM' reads as '9 to 11 AM' for text-to-speech."""
    return _SPOKEN_RANGE_RE.sub(r"\1 to \2", window_text)


def format_start(start: datetime) -> str:
    """'Wednesday, March 11 at 9 AM', with minutes only when they are not zero."""
    hour = start.hour % 12 or 12
    minutes = f":{start.minute:02d}" if start.minute else ""
    meridiem = "PM" if start.hour >= 12 else "AM"
    return f"{start:%A}, {start:%B} {start.day} at {hour}{minutes} {meridiem}"


def spell_code(code: str) -> str:
    return " ".join(code)
