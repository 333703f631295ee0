"""
Deterministic parsing of spoken time phrases.

Handles the phrasings callers actually use ("tomorrow morning",
"next tuesday at 3pm", "March 4th", "10:30") relative to the business-local
date. Used directly by the keyword interpreter and to normalise the
language model's free-text time_preference field.
"""

import re
from datetime import date, time, timedelta
from typing import Optional

from callcatcher.core.scheduling.preferences import TimeBucket, TimePreference

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11,
    "december": 12, "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7,
    "aug": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}

ANY_TIME_PHRASES = (
    "any time", "anytime", "whenever", "as soon as possible", "asap",
    "earliest", "first available", "soonest", "doesn't matter", "dont care",
    "don't care", "any day",
)

_MONTH_PATTERN = "|".join(sorted(MONTHS, key=len, reverse=True))
_MONTH_DAY = re.compile(rf"\b({_MONTH_PATTERN})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b")
_DAY_MONTH = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?({_MONTH_PATTERN})\b")
_NUMERIC_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
_CLOCK_MERIDIEM = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.?\s?m\.?|p\.?\s?m\.?)")
_CLOCK_24 = re.compile(r"\b(\d{1,2}):(\d{2})\b")
_OCLOCK = re.compile(r"\b(\d{1,2})\s*o'?\s?clock\b")
_AT_HOUR = re.compile(r"\bat\s+(\d{1,2})(?:\s*(?:thirty|30))?\b")


def _resolve_month_day(month: int, day: int, today: date) -> Optional[date]:
    try:
        target = date(today.year, month, day)
    except ValueError:
        return None
    if target < today:
        try:
            target = date(today.year + 1, month, day)
        except ValueError:
            return None
    return target


def _business_hour(hour: int) -> int:
    """Bare 1-7 means afternoon for a daytime business."""
    if 1 <= hour <= 7:
        return hour + 12
    return hour


def parse_date(text: str, today: date) -> tuple[Optional[date], Optional[int]]:
    """
    Extract a date or weekday.

    Returns:
        (specific date, weekday index); at most one is set
    """
    lowered = text.lower()

    if "day after tomorrow" in lowered:
        return today + timedelta(days=2), None
    if "tomorrow" in lowered:
        return today + timedelta(days=1), None
    if re.search(r"\b(today|this (morning|afternoon|evening)|tonight)\b", lowered):
        return today, None

    match = _MONTH_DAY.search(lowered)
    if match:
        return _resolve_month_day(MONTHS[match.group(1)], int(match.group(2)), today), None
    match = _DAY_MONTH.search(lowered)
    if match:
        return _resolve_month_day(MONTHS[match.group(2)], int(match.group(1)), today), None

    match = _NUMERIC_DATE.search(lowered)
    if match:
        month, day = int(match.group(1)), int(match.group(2))
        if match.group(3):
            year = int(match.group(3))
            year = year + 2000 if year < 100 else year
            try:
                return date(year, month, day), None
            except ValueError:
                return None, None
        return _resolve_month_day(month, day, today), None

    for index, name in enumerate(WEEKDAYS):
        if re.search(rf"\b{name}s?\b", lowered):
            if re.search(rf"\bnext\s+{name}\b", lowered) and index == today.weekday():
                return today + timedelta(days=7), None
            return None, index

    if "next week" in lowered:
        # Monday of next week
        return today + timedelta(days=7 - today.weekday()), None

    return None, None


def parse_time_of_day(text: str) -> tuple[Optional[TimeBucket], Optional[time]]:
    """Extract a part-of-day bucket and/or an exact local time."""
    lowered = text.lower()
    exact: Optional[time] = None

    match = _CLOCK_MERIDIEM.search(lowered)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        period = match.group(3)
        if hour <= 12 and minute < 60:
            if period.startswith("p") and hour != 12:
                hour += 12
            elif period.startswith("a") and hour == 12:
                hour = 0
            exact = time(hour, minute)

    if exact is None:
        match = _CLOCK_24.search(lowered)
        if match and int(match.group(1)) < 24 and int(match.group(2)) < 60:
            exact = time(_business_hour(int(match.group(1))), int(match.group(2)))

    if exact is None:
        match = _OCLOCK.search(lowered) or _AT_HOUR.search(lowered)
        if match and 1 <= int(match.group(1)) <= 12:
            minute = 30 if re.search(r"\b(thirty|30)\b", match.group(0)) else 0
            exact = time(_business_hour(int(match.group(1))), minute)

    if exact is None and re.search(r"\b(noon|midday|lunchtime)\b", lowered):
        exact = time(12, 0)

    bucket: Optional[TimeBucket] = None
    if re.search(r"\bmorning\b", lowered):
        bucket = TimeBucket.MORNING
    elif re.search(r"\bafternoon\b", lowered):
        bucket = TimeBucket.AFTERNOON
    elif re.search(r"\b(evening|tonight|after work)\b", lowered):
        bucket = TimeBucket.EVENING

    # "3 in the morning" style contradictions: the bucket wins the am/pm call
    if exact is not None and bucket == TimeBucket.MORNING and exact.hour >= 12 and not _CLOCK_MERIDIEM.search(lowered):
        exact = time(exact.hour - 12, exact.minute)

    return bucket, exact


def parse_time_preference(text: Optional[str], today: date) -> Optional[TimePreference]:
    """
    Parse a spoken time preference.

    Args:
        text: Caller speech or the model's time_preference phrase
        today: Business-local date

    Returns:
        TimePreference, or None if the text carries no usable time
    """
    if not text or not text.strip():
        return None

    lowered = text.lower().strip()
    on_date, weekday = parse_date(lowered, today)
    bucket, exact = parse_time_of_day(lowered)

    if on_date is None and weekday is None and bucket is None and exact is None:
        if any(phrase in lowered for phrase in ANY_TIME_PHRASES):
            return TimePreference(raw=text.strip())
        return None

    return TimePreference(
        on_date=on_date,
        weekday=weekday,
        bucket=bucket,
        exact_time=exact,
        raw=text.strip(),
    )
