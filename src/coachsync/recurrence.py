"""Recurrence rule parsing and occurrence generation.

Only the subset of RFC 5545 RRULE grammar that calendar feeds actually use
for personal events is supported: DAILY, WEEKLY, MONTHLY and YEARLY rules
with INTERVAL, COUNT, UNTIL, BYDAY and BYMONTHDAY. Candidates are walked one
day at a time in UTC, keeping the master's time of day.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import pytz

from .models import normalize_timestamp

logger = logging.getLogger(__name__)

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")

# Sunday-first indices
WEEKDAYS = {
    "SU": 0,
    "MO": 1,
    "TU": 2,
    "WE": 3,
    "TH": 4,
    "FR": 5,
    "SA": 6,
}

DEFAULT_MAX_OCCURRENCES = 500


@dataclass
class RecurrenceRule:
    """Parsed RRULE value."""

    frequency: str
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_day: List[int] = field(default_factory=list)
    by_month_day: List[int] = field(default_factory=list)


def weekday_index(value: datetime) -> int:
    """Sunday-first weekday index of ``value``."""
    return (value.weekday() + 1) % 7


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _parse_until(value: str, tz) -> Optional[datetime]:
    text = value.strip().replace(" ", "")
    try:
        if len(text) == 8 and text.isdigit():
            return pytz.UTC.localize(datetime.strptime(text, "%Y%m%d"))
        if text.endswith("Z"):
            return pytz.UTC.localize(datetime.strptime(text[:-1], "%Y%m%dT%H%M%S"))
        return normalize_timestamp(tz.localize(datetime.strptime(text, "%Y%m%dT%H%M%S")))
    except ValueError:
        logger.debug(f"Ignoring unparseable UNTIL value {value!r}")
        return None


def parse_rrule(rule: Optional[str], tz=pytz.UTC) -> Optional[RecurrenceRule]:
    """Parse an RRULE value such as ``FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE``.

    Args:
        rule: Raw RRULE property value
        tz: Zone used for a floating UNTIL value

    Returns:
        The parsed rule, or None when FREQ is missing or unsupported
    """
    if not rule or not rule.strip():
        return None

    options = {}
    for part in rule.strip().split(";"):
        key, sep, value = part.partition("=")
        if not sep or not key.strip() or not value.strip():
            continue
        options[key.strip().upper()] = value.strip()

    frequency = options.get("FREQ", "").upper()
    if frequency not in FREQUENCIES:
        return None

    interval = _parse_int(options.get("INTERVAL")) or 1
    count = _parse_int(options.get("COUNT"))
    until = _parse_until(options["UNTIL"], tz) if "UNTIL" in options else None

    by_day = []
    for chunk in options.get("BYDAY", "").split(","):
        index = WEEKDAYS.get(chunk.strip()[-2:].upper())
        if index is not None:
            by_day.append(index)

    by_month_day = []
    for chunk in options.get("BYMONTHDAY", "").split(","):
        day = _parse_int(chunk)
        if day is not None:
            by_month_day.append(day)

    return RecurrenceRule(
        frequency=frequency,
        interval=max(1, interval),
        count=count if count and count > 0 else None,
        until=until,
        by_day=by_day,
        by_month_day=by_month_day,
    )


def matches_rule(candidate: datetime, start: datetime, rule: RecurrenceRule) -> bool:
    """Whether ``candidate`` (a whole number of days after ``start``) recurs."""
    day_offset = (candidate - start) // timedelta(days=1)
    if day_offset <= 0:
        return False

    if rule.frequency == "DAILY":
        if day_offset % rule.interval:
            return False
        return not rule.by_day or weekday_index(candidate) in rule.by_day

    if rule.frequency == "WEEKLY":
        if (day_offset // 7) % rule.interval:
            return False
        allowed = rule.by_day or [weekday_index(start)]
        return weekday_index(candidate) in allowed

    if rule.frequency == "MONTHLY":
        month_offset = (candidate.year * 12 + candidate.month) - (start.year * 12 + start.month)
        if month_offset < 0 or month_offset % rule.interval:
            return False
        allowed = rule.by_month_day or [start.day]
        return candidate.day in allowed

    if rule.frequency == "YEARLY":
        year_offset = candidate.year - start.year
        if year_offset <= 0 or year_offset % rule.interval:
            return False
        return candidate.month == start.month and candidate.day == start.day

    return False


def generate_occurrences(
    start: datetime,
    rule: Optional[RecurrenceRule],
    extra: Iterable[Optional[datetime]] = (),
    excluded: Iterable[Optional[datetime]] = (),
    cap: int = DEFAULT_MAX_OCCURRENCES,
) -> List[datetime]:
    """Expand a series into a sorted list of distinct UTC instants.

    The master start is always the first occurrence and counts towards COUNT.
    Extra instants (RDATEs, override ids) are added while the set is below
    ``cap``; excluded instants are removed last.
    """
    start = normalize_timestamp(start)
    occurrences = {start}

    if rule is not None:
        target = min(cap, rule.count) if rule.count else cap
        candidate = start
        for _ in range(cap * 366):
            if len(occurrences) >= target:
                break
            candidate = candidate + timedelta(days=1)
            if rule.until is not None and candidate > rule.until:
                break
            if matches_rule(candidate, start, rule):
                occurrences.add(candidate)

    for instant in extra:
        if instant is None or len(occurrences) >= cap:
            continue
        occurrences.add(normalize_timestamp(instant))

    for instant in excluded:
        if instant is not None:
            occurrences.discard(normalize_timestamp(instant))

    return sorted(occurrences)
