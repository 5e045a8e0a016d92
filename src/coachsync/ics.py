"""ICS feed parsing and recurring-event expansion.

Feeds are read line by line with the ``icalendar`` content-line parser rather
than as a full component tree: real-world feeds routinely contain lines that
a strict parse rejects, and a single bad line must not lose the whole feed.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from icalendar.parser import Contentlines
from icalendar.prop import vDate, vDatetime, vText
import pytz

from .models import (
    CalendarAccount, CalendarEvent, EventProvider, EventStatus, RawRecurrenceEntry,
    RecurrenceGroup, DEFAULT_DIFFICULTY, DEFAULT_EVENT_TYPE, DEFAULT_TITLE,
    minutes_between, normalize_timestamp, parse_timestamp, to_iso, utc_now
)
from .recurrence import DEFAULT_MAX_OCCURRENCES, generate_occurrences, parse_rrule

logger = logging.getLogger(__name__)


def _resolve_zone(tzid: Optional[str], default_tz):
    if tzid:
        try:
            return pytz.timezone(tzid.strip().strip('"').lstrip('/'))
        except pytz.UnknownTimeZoneError:
            logger.debug(f"Unknown TZID {tzid!r}, using {default_tz}")
    return default_tz


def parse_ics_datetime(value: str, params=None, default_tz=pytz.UTC) -> Optional[datetime]:
    """Parse a DATE or DATE-TIME property value into a UTC instant.

    Dates become UTC midnight. Floating times are localized to the TZID
    parameter when it names a known zone, else to ``default_tz``.
    """
    params = params or {}
    text = value.strip().replace(" ", "")
    if not text:
        return None

    value_type = str(params.get('VALUE', '')).upper()
    try:
        if value_type == 'DATE' or (len(text) == 8 and text.isdigit()):
            day = vDate.from_ical(text[:8])
            return pytz.UTC.localize(datetime(day.year, day.month, day.day))
        parsed = vDatetime.from_ical(text)
    except ValueError:
        return parse_timestamp(text)

    if parsed.tzinfo is None:
        zone = _resolve_zone(params.get('TZID'), default_tz)
        parsed = zone.localize(parsed)
    return normalize_timestamp(parsed)


def _date_list(value: str, params, default_tz) -> List[Optional[datetime]]:
    return [parse_ics_datetime(chunk, params, default_tz) for chunk in value.split(",")]


def parse_ics_entries(text: str, default_tz=pytz.UTC) -> List[RawRecurrenceEntry]:
    """Read the VEVENT entries of an ICS document.

    Entries without UID are dropped, as are cancelled entries that are not
    cancellations of a single occurrence (those carry RECURRENCE-ID).
    """
    try:
        lines = Contentlines.from_ical(text)
    except ValueError as e:
        logger.warning(f"Could not split ICS content into lines: {e}")
        return []

    entries: List[RawRecurrenceEntry] = []
    current: Optional[Dict] = None
    nested = 0

    for line in lines:
        if not line:
            continue
        try:
            name, params, value = line.parts()
        except ValueError:
            logger.debug(f"Skipping unparseable ICS line: {line[:80]!r}")
            continue

        name = name.upper()
        if name == 'BEGIN':
            if value.strip().upper() == 'VEVENT':
                if current is not None:
                    logger.debug(f"Dropping unterminated VEVENT {current.get('uid')!r}")
                current = {}
                nested = 0
            elif current is not None:
                nested += 1
            continue
        if name == 'END':
            if current is not None and nested:
                nested -= 1
            elif current is not None and value.strip().upper() == 'VEVENT':
                if current.get('uid'):
                    entries.append(RawRecurrenceEntry(**current))
                current = None
            continue
        if current is None or nested:
            continue

        if name == 'UID':
            current['uid'] = value.strip()
        elif name == 'SUMMARY':
            current['summary'] = vText.from_ical(value).strip()
        elif name == 'DESCRIPTION':
            current['description'] = vText.from_ical(value).strip()
        elif name == 'DTSTART':
            current['start'] = parse_ics_datetime(value, params, default_tz)
        elif name == 'DTEND':
            current['end'] = parse_ics_datetime(value, params, default_tz)
        elif name in ('LAST-MODIFIED', 'DTSTAMP'):
            stamp = parse_ics_datetime(value, params, default_tz)
            current['last_modified'] = stamp or current.get('last_modified')
        elif name == 'STATUS':
            current['status'] = value.strip()
        elif name == 'RRULE':
            current['rrule'] = value.strip() or None
        elif name == 'RDATE':
            current.setdefault('rdates', []).extend(_date_list(value, params, default_tz))
        elif name == 'EXDATE':
            current.setdefault('exdates', []).extend(_date_list(value, params, default_tz))
        elif name == 'RECURRENCE-ID':
            current['recurrence_id'] = parse_ics_datetime(value, params, default_tz)

    return [
        entry for entry in entries
        if entry.uid and (not entry.is_cancelled or entry.recurrence_id is not None)
    ]


def _group_entries(entries: Iterable[RawRecurrenceEntry]):
    passthrough: List[RawRecurrenceEntry] = []
    groups: Dict[str, RecurrenceGroup] = {}

    for entry in entries:
        if not entry.uid:
            continue
        if not entry.has_recurrence_data:
            passthrough.append(entry)
            continue

        group = groups.setdefault(entry.uid, RecurrenceGroup(uid=entry.uid))
        if entry.recurrence_id is not None:
            if entry.is_cancelled:
                group.cancellations.add(entry.recurrence_id)
            else:
                group.overrides[entry.recurrence_id] = entry
        elif group.master is None:
            group.master = entry
        else:
            group.additional.append(entry)

    return passthrough, groups


def _expand_group(group: RecurrenceGroup, cap: int, default_tz) -> List[RawRecurrenceEntry]:
    master = group.master
    if master is None:
        return list(group.additional) + list(group.overrides.values())

    if master.start is None:
        result = [] if master.is_cancelled else [master]
        result.extend(o for o in group.overrides.values() if not o.is_cancelled)
        result.extend(group.additional)
        return result

    base_duration = timedelta(0)
    if master.end is not None:
        base_duration = max(timedelta(0), master.end - master.start)

    rule = None
    if master.rrule:
        rule = parse_rrule(master.rrule, default_tz)
        if rule is None:
            logger.warning(f"Invalid RRULE ignored for {master.uid}: {master.rrule}")

    occurrences = generate_occurrences(
        master.start,
        rule,
        extra=list(master.rdates) + list(group.overrides.keys()),
        excluded=master.exdates,
        cap=cap,
    )

    result = []
    for occurrence in occurrences:
        if occurrence in group.cancellations:
            continue
        override = group.overrides.get(occurrence)
        start = override.start if override and override.start else occurrence
        end = override.end if override else None
        if end is None:
            end = start + base_duration if base_duration > timedelta(0) else start

        updates = {
            'start': start,
            'end': end,
            'rrule': None,
            'rdates': [],
            'exdates': [],
            'recurrence_id': None,
            'occurrence': occurrence,
            'last_modified': (override.last_modified if override else None) or master.last_modified,
        }
        if override is not None:
            for name in ('summary', 'description', 'status'):
                if getattr(override, name) is not None:
                    updates[name] = getattr(override, name)
        result.append(master.model_copy(update=updates))

    result.extend(group.additional)
    return result


def expand_recurring_entries(
    entries: Iterable[RawRecurrenceEntry],
    cap: int = DEFAULT_MAX_OCCURRENCES,
    default_tz=pytz.UTC,
) -> List[RawRecurrenceEntry]:
    """Turn recurring series into concrete occurrence entries.

    Non-recurring entries pass through first, in input order; each series
    then contributes its occurrences in chronological order followed by its
    additional entries.
    """
    passthrough, groups = _group_entries(entries)
    result = list(passthrough)
    for group in groups.values():
        result.extend(_expand_group(group, cap, default_tz))
    return result


def map_entry_to_event(
    entry: RawRecurrenceEntry,
    account: Optional[CalendarAccount] = None,
) -> Optional[CalendarEvent]:
    """Build the canonical event for one concrete entry.

    Returns None for entries without a start.
    """
    if entry.start is None:
        return None

    end = entry.end or entry.start
    occurrence = entry.occurrence or entry.start
    return CalendarEvent(
        title=(entry.summary or "").strip() or DEFAULT_TITLE,
        notes=entry.description or None,
        date=entry.start,
        start=entry.start,
        end=end,
        duration_minutes=max(1, minutes_between(entry.start, end)),
        event_type=DEFAULT_EVENT_TYPE,
        difficulty=DEFAULT_DIFFICULTY,
        color=account.color if account else None,
        status=EventStatus.ACTIVE.value,
        provider=EventProvider.ICS,
        account_id=account.id if account else None,
        ics_uid=f"{entry.uid}::{to_iso(occurrence)}",
        updated_at=entry.last_modified or utc_now(),
    )


def events_from_ics(
    text: str,
    account: Optional[CalendarAccount] = None,
    cap: int = DEFAULT_MAX_OCCURRENCES,
    default_tz=pytz.UTC,
) -> List[CalendarEvent]:
    """Parse, expand and map an ICS document into canonical events."""
    entries = expand_recurring_entries(parse_ics_entries(text, default_tz), cap, default_tz)
    events = []
    for entry in entries:
        event = map_entry_to_event(entry, account)
        if event is not None:
            events.append(event)
    return events
