"""Data models for calendar and event synchronization."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

from dateutil.parser import isoparse
from pydantic import BaseModel, ConfigDict, Field, validator
import pytz


DEFAULT_DURATION_MINUTES = 15
DEFAULT_TITLE = "Untitled event"
DEFAULT_EVENT_TYPE = "Task"
DEFAULT_DIFFICULTY = "Medium"


def normalize_timestamp(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime truncated to milliseconds.

    Naive datetimes are assumed to already be in UTC. Truncation keeps local
    values equal to what survives a round trip through the wire format.
    """
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        value = value.replace(tzinfo=pytz.UTC)
    else:
        value = value.astimezone(pytz.UTC)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    """Current time as a normalized UTC timestamp."""
    return normalize_timestamp(datetime.now(pytz.UTC))


def to_iso(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    value = normalize_timestamp(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime/date) into a normalized timestamp.

    Returns None for anything that is not a usable instant.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if isinstance(value, date):
        return normalize_timestamp(datetime(value.year, value.month, value.day))
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return normalize_timestamp(isoparse(value.strip()))
    except (ValueError, OverflowError):
        return None


def sanitize_iso(value: Any) -> Optional[str]:
    """Canonicalize a timestamp-ish value to the wire ISO format, or None."""
    parsed = parse_timestamp(value)
    return to_iso(parsed) if parsed else None


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end``, rounded half up, never negative."""
    seconds = max(0.0, (end - start).total_seconds())
    return int(seconds / 60 + 0.5)


def sanitize_optional_string(value: Any) -> Optional[str]:
    """Strip a string, mapping non-strings and blanks to None."""
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def sanitize_duration(value: Any, fallback: int = DEFAULT_DURATION_MINUTES) -> int:
    """Coerce a duration in minutes to a positive integer."""
    if isinstance(value, bool):
        return max(1, fallback)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return max(1, fallback)
    else:
        return max(1, fallback)
    if number != number or number in (float("inf"), float("-inf")):
        return max(1, fallback)
    return max(1, int(round(number)))


class EventProvider(str, Enum):
    """Where a canonical event originated."""

    LOCAL = "local"
    GOOGLE = "google"
    OUTLOOK = "outlook"
    ICS = "ics"


class EventStatus(str, Enum):
    """Well-known event status labels."""

    ACTIVE = "active"
    REMOVED = "removed"
    CANCELLED = "cancelled"


class AccountStatus(str, Enum):
    """Provider account synchronization status."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class CalendarEvent(BaseModel):
    """Canonical calendar event stored locally and exchanged with peers."""

    id: Optional[int] = Field(None, description="Local numeric row id")
    sync_id: Optional[str] = Field(None, description="Stable cross-replica identifier")
    title: str = Field(DEFAULT_TITLE, description="Event title")
    notes: Optional[str] = Field(None, description="Free-form notes")
    date: Optional[datetime] = Field(None, description="Nominal date of the event")
    start: Optional[datetime] = Field(None, description="Start instant")
    end: Optional[datetime] = Field(None, description="End instant")
    duration_minutes: int = Field(DEFAULT_DURATION_MINUTES, ge=1)
    event_type: str = Field(DEFAULT_EVENT_TYPE, description="Task type tag")
    difficulty: str = Field(DEFAULT_DIFFICULTY, description="Difficulty tag")
    color: Optional[str] = Field(None)
    status: str = Field(EventStatus.ACTIVE.value)
    provider: EventProvider = Field(EventProvider.LOCAL)
    account_id: Optional[str] = Field(None, description="Owning provider account")
    google_id: Optional[str] = Field(None)
    outlook_id: Optional[str] = Field(None)
    ics_uid: Optional[str] = Field(None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @validator('date', 'start', 'end', 'created_at', 'updated_at', pre=True)
    def ensure_utc_timestamp(cls, v):
        """Normalize instants to aware UTC with millisecond precision."""
        if isinstance(v, (datetime, date, str)):
            parsed = parse_timestamp(v)
            if parsed is None and isinstance(v, str):
                return None
            return parsed
        return v

    @validator('status', pre=True)
    def default_status(cls, v):
        if isinstance(v, EventStatus):
            return v.value
        return sanitize_optional_string(v) or EventStatus.ACTIVE.value

    @property
    def is_active(self) -> bool:
        return self.status == EventStatus.ACTIVE.value

    @property
    def external_id(self) -> Optional[str]:
        """Provider-native identifier for the event's provider."""
        if self.provider == EventProvider.GOOGLE:
            return self.google_id
        if self.provider == EventProvider.OUTLOOK:
            return self.outlook_id
        if self.provider == EventProvider.ICS:
            return self.ics_uid
        return None


class SyncEventPayload(BaseModel):
    """Wire representation of a CalendarEvent.

    Values are plain scalars and canonical ISO-8601 strings. Defaults for
    missing or malformed fields are applied here, at the deserialization
    boundary, so callers never have to re-check them.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = DEFAULT_TITLE
    notes: Optional[str] = None
    date: Optional[str] = None
    type: str = DEFAULT_EVENT_TYPE
    difficulty: str = DEFAULT_DIFFICULTY
    duration: int = DEFAULT_DURATION_MINUTES
    start: Optional[str] = None
    end: Optional[str] = None
    color: Optional[str] = None
    status: str = EventStatus.ACTIVE.value
    provider: str = EventProvider.LOCAL.value
    account_id: Optional[str] = Field(None, alias="accountId")
    google_id: Optional[str] = Field(None, alias="googleId")
    outlook_id: Optional[str] = Field(None, alias="outlookId")
    ics_uid: Optional[str] = Field(None, alias="icsUid")
    updated_at: str = Field(..., alias="updatedAt")
    created_at: Optional[str] = Field(None, alias="createdAt")

    @validator('id', pre=True)
    def require_id(cls, v):
        value = sanitize_optional_string(v)
        if value is None:
            raise ValueError("sync payload requires a non-empty id")
        return value

    @validator('updated_at', pre=True)
    def require_updated_at(cls, v):
        value = sanitize_iso(v)
        if value is None:
            raise ValueError("sync payload requires a valid updatedAt")
        return value

    @validator('date', 'start', 'end', 'created_at', pre=True)
    def sanitize_timestamps(cls, v):
        return sanitize_iso(v)

    @validator('title', pre=True, always=True)
    def default_title(cls, v):
        return sanitize_optional_string(v) or DEFAULT_TITLE

    @validator('type', pre=True, always=True)
    def default_type(cls, v):
        return sanitize_optional_string(v) or DEFAULT_EVENT_TYPE

    @validator('difficulty', pre=True, always=True)
    def default_difficulty(cls, v):
        return sanitize_optional_string(v) or DEFAULT_DIFFICULTY

    @validator('duration', pre=True, always=True)
    def default_duration(cls, v):
        return sanitize_duration(v)

    @validator('status', pre=True, always=True)
    def default_status(cls, v):
        return sanitize_optional_string(v) or EventStatus.ACTIVE.value

    @validator('provider', pre=True, always=True)
    def default_provider(cls, v):
        value = sanitize_optional_string(v)
        if value not in {p.value for p in EventProvider}:
            return EventProvider.LOCAL.value
        return value

    @validator('notes', 'color', 'account_id', 'google_id', 'outlook_id', 'ics_uid', pre=True)
    def blank_to_none(cls, v):
        return sanitize_optional_string(v)

    @classmethod
    def from_event(cls, event: CalendarEvent) -> Optional['SyncEventPayload']:
        """Build the wire payload for a local event.

        Returns None for events that have no sync identifier yet.
        """
        if not event.sync_id or not event.sync_id.strip():
            return None
        updated_at = to_iso(event.updated_at)
        return cls(
            id=event.sync_id,
            title=event.title,
            notes=event.notes,
            date=event.date,
            type=event.event_type,
            difficulty=event.difficulty,
            duration=event.duration_minutes,
            start=event.start,
            end=event.end,
            color=event.color,
            status=event.status,
            provider=event.provider.value,
            account_id=event.account_id,
            google_id=event.google_id,
            outlook_id=event.outlook_id,
            ics_uid=event.ics_uid,
            updated_at=updated_at,
            created_at=event.created_at or updated_at,
        )

    def to_event(self, row_id: Optional[int] = None) -> CalendarEvent:
        """Convert the payload into a canonical event."""
        return CalendarEvent(
            id=row_id,
            sync_id=self.id,
            title=self.title,
            notes=self.notes,
            date=self.date,
            start=self.start,
            end=self.end,
            duration_minutes=self.duration,
            event_type=self.type,
            difficulty=self.difficulty,
            color=self.color,
            status=self.status,
            provider=EventProvider(self.provider),
            account_id=self.account_id,
            google_id=self.google_id,
            outlook_id=self.outlook_id,
            ics_uid=self.ics_uid,
            updated_at=self.updated_at,
            created_at=self.created_at or self.updated_at,
        )

    @property
    def updated_at_value(self) -> datetime:
        return parse_timestamp(self.updated_at)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SyncCursor(BaseModel):
    """Watermark and acknowledgement cache of one sync channel."""

    last_sync_at: Optional[datetime] = Field(None, description="Server-acknowledged watermark")
    last_remote_sync_at: Optional[datetime] = Field(
        None, description="Wall-clock time of the last network round trip"
    )
    last_local_scan_at: Optional[datetime] = Field(
        None, description="Local-clock floor of the next outgoing change scan"
    )
    acknowledged_versions: Dict[str, str] = Field(
        default_factory=dict,
        description="sync id -> updatedAt confirmed with the peer (insertion ordered)",
    )

    @validator('last_sync_at', 'last_remote_sync_at', 'last_local_scan_at', pre=True)
    def parse_watermarks(cls, v):
        if v is None:
            return None
        return parse_timestamp(v)

    @validator('acknowledged_versions', pre=True)
    def clean_versions(cls, v):
        if not isinstance(v, dict):
            return {}
        cleaned = {}
        for key, value in v.items():
            iso = sanitize_iso(value)
            if isinstance(key, str) and key and iso:
                cleaned[key] = iso
        return cleaned

    @property
    def outgoing_since(self) -> Optional[datetime]:
        """Lower bound for listing local changes that still need sending."""
        if self.last_sync_at is None:
            return None
        if self.last_local_scan_at is None:
            return self.last_sync_at
        return min(self.last_sync_at, self.last_local_scan_at)

    def is_acknowledged(self, sync_id: str, updated_at: str) -> bool:
        return self.acknowledged_versions.get(sync_id) == sanitize_iso(updated_at)


class SyncReport(BaseModel):
    """Outcome of one round trip."""

    skipped: bool = Field(False, description="Network call skipped by the pull throttle")
    sent: int = Field(0)
    chunks: int = Field(0)
    received: int = Field(0)
    inserted: int = Field(0)
    updated: int = Field(0)
    unchanged: int = Field(0)
    dropped: int = Field(0, description="Malformed remote items")
    stale: int = Field(0, description="Remote versions older than the local copy")
    server_time: Optional[datetime] = Field(None)


class CalendarAccount(BaseModel):
    """External calendar account imported into the local store."""

    id: str = Field(..., description="Account id")
    provider: EventProvider = Field(..., description="google, outlook or ics")
    email: str = Field("", description="Account e-mail")
    display_name: Optional[str] = Field(None)
    color: str = Field("#2a9d8f")
    tenant_id: Optional[str] = Field(None, description="Microsoft tenant")
    client_id: Optional[str] = Field(None, description="OAuth client id override")
    calendar_id: Optional[str] = Field(None, description="Provider calendar id")
    access_token: Optional[str] = Field(None)
    refresh_token: Optional[str] = Field(None)
    access_token_expires_at: Optional[datetime] = Field(None)
    scope: Optional[str] = Field(None)
    ics_url: Optional[str] = Field(None)
    auto_sync_enabled: bool = Field(True)
    last_sync: Optional[datetime] = Field(None)
    status: AccountStatus = Field(AccountStatus.IDLE)
    error_message: Optional[str] = Field(None)

    @validator('access_token_expires_at', 'last_sync', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v


class TokenBundle(BaseModel):
    """Result of an OAuth refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    tenant_id: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None


class RawRecurrenceEntry(BaseModel):
    """One VEVENT as read from an ICS feed."""

    uid: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    status: Optional[str] = None
    rrule: Optional[str] = None
    rdates: List[Optional[datetime]] = Field(default_factory=list)
    exdates: List[Optional[datetime]] = Field(default_factory=list)
    recurrence_id: Optional[datetime] = None
    occurrence: Optional[datetime] = Field(
        None, description="Series instant this entry materializes after expansion"
    )

    @property
    def is_cancelled(self) -> bool:
        return (self.status or "").upper() == "CANCELLED"

    @property
    def has_recurrence_data(self) -> bool:
        return bool(self.rrule or any(self.rdates) or self.recurrence_id)


@dataclass
class RecurrenceGroup:
    """Entries of one ICS series sharing a uid."""

    uid: str
    master: Optional[RawRecurrenceEntry] = None
    overrides: Dict[datetime, RawRecurrenceEntry] = field(default_factory=dict)
    cancellations: set = field(default_factory=set)
    additional: List[RawRecurrenceEntry] = field(default_factory=list)


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    batch_size: int = Field(50, ge=1, description="Events per POST chunk")
    ack_cache_size: int = Field(1000, ge=1, description="Acknowledged versions kept per channel")
    sync_interval_seconds: float = Field(300, gt=0)
    local_change_delay_seconds: float = Field(2, ge=0)
    initial_sync_delay_seconds: float = Field(1, ge=0)
    retrigger_delay_seconds: float = Field(2, ge=0)
    min_remote_pull_interval_seconds: float = Field(30, ge=0)
    sync_retry_attempts: int = Field(3, ge=1)
    max_occurrences: int = Field(500, ge=1, description="Occurrence cap per recurring series")
    token_expiry_margin_seconds: int = Field(60, ge=0)
    lookback_days: int = Field(7, ge=0)
    lookahead_days: int = Field(30, ge=0)
    first_sync_lookahead_days: int = Field(3, ge=0)
    account_sync_interval_seconds: float = Field(300, gt=0)
    account_change_delay_seconds: float = Field(3, ge=0)

    @validator('first_sync_lookahead_days')
    def validate_first_sync_window(cls, v, values):
        """The first-sync window never exceeds the regular one."""
        lookahead = values.get('lookahead_days')
        if lookahead is not None and v > lookahead:
            return lookahead
        return v
