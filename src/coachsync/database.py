"""Database models and the serialized local event store."""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker, Session
import pytz

from .config import Settings
from .models import (
    AccountStatus, CalendarAccount, CalendarEvent, EventProvider, EventStatus,
    TokenBundle, normalize_timestamp, utc_now
)

logger = logging.getLogger(__name__)

Base = declarative_base()


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Store instants as naive UTC so SQLite comparisons stay lexical-safe."""
    if value is None:
        return None
    return normalize_timestamp(value).replace(tzinfo=None)


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return normalize_timestamp(value.replace(tzinfo=pytz.UTC))


class EventDB(Base):
    """Canonical calendar events of this replica."""

    __tablename__ = 'events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_id = Column(String(64), nullable=True)
    title = Column(String(500), nullable=False)
    notes = Column(Text, nullable=True)
    date = Column(DateTime, nullable=True)
    start = Column(DateTime, nullable=True)
    end = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=15)
    event_type = Column(String(100), nullable=False)
    difficulty = Column(String(100), nullable=False)
    color = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default='active')
    provider = Column(String(16), nullable=False, default='local')
    account_id = Column(String(255), nullable=True)

    # Provider-native identifiers, unique within provider + account
    google_id = Column(String(255), nullable=True)
    outlook_id = Column(String(255), nullable=True)
    ics_uid = Column(String(500), nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('sync_id', name='uq_event_sync_id'),
        Index('idx_event_updated_at', 'updated_at'),
        Index('idx_event_provider_account', 'provider', 'account_id'),
    )


class SyncStateDB(Base):
    """Opaque per-channel sync state blobs."""

    __tablename__ = 'sync_state'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=lambda: to_db_time(utc_now()))


class CalendarAccountDB(Base):
    """External calendar accounts imported into the store."""

    __tablename__ = 'calendar_accounts'

    id = Column(String(255), primary_key=True)
    provider = Column(String(16), nullable=False)
    email = Column(String(255), nullable=False, default='')
    display_name = Column(String(255), nullable=True)
    color = Column(String(32), nullable=False, default='#2a9d8f')
    tenant_id = Column(String(255), nullable=True)
    client_id = Column(String(255), nullable=True)
    calendar_id = Column(String(500), nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    access_token_expires_at = Column(DateTime, nullable=True)
    scope = Column(Text, nullable=True)
    ics_url = Column(String(2000), nullable=True)
    auto_sync_enabled = Column(Boolean, nullable=False, default=True)
    last_sync = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default='idle')
    error_message = Column(Text, nullable=True)


class RemoteEventDB(Base):
    """Events held by the reference sync peer."""

    __tablename__ = 'remote_events'

    sync_id = Column(String(64), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    received_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_remote_event_received_at', 'received_at'),
    )


class DatabaseManager:
    """Database manager for the local store."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def get_state(self, key: str) -> Optional[str]:
        with self.get_session() as session:
            row = session.get(SyncStateDB, key)
            return row.value if row else None

    def set_state(self, key: str, value: str) -> None:
        with self.get_session() as session:
            row = session.get(SyncStateDB, key)
            if row is None:
                row = SyncStateDB(key=key, value=value)
                session.add(row)
            else:
                row.value = value
            row.updated_at = to_db_time(utc_now())
            session.commit()

    def close(self) -> None:
        self.engine.dispose()


class SerializedWriter:
    """Runs store mutations one at a time, in submission order.

    Each operation is chained behind the previous one's completion future, so
    a mutation never observes a half-applied predecessor even when it awaits.
    """

    def __init__(self):
        self._tail: Optional[asyncio.Future] = None

    async def run(self, operation: Callable[..., Any], *args, **kwargs) -> Any:
        previous = self._tail
        done = asyncio.get_running_loop().create_future()
        self._tail = done
        try:
            if previous is not None and not previous.done():
                await asyncio.shield(previous)
            result = operation(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except asyncio.CancelledError:
            # Successors must still wait for a predecessor that keeps running.
            if previous is not None and not previous.done():
                previous.add_done_callback(lambda _: _release(done))
                raise
            _release(done)
            raise
        finally:
            if previous is None or previous.done():
                _release(done)

    async def drain(self) -> None:
        """Wait until every queued mutation has finished."""
        tail = self._tail
        if tail is not None and not tail.done():
            await asyncio.shield(tail)


def _release(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class UpsertResult(str, Enum):
    """Outcome of applying one incoming event version."""

    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"


EventListener = Callable[[List[CalendarEvent]], None]

_CONTENT_FIELDS = (
    'title', 'notes', 'date', 'start', 'end', 'duration_minutes', 'event_type',
    'difficulty', 'color', 'status', 'provider', 'account_id', 'google_id',
    'outlook_id', 'ics_uid',
)

_PROVIDER_ID_COLUMNS = {
    EventProvider.GOOGLE: 'google_id',
    EventProvider.OUTLOOK: 'outlook_id',
    EventProvider.ICS: 'ics_uid',
}


class EventStore:
    """Local event store.

    Reads go straight to the database; every mutation runs through a
    ``SerializedWriter``. Listeners are told about committed local changes
    unless notifications are suppressed (used while applying remote data).
    """

    def __init__(self, db_manager: DatabaseManager, writer: Optional[SerializedWriter] = None):
        self.db = db_manager
        self.writer = writer or SerializedWriter()
        self.logger = logger.getChild('event_store')
        self._listeners: List[EventListener] = []
        self._suppressed = 0

    # Conversion helpers

    @staticmethod
    def _to_model(row: EventDB) -> CalendarEvent:
        return CalendarEvent(
            id=row.id,
            sync_id=row.sync_id,
            title=row.title,
            notes=row.notes,
            date=from_db_time(row.date),
            start=from_db_time(row.start),
            end=from_db_time(row.end),
            duration_minutes=row.duration_minutes,
            event_type=row.event_type,
            difficulty=row.difficulty,
            color=row.color,
            status=row.status,
            provider=EventProvider(row.provider),
            account_id=row.account_id,
            google_id=row.google_id,
            outlook_id=row.outlook_id,
            ics_uid=row.ics_uid,
            created_at=from_db_time(row.created_at),
            updated_at=from_db_time(row.updated_at),
        )

    @staticmethod
    def _apply_fields(row: EventDB, event: CalendarEvent) -> None:
        row.sync_id = event.sync_id
        row.title = event.title
        row.notes = event.notes
        row.date = to_db_time(event.date)
        row.start = to_db_time(event.start)
        row.end = to_db_time(event.end)
        row.duration_minutes = event.duration_minutes
        row.event_type = event.event_type
        row.difficulty = event.difficulty
        row.color = event.color
        row.status = event.status
        row.provider = event.provider.value
        row.account_id = event.account_id
        row.google_id = event.google_id
        row.outlook_id = event.outlook_id
        row.ics_uid = event.ics_uid
        row.created_at = to_db_time(event.created_at)
        row.updated_at = to_db_time(event.updated_at)

    @staticmethod
    def _same_content(current: CalendarEvent, fresh: CalendarEvent) -> bool:
        return all(getattr(current, name) == getattr(fresh, name) for name in _CONTENT_FIELDS)

    # Change notification

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @contextmanager
    def suppress_notifications(self):
        """Silence change listeners for the duration of the block."""
        self._suppressed += 1
        try:
            yield
        finally:
            self._suppressed -= 1

    @property
    def notifications_suppressed(self) -> bool:
        return self._suppressed > 0

    def _notify(self, events: List[CalendarEvent]) -> None:
        if not events or self._suppressed:
            return
        for listener in list(self._listeners):
            try:
                listener(events)
            except Exception as e:
                self.logger.warning(f"Event listener failed: {e}")

    # Reads

    async def get_event(self, row_id: int) -> Optional[CalendarEvent]:
        with self.db.get_session() as session:
            row = session.get(EventDB, row_id)
            return self._to_model(row) if row else None

    async def find_by_sync_id(self, sync_id: str) -> Optional[CalendarEvent]:
        with self.db.get_session() as session:
            row = session.query(EventDB).filter(EventDB.sync_id == sync_id).first()
            return self._to_model(row) if row else None

    async def list_changed_since(self, since: Optional[datetime]) -> List[CalendarEvent]:
        """Events whose ``updated_at`` is strictly after ``since`` (all when None)."""
        with self.db.get_session() as session:
            query = session.query(EventDB)
            if since is not None:
                query = query.filter(EventDB.updated_at > to_db_time(since))
            rows = query.order_by(EventDB.updated_at, EventDB.id).all()
            return [self._to_model(row) for row in rows]

    async def list_events(
        self,
        include_removed: bool = False,
        provider: Optional[EventProvider] = None,
        account_id: Optional[str] = None,
    ) -> List[CalendarEvent]:
        with self.db.get_session() as session:
            query = session.query(EventDB)
            if not include_removed:
                query = query.filter(EventDB.status != EventStatus.REMOVED.value)
            if provider is not None:
                query = query.filter(EventDB.provider == provider.value)
            if account_id is not None:
                query = query.filter(EventDB.account_id == account_id)
            rows = query.order_by(EventDB.start, EventDB.id).all()
            return [self._to_model(row) for row in rows]

    # Mutations

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        """Insert a new local event, assigning its sync identifier."""
        return await self.writer.run(self._save_event, event)

    def _save_event(self, event: CalendarEvent) -> CalendarEvent:
        now = utc_now()
        fresh = event.model_copy(update={
            'id': None,
            'sync_id': event.sync_id or str(uuid4()),
            'created_at': now,
            'updated_at': now,
        })
        with self.db.get_session() as session:
            row = EventDB()
            self._apply_fields(row, fresh)
            session.add(row)
            session.commit()
            saved = self._to_model(row)
        self._notify([saved])
        return saved

    async def update_event(self, row_id: int, **changes: Any) -> Optional[CalendarEvent]:
        """Apply field changes to a local event and bump its version."""
        return await self.writer.run(self._update_event, row_id, changes)

    def _update_event(self, row_id: int, changes: Dict[str, Any]) -> Optional[CalendarEvent]:
        with self.db.get_session() as session:
            row = session.get(EventDB, row_id)
            if row is None:
                return None
            current = self._to_model(row)
            changes = {k: v for k, v in changes.items() if k not in ('id', 'sync_id', 'created_at')}
            changes['updated_at'] = max(utc_now(), current.updated_at + timedelta(milliseconds=1))
            updated = CalendarEvent(**{**current.model_dump(), **changes})
            self._apply_fields(row, updated)
            session.commit()
            saved = self._to_model(row)
        self._notify([saved])
        return saved

    async def mark_removed(self, row_id: int) -> Optional[CalendarEvent]:
        """Mark an event removed so the deletion propagates like an edit."""
        return await self.update_event(row_id, status=EventStatus.REMOVED.value)

    async def upsert_by_sync_id(self, event: CalendarEvent) -> UpsertResult:
        """Apply an incoming event version newest-wins.

        Inserts when the sync id is unknown; leaves the row alone when the
        local version is equal or strictly newer; otherwise overwrites every
        field while keeping the local row id.
        """
        return await self.writer.run(self._upsert_by_sync_id, event)

    def _upsert_by_sync_id(self, event: CalendarEvent) -> UpsertResult:
        with self.db.get_session() as session:
            row = session.query(EventDB).filter(EventDB.sync_id == event.sync_id).first()
            if row is None:
                row = EventDB()
                self._apply_fields(row, event.model_copy(update={'id': None}))
                session.add(row)
                session.commit()
                result, saved = UpsertResult.INSERTED, self._to_model(row)
            else:
                local_updated = from_db_time(row.updated_at)
                incoming = normalize_timestamp(event.updated_at)
                if local_updated == incoming:
                    return UpsertResult.UNCHANGED
                if local_updated > incoming:
                    return UpsertResult.STALE
                self._apply_fields(row, event)
                session.commit()
                result, saved = UpsertResult.UPDATED, self._to_model(row)
        self._notify([saved])
        return result

    async def replace_provider_events(
        self,
        provider: EventProvider,
        account_id: str,
        events: Iterable[CalendarEvent],
    ) -> Dict[str, int]:
        """Make the stored events of one provider account match ``events``.

        Previously imported events missing from the fresh set are marked
        removed; fresh events are upserted by their provider-native id.
        Unchanged events keep their version stamp.
        """
        return await self.writer.run(self._replace_provider_events, provider, account_id, list(events))

    def _replace_provider_events(
        self,
        provider: EventProvider,
        account_id: str,
        events: List[CalendarEvent],
    ) -> Dict[str, int]:
        id_column = _PROVIDER_ID_COLUMNS[provider]
        fresh_by_id: Dict[str, CalendarEvent] = {}
        for event in events:
            native_id = getattr(event, id_column)
            if native_id:
                fresh_by_id[native_id] = event

        stats = {'inserted': 0, 'updated': 0, 'unchanged': 0, 'removed': 0}
        changed: List[CalendarEvent] = []
        now = utc_now()

        with self.db.get_session() as session:
            rows = session.query(EventDB).filter(
                EventDB.provider == provider.value,
                EventDB.account_id == account_id,
            ).all()
            existing = {getattr(row, id_column): row for row in rows if getattr(row, id_column)}

            for native_id, row in existing.items():
                if native_id in fresh_by_id or row.status == EventStatus.REMOVED.value:
                    continue
                current = self._to_model(row)
                removed = current.model_copy(update={
                    'status': EventStatus.REMOVED.value,
                    'updated_at': max(now, current.updated_at + timedelta(milliseconds=1)),
                })
                self._apply_fields(row, removed)
                stats['removed'] += 1
                changed.append(removed)

            for native_id, fresh in fresh_by_id.items():
                row = existing.get(native_id)
                if row is None:
                    inserted = fresh.model_copy(update={
                        'id': None,
                        'sync_id': fresh.sync_id or str(uuid4()),
                        'provider': provider,
                        'account_id': account_id,
                        'created_at': now,
                        'updated_at': now,
                    })
                    row = EventDB()
                    self._apply_fields(row, inserted)
                    session.add(row)
                    stats['inserted'] += 1
                    changed.append(inserted)
                    continue
                current = self._to_model(row)
                candidate = fresh.model_copy(update={
                    'id': current.id,
                    'sync_id': current.sync_id,
                    'provider': provider,
                    'account_id': account_id,
                    'created_at': current.created_at,
                    'updated_at': current.updated_at,
                })
                if self._same_content(current, candidate):
                    stats['unchanged'] += 1
                    continue
                bumped = max(now, current.updated_at + timedelta(milliseconds=1))
                candidate = candidate.model_copy(update={'updated_at': bumped})
                self._apply_fields(row, candidate)
                stats['updated'] += 1
                changed.append(candidate)

            session.commit()

        self.logger.info(
            f"Replaced {provider.value} events for account {account_id}: "
            f"{stats['inserted']} inserted, {stats['updated']} updated, "
            f"{stats['unchanged']} unchanged, {stats['removed']} removed"
        )
        self._notify(changed)
        return stats


class AccountRepository:
    """Persistence of provider calendar accounts."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    @staticmethod
    def _to_model(row: CalendarAccountDB) -> CalendarAccount:
        return CalendarAccount(
            id=row.id,
            provider=EventProvider(row.provider),
            email=row.email,
            display_name=row.display_name,
            color=row.color,
            tenant_id=row.tenant_id,
            client_id=row.client_id,
            calendar_id=row.calendar_id,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            access_token_expires_at=from_db_time(row.access_token_expires_at),
            scope=row.scope,
            ics_url=row.ics_url,
            auto_sync_enabled=row.auto_sync_enabled,
            last_sync=from_db_time(row.last_sync),
            status=AccountStatus(row.status),
            error_message=row.error_message,
        )

    def get(self, account_id: str) -> Optional[CalendarAccount]:
        with self.db.get_session() as session:
            row = session.get(CalendarAccountDB, account_id)
            return self._to_model(row) if row else None

    def list(self, provider: Optional[EventProvider] = None) -> List[CalendarAccount]:
        with self.db.get_session() as session:
            query = session.query(CalendarAccountDB)
            if provider is not None:
                query = query.filter(CalendarAccountDB.provider == provider.value)
            return [self._to_model(row) for row in query.order_by(CalendarAccountDB.id).all()]

    def save(self, account: CalendarAccount) -> CalendarAccount:
        """Insert or replace an account."""
        with self.db.get_session() as session:
            row = session.get(CalendarAccountDB, account.id)
            if row is None:
                row = CalendarAccountDB(id=account.id)
                session.add(row)
            row.provider = account.provider.value
            row.email = account.email
            row.display_name = account.display_name
            row.color = account.color
            row.tenant_id = account.tenant_id
            row.client_id = account.client_id
            row.calendar_id = account.calendar_id
            row.access_token = account.access_token
            row.refresh_token = account.refresh_token
            row.access_token_expires_at = to_db_time(account.access_token_expires_at)
            row.scope = account.scope
            row.ics_url = account.ics_url
            row.auto_sync_enabled = account.auto_sync_enabled
            row.last_sync = to_db_time(account.last_sync)
            row.status = account.status.value
            row.error_message = account.error_message
            session.commit()
            return self._to_model(row)

    def delete(self, account_id: str) -> bool:
        with self.db.get_session() as session:
            row = session.get(CalendarAccountDB, account_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def update_status(
        self,
        account_id: str,
        status: AccountStatus,
        error_message: Optional[str] = None,
        last_sync: Optional[datetime] = None,
    ) -> Optional[CalendarAccount]:
        with self.db.get_session() as session:
            row = session.get(CalendarAccountDB, account_id)
            if row is None:
                return None
            row.status = status.value
            row.error_message = error_message
            if last_sync is not None:
                row.last_sync = to_db_time(last_sync)
            session.commit()
            return self._to_model(row)

    def update_tokens(self, account_id: str, tokens: TokenBundle) -> Optional[CalendarAccount]:
        with self.db.get_session() as session:
            row = session.get(CalendarAccountDB, account_id)
            if row is None:
                return None
            row.access_token = tokens.access_token
            if tokens.refresh_token:
                row.refresh_token = tokens.refresh_token
            row.access_token_expires_at = to_db_time(tokens.expires_at)
            if tokens.scope:
                row.scope = tokens.scope
            if tokens.tenant_id:
                row.tenant_id = tokens.tenant_id
            session.commit()
            return self._to_model(row)
