"""Tests for the persisted sync cursor and change-set building."""

import json
from datetime import datetime, timedelta

import pytest
import pytz

from coachsync.models import CalendarEvent, SyncCursor, SyncEventPayload
from coachsync.sync_state import ChangeSetBuilder, SyncCursorStore


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


class TestSyncCursorStore:

    def test_empty_state(self, db_manager):
        cursor = SyncCursorStore(db_manager).cursor
        assert cursor.last_sync_at is None
        assert cursor.acknowledged_versions == {}

    def test_round_trip_through_database(self, db_manager):
        store = SyncCursorStore(db_manager, channel='events')
        cursor = store.cursor
        cursor.last_sync_at = utc(2025, 1, 6, 10)
        cursor.last_remote_sync_at = utc(2025, 1, 6, 10, 0, 1)
        cursor.last_local_scan_at = utc(2025, 1, 6, 9, 59)
        store.acknowledge('evt-1', '2025-01-06T09:00:00Z')
        store.save()

        raw = json.loads(db_manager.get_state('sync_cursor:events'))
        assert raw['lastSyncAt'] == '2025-01-06T10:00:00.000Z'
        assert raw['syncedEvents'] == {'evt-1': '2025-01-06T09:00:00.000Z'}

        restored = SyncCursorStore(db_manager, channel='events').load()
        assert restored.last_sync_at == utc(2025, 1, 6, 10)
        assert restored.last_local_scan_at == utc(2025, 1, 6, 9, 59)
        assert restored.is_acknowledged('evt-1', '2025-01-06T09:00:00.000Z')

    def test_channels_are_independent(self, db_manager):
        first = SyncCursorStore(db_manager, channel='phone')
        first.cursor.last_sync_at = utc(2025, 1, 6)
        first.save()

        assert SyncCursorStore(db_manager, channel='laptop').cursor.last_sync_at is None

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"lastSyncAt": "garbage"}'])
    def test_unreadable_state_starts_fresh(self, db_manager, raw):
        db_manager.set_state('sync_cursor:events', raw)
        cursor = SyncCursorStore(db_manager).load()
        assert cursor.last_sync_at is None

    def test_acknowledgement_cache_evicts_oldest(self, db_manager):
        store = SyncCursorStore(db_manager, cache_size=2)
        store.acknowledge('a', '2025-01-01T00:00:00Z')
        store.acknowledge('b', '2025-01-01T00:00:00Z')
        store.acknowledge('a', '2025-01-02T00:00:00Z')
        store.acknowledge('c', '2025-01-01T00:00:00Z')

        assert list(store.cursor.acknowledged_versions) == ['a', 'c']
        assert store.cursor.acknowledged_versions['a'] == '2025-01-02T00:00:00.000Z'

    def test_invalid_acknowledgements_are_ignored(self, db_manager):
        store = SyncCursorStore(db_manager)
        store.acknowledge('', '2025-01-01T00:00:00Z')
        store.acknowledge('a', 'whenever')
        assert store.cursor.acknowledged_versions == {}

    def test_reset(self, db_manager):
        store = SyncCursorStore(db_manager)
        store.cursor.last_sync_at = utc(2025, 1, 6)
        store.acknowledge('a', '2025-01-01T00:00:00Z')
        store.save()
        store.reset()

        assert SyncCursorStore(db_manager).load() == SyncCursor()


class TestChangeSetBuilder:

    @pytest.mark.asyncio
    async def test_skips_acknowledged_versions(self, store):
        first = await store.save_event(CalendarEvent(title='One', start=utc(2025, 1, 6, 10)))
        second = await store.save_event(CalendarEvent(title='Two', start=utc(2025, 1, 7, 10)))

        cursor = SyncCursor()
        cursor.acknowledged_versions[first.sync_id] = SyncEventPayload.from_event(first).updated_at
        payloads = await ChangeSetBuilder(store).build(cursor)

        assert [p.id for p in payloads] == [second.sync_id]

    @pytest.mark.asyncio
    async def test_edited_event_is_resent(self, store):
        saved = await store.save_event(CalendarEvent(title='One', start=utc(2025, 1, 6, 10)))
        cursor = SyncCursor()
        cursor.acknowledged_versions[saved.sync_id] = SyncEventPayload.from_event(saved).updated_at

        await store.update_event(saved.id, title='One (edited)')
        payloads = await ChangeSetBuilder(store).build(cursor)

        assert [p.title for p in payloads] == ['One (edited)']

    @pytest.mark.asyncio
    async def test_respects_watermark(self, store):
        await store.save_event(CalendarEvent(title='Old', start=utc(2025, 1, 6, 10)))
        cursor = SyncCursor(
            last_sync_at=datetime.now(pytz.UTC) + timedelta(minutes=1),
            last_local_scan_at=datetime.now(pytz.UTC) + timedelta(minutes=1),
        )
        assert await ChangeSetBuilder(store).build(cursor) == []

    def test_chunking(self):
        payloads = [
            SyncEventPayload(id=f"evt-{i}", updated_at='2025-01-01T00:00:00Z') for i in range(5)
        ]
        chunks = ChangeSetBuilder.chunk(payloads, 2)

        assert [len(chunk) for chunk in chunks] == [2, 2, 1]
        assert ChangeSetBuilder.chunk([], 2) == [[]]
