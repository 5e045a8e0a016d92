"""Tests for the sync protocol client."""

import json
from datetime import datetime, timedelta

import httpx
import pytest
import pytz
from tenacity import wait_none

from coachsync.database import DatabaseManager, EventStore
from coachsync.models import CalendarEvent, to_iso, utc_now
from coachsync.protocol import SyncNetworkError, SyncProtocolClient, SyncProtocolError
from coachsync.sync_state import SyncCursorStore

from conftest import make_settings


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


def remote_event(sync_id, updated_at, title='Remote', start='2025-01-06T10:00:00.000Z'):
    return {'id': sync_id, 'title': title, 'start': start, 'updatedAt': updated_at}


class FakePeer:
    """Scripted peer recording the requests it receives."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return httpx.Response(200, json={'events': [], 'serverTime': to_iso(utc_now())})


def make_client(settings, db_manager, peer):
    store = EventStore(db_manager)
    cursor_store = SyncCursorStore(db_manager, cache_size=settings.sync_config.ack_cache_size)
    http = httpx.AsyncClient(transport=httpx.MockTransport(peer))
    client = SyncProtocolClient(store, cursor_store, http, settings)
    client.retry_wait = wait_none()
    return client


class TestRoundTrip:

    @pytest.mark.asyncio
    async def test_first_round_trip_sends_everything(self, settings, db_manager):
        peer = FakePeer()
        client = make_client(settings, db_manager, peer)
        saved = await client.store.save_event(CalendarEvent(title='Long run', start=utc(2025, 1, 6, 7)))

        report = await client.trigger()

        assert report.sent == 1
        assert peer.requests[0]['since'] is None
        assert peer.requests[0]['events'][0]['id'] == saved.sync_id
        assert peer.requests[0]['events'][0]['title'] == 'Long run'
        assert client.cursor_store.cursor.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_acknowledged_events_are_not_resent(self, settings, db_manager):
        peer = FakePeer()
        client = make_client(settings, db_manager, peer)
        await client.store.save_event(CalendarEvent(title='Long run', start=utc(2025, 1, 6, 7)))

        await client.trigger()
        await client.trigger(force=True)

        assert len(peer.requests[1]['events']) == 0
        assert peer.requests[1]['since'] is not None

    @pytest.mark.asyncio
    async def test_acknowledgements_survive_restart(self, tmp_path):
        settings = make_settings(tmp_path)
        db_manager = DatabaseManager(settings)
        db_manager.init_db()

        peer = FakePeer(httpx.Response(200, json={'events': [], 'serverTime': '2000-01-01T00:00:00.000Z'}))
        client = make_client(settings, db_manager, peer)
        await client.store.save_event(CalendarEvent(title='Long run', start=utc(2025, 1, 6, 7)))
        await client.trigger()

        # A stale watermark would list the event again; the persisted ack filters it
        restarted = make_client(settings, db_manager, peer)
        assert restarted.cursor_store.cursor.last_sync_at == utc(2000, 1, 1)
        await restarted.trigger(force=True)

        assert len(peer.requests) == 2
        assert peer.requests[1]['events'] == []

    @pytest.mark.asyncio
    async def test_batches_outgoing_changes(self, tmp_path, db_manager):
        settings = make_settings(tmp_path, batch_size=2)
        peer = FakePeer()
        client = make_client(settings, db_manager, peer)
        for i in range(5):
            await client.store.save_event(CalendarEvent(title=f"Run {i}", start=utc(2025, 1, 6 + i, 7)))

        report = await client.trigger()

        assert [len(r['events']) for r in peer.requests] == [2, 2, 1]
        assert report.chunks == 3
        assert report.sent == 5

    @pytest.mark.asyncio
    async def test_newest_version_across_batches_wins(self, tmp_path, db_manager):
        settings = make_settings(tmp_path, batch_size=1)
        peer = FakePeer(
            httpx.Response(200, json={
                'events': [remote_event('shared', '2025-01-02T00:00:00.000Z', title='Newer')],
                'serverTime': '2025-01-03T00:00:00.000Z',
            }),
            httpx.Response(200, json={
                'events': [remote_event('shared', '2025-01-01T00:00:00.000Z', title='Older')],
                'serverTime': '2025-01-03T00:00:01.000Z',
            }),
        )
        client = make_client(settings, db_manager, peer)
        for i in range(2):
            await client.store.save_event(CalendarEvent(title=f"Run {i}", start=utc(2025, 1, 6 + i, 7)))

        report = await client.trigger()

        stored = await client.store.find_by_sync_id('shared')
        assert stored.title == 'Newer'
        assert report.received == 1
        assert client.cursor_store.cursor.last_sync_at == utc(2025, 1, 3, 0, 0, 1)

    @pytest.mark.asyncio
    async def test_watermark_keeps_latest_server_time_across_batches(self, tmp_path, db_manager):
        settings = make_settings(tmp_path, batch_size=1)
        peer = FakePeer(
            httpx.Response(200, json={'events': [], 'serverTime': '2025-01-03T00:00:05.000Z'}),
            httpx.Response(200, json={'events': [], 'serverTime': '2025-01-03T00:00:01.000Z'}),
        )
        client = make_client(settings, db_manager, peer)
        for i in range(2):
            await client.store.save_event(CalendarEvent(title=f"Run {i}", start=utc(2025, 1, 6 + i, 7)))

        report = await client.trigger()

        assert report.chunks == 2
        assert client.cursor_store.cursor.last_sync_at == utc(2025, 1, 3, 0, 0, 5)

    @pytest.mark.asyncio
    async def test_remote_changes_do_not_echo_back(self, settings, db_manager):
        peer = FakePeer(httpx.Response(200, json={
            'events': [remote_event('remote-1', '2025-01-02T00:00:00.000Z')],
            'serverTime': to_iso(utc_now()),
        }))
        client = make_client(settings, db_manager, peer)

        first = await client.trigger()
        second = await client.trigger(force=True)

        assert first.inserted == 1
        assert second.sent == 0
        assert peer.requests[1]['events'] == []

    @pytest.mark.asyncio
    async def test_malformed_remote_items_are_dropped(self, settings, db_manager):
        peer = FakePeer(httpx.Response(200, json={
            'events': [
                'nonsense',
                {'title': 'No id', 'updatedAt': '2025-01-02T00:00:00.000Z'},
                remote_event('no-start', '2025-01-02T00:00:00.000Z', start=None),
                remote_event('ok', '2025-01-02T00:00:00.000Z'),
            ],
            'serverTime': to_iso(utc_now()),
        }))
        client = make_client(settings, db_manager, peer)

        report = await client.trigger()

        assert report.inserted == 1
        assert report.dropped == 3
        assert [e.sync_id for e in await client.store.list_events()] == ['ok']

    @pytest.mark.asyncio
    async def test_older_remote_version_keeps_local_copy(self, settings, db_manager):
        client = make_client(settings, db_manager, FakePeer())
        saved = await client.store.save_event(CalendarEvent(title='Local', start=utc(2025, 1, 6, 7)))
        older = to_iso(saved.updated_at - timedelta(minutes=5))

        report = await client.apply_remote_changes([remote_event(saved.sync_id, older, title='Remote')])

        assert report.stale == 1
        assert (await client.store.find_by_sync_id(saved.sync_id)).title == 'Local'
        assert not client.cursor_store.cursor.is_acknowledged(saved.sync_id, older)

    @pytest.mark.asyncio
    async def test_throttle_skips_recent_pull(self, settings, db_manager):
        peer = FakePeer()
        client = make_client(settings, db_manager, peer)
        await client.trigger()

        report = await client.trigger()

        assert report.skipped
        assert len(peer.requests) == 1


class TestErrors:

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, settings, db_manager):
        peer = FakePeer(httpx.ConnectError("refused"))
        client = make_client(settings, db_manager, peer)

        report = await client.trigger()

        assert not report.skipped
        assert len(peer.requests) == 2

    @pytest.mark.asyncio
    async def test_unreachable_peer(self, settings, db_manager):
        peer = FakePeer(*[httpx.ConnectError("refused")] * 3)
        client = make_client(settings, db_manager, peer)

        with pytest.raises(SyncNetworkError):
            await client.trigger()
        assert client.cursor_store.cursor.last_sync_at is None

    @pytest.mark.asyncio
    async def test_error_response(self, settings, db_manager):
        peer = FakePeer(httpx.Response(400, json={'error': 'invalid_since'}))
        client = make_client(settings, db_manager, peer)

        with pytest.raises(SyncProtocolError) as excinfo:
            await client.trigger()
        assert excinfo.value.status_code == 400
        assert 'invalid_since' in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_failed_round_trip_keeps_cursor(self, settings, db_manager):
        peer = FakePeer(httpx.Response(500, json={'error': 'sync_failed'}))
        client = make_client(settings, db_manager, peer)
        saved = await client.store.save_event(CalendarEvent(title='Local', start=utc(2025, 1, 6, 7)))

        with pytest.raises(SyncProtocolError):
            await client.trigger()

        cursor = client.cursor_store.cursor
        assert cursor.last_sync_at is None
        assert cursor.acknowledged_versions == {}
        # Sent again on the next attempt
        await client.trigger()
        assert peer.requests[1]['events'][0]['id'] == saved.sync_id
