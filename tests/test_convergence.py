"""Two replicas converging through the in-process reference peer."""

import asyncio
from datetime import datetime

import httpx
import pytest
import pytz

from coachsync.database import DatabaseManager
from coachsync.models import CalendarEvent
from coachsync.server import create_app
from coachsync.sync_engine import SyncEngine

from conftest import make_settings


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


class Replicas:
    """Two engines sharing one peer application."""

    def __init__(self, tmp_path):
        self.app = create_app(make_settings(tmp_path, name='peer.db'))
        self.http = httpx.AsyncClient(transport=httpx.ASGITransport(app=self.app))
        self.a = self._engine(tmp_path, 'a.db')
        self.b = self._engine(tmp_path, 'b.db')

    def _engine(self, tmp_path, name):
        settings = make_settings(tmp_path, name=name)
        return SyncEngine(settings, http_client=self.http, db_manager=DatabaseManager(settings))

    async def __aenter__(self):
        await self.a.initialize()
        await self.b.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.a.cleanup()
        await self.b.cleanup()
        await self.http.aclose()

    async def settle(self, rounds=2):
        for _ in range(rounds):
            await self.a.sync(force=True)
            await self.b.sync(force=True)


async def pending_outgoing(engine):
    return await engine.protocol.builder.build(engine.cursor_store.cursor)


class TestConvergence:

    @pytest.mark.asyncio
    async def test_new_event_reaches_other_replica(self, tmp_path):
        async with Replicas(tmp_path) as replicas:
            created = await replicas.a.add_event(
                CalendarEvent(title='Threshold run', start=utc(2025, 1, 6, 7), duration_minutes=50)
            )
            await replicas.settle()

            copy = await replicas.b.store.find_by_sync_id(created.sync_id)
            assert copy is not None
            assert copy.title == 'Threshold run'
            assert copy.duration_minutes == 50
            assert copy.updated_at == created.updated_at

    @pytest.mark.asyncio
    async def test_no_ping_pong_after_convergence(self, tmp_path):
        async with Replicas(tmp_path) as replicas:
            await replicas.a.add_event(CalendarEvent(title='Strides', start=utc(2025, 1, 6, 7)))
            await replicas.settle()

            notified = []
            replicas.a.store.subscribe(notified.append)
            replicas.b.store.subscribe(notified.append)

            assert await pending_outgoing(replicas.a) == []
            assert await pending_outgoing(replicas.b) == []

            report_a = await replicas.a.sync(force=True)
            report_b = await replicas.b.sync(force=True)

            assert (report_a.sent, report_a.received) == (0, 0)
            assert (report_b.sent, report_b.received) == (0, 0)
            assert notified == []

    @pytest.mark.asyncio
    async def test_edits_and_removals_propagate_both_ways(self, tmp_path):
        async with Replicas(tmp_path) as replicas:
            created = await replicas.a.add_event(CalendarEvent(title='Easy', start=utc(2025, 1, 6, 7)))
            await replicas.settle()

            on_b = await replicas.b.store.find_by_sync_id(created.sync_id)
            edited = await replicas.b.update_event(on_b.id, title='Easy + strides')
            await replicas.settle()

            on_a = await replicas.a.store.find_by_sync_id(created.sync_id)
            assert on_a.title == 'Easy + strides'
            assert on_a.updated_at == edited.updated_at

            await replicas.a.remove_event(on_a.id)
            await replicas.settle()

            assert await replicas.b.list_events() == []
            removed = await replicas.b.store.find_by_sync_id(created.sync_id)
            assert removed.status == 'removed'

    @pytest.mark.asyncio
    async def test_concurrent_edits_newest_wins(self, tmp_path):
        async with Replicas(tmp_path) as replicas:
            created = await replicas.a.add_event(CalendarEvent(title='Base', start=utc(2025, 1, 6, 7)))
            await replicas.settle()

            on_b = await replicas.b.store.find_by_sync_id(created.sync_id)
            await replicas.a.update_event(created.id, title='From A')
            await asyncio.sleep(0.01)
            newest = await replicas.b.update_event(on_b.id, title='From B')
            await replicas.settle(rounds=3)

            final_a = await replicas.a.store.find_by_sync_id(created.sync_id)
            final_b = await replicas.b.store.find_by_sync_id(created.sync_id)
            assert final_a.title == final_b.title == 'From B'
            assert final_a.updated_at == final_b.updated_at == newest.updated_at

    @pytest.mark.asyncio
    async def test_offline_edit_uploaded_late_is_not_lost(self, tmp_path):
        async with Replicas(tmp_path) as replicas:
            created = await replicas.a.add_event(CalendarEvent(title='Base', start=utc(2025, 1, 6, 7)))
            await replicas.settle()

            # B edits while offline, A keeps syncing before B comes back
            on_b = await replicas.b.store.find_by_sync_id(created.sync_id)
            await replicas.b.update_event(on_b.id, notes='Felt strong')
            await replicas.a.sync(force=True)
            await replicas.b.sync(force=True)
            await replicas.a.sync(force=True)

            on_a = await replicas.a.store.find_by_sync_id(created.sync_id)
            assert on_a.notes == 'Felt strong'
