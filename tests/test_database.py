"""Tests for the local event store and account repository."""

import asyncio
from datetime import datetime, timedelta

import pytest
import pytz

from coachsync.database import SerializedWriter, UpsertResult
from coachsync.models import (
    AccountStatus, CalendarAccount, CalendarEvent, EventProvider, TokenBundle, utc_now
)


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


def make_event(**fields):
    start = fields.pop('start', utc(2025, 1, 6, 10))
    return CalendarEvent(
        title=fields.pop('title', 'Easy run'),
        date=start,
        start=start,
        end=start + timedelta(minutes=30),
        duration_minutes=30,
        **fields
    )


class TestSerializedWriter:

    @pytest.mark.asyncio
    async def test_operations_run_in_submission_order(self):
        writer = SerializedWriter()
        order = []

        async def slow(name, delay):
            order.append(f"start {name}")
            await asyncio.sleep(delay)
            order.append(f"end {name}")
            return name

        results = await asyncio.gather(
            writer.run(slow, 'a', 0.05),
            writer.run(slow, 'b', 0.0),
            writer.run(lambda: 'c'),
        )

        assert results == ['a', 'b', 'c']
        assert order == ['start a', 'end a', 'start b', 'end b']

    @pytest.mark.asyncio
    async def test_failure_does_not_block_successors(self):
        writer = SerializedWriter()

        def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await writer.run(boom)
        assert await writer.run(lambda: 'next') == 'next'


class TestEventStore:

    @pytest.mark.asyncio
    async def test_save_assigns_sync_id_and_version(self, store):
        before = utc_now()
        saved = await store.save_event(make_event())

        assert saved.id is not None
        assert saved.sync_id
        assert saved.updated_at >= before
        assert saved.created_at == saved.updated_at
        assert (await store.find_by_sync_id(saved.sync_id)).title == 'Easy run'

    @pytest.mark.asyncio
    async def test_update_always_bumps_version(self, store):
        saved = await store.save_event(make_event())
        first = await store.update_event(saved.id, title='Tempo run')
        second = await store.update_event(saved.id, notes='Hills')

        assert first.title == 'Tempo run'
        assert first.updated_at > saved.updated_at
        assert second.updated_at > first.updated_at
        assert second.sync_id == saved.sync_id
        assert await store.update_event(9999, title='x') is None

    @pytest.mark.asyncio
    async def test_mark_removed_hides_event(self, store):
        saved = await store.save_event(make_event())
        removed = await store.mark_removed(saved.id)

        assert removed.status == 'removed'
        assert await store.list_events() == []
        assert len(await store.list_events(include_removed=True)) == 1

    @pytest.mark.asyncio
    async def test_list_changed_since(self, store):
        first = await store.save_event(make_event(title='First'))
        await asyncio.sleep(0.01)
        second = await store.save_event(make_event(title='Second'))

        changed = await store.list_changed_since(first.updated_at)
        assert [event.sync_id for event in changed] == [second.sync_id]
        assert len(await store.list_changed_since(None)) == 2

    @pytest.mark.asyncio
    async def test_upsert_is_newest_wins(self, store):
        incoming = make_event(sync_id='shared', updated_at=utc(2025, 1, 1, 12))

        assert await store.upsert_by_sync_id(incoming) == UpsertResult.INSERTED
        assert await store.upsert_by_sync_id(incoming) == UpsertResult.UNCHANGED

        older = incoming.model_copy(update={'title': 'Old', 'updated_at': utc(2025, 1, 1, 11)})
        assert await store.upsert_by_sync_id(older) == UpsertResult.STALE

        newer = incoming.model_copy(update={'title': 'New', 'updated_at': utc(2025, 1, 1, 13)})
        assert await store.upsert_by_sync_id(newer) == UpsertResult.UPDATED

        stored = await store.find_by_sync_id('shared')
        assert stored.title == 'New'
        assert stored.updated_at == utc(2025, 1, 1, 13)

    @pytest.mark.asyncio
    async def test_listeners_and_suppression(self, store):
        seen = []
        unsubscribe = store.subscribe(lambda events: seen.extend(e.title for e in events))

        await store.save_event(make_event(title='Heard'))
        with store.suppress_notifications():
            await store.upsert_by_sync_id(make_event(title='Silent', sync_id='remote-1'))
        unsubscribe()
        await store.save_event(make_event(title='After'))

        assert seen == ['Heard']

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_writes(self, store):
        def broken(events):
            raise RuntimeError("listener failed")

        store.subscribe(broken)
        saved = await store.save_event(make_event())
        assert saved.id is not None


class TestReplaceProviderEvents:

    def imported(self, native_id, title='Imported', start=None):
        return make_event(
            title=title,
            start=start or utc(2025, 1, 6, 10),
            provider=EventProvider.GOOGLE,
            google_id=native_id,
            updated_at=utc(2024, 12, 1),
        )

    @pytest.mark.asyncio
    async def test_insert_update_keep_and_remove(self, store):
        stats = await store.replace_provider_events(
            EventProvider.GOOGLE, 'acc-1', [self.imported('g1'), self.imported('g2'), self.imported('g3')]
        )
        assert stats == {'inserted': 3, 'updated': 0, 'unchanged': 0, 'removed': 0}

        events = {e.google_id: e for e in await store.list_events(provider=EventProvider.GOOGLE)}
        assert all(e.account_id == 'acc-1' and e.sync_id for e in events.values())
        # Imports are stamped with the local clock
        assert all(e.updated_at > utc(2024, 12, 1) for e in events.values())

        stats = await store.replace_provider_events(
            EventProvider.GOOGLE, 'acc-1', [self.imported('g1'), self.imported('g2', title='Renamed')]
        )
        assert stats == {'inserted': 0, 'updated': 1, 'unchanged': 1, 'removed': 1}

        after = {e.google_id: e for e in await store.list_events(include_removed=True)}
        assert after['g1'].updated_at == events['g1'].updated_at
        assert after['g1'].sync_id == events['g1'].sync_id
        assert after['g2'].title == 'Renamed'
        assert after['g2'].updated_at >= events['g2'].updated_at
        assert after['g3'].status == 'removed'

    @pytest.mark.asyncio
    async def test_other_accounts_are_untouched(self, store):
        await store.replace_provider_events(EventProvider.GOOGLE, 'acc-1', [self.imported('g1')])
        await store.replace_provider_events(EventProvider.GOOGLE, 'acc-2', [])

        assert [e.google_id for e in await store.list_events()] == ['g1']

    @pytest.mark.asyncio
    async def test_only_changes_are_announced(self, store):
        await store.replace_provider_events(EventProvider.GOOGLE, 'acc-1', [self.imported('g1')])
        seen = []
        store.subscribe(seen.append)

        await store.replace_provider_events(EventProvider.GOOGLE, 'acc-1', [self.imported('g1')])
        assert seen == []


class TestAccountRepository:

    def test_save_get_list_delete(self, accounts):
        accounts.save(CalendarAccount(id='b', provider=EventProvider.ICS, ics_url='https://x/feed.ics'))
        accounts.save(CalendarAccount(id='a', provider=EventProvider.GOOGLE, email='me@example.com'))

        assert [a.id for a in accounts.list()] == ['a', 'b']
        assert [a.id for a in accounts.list(EventProvider.ICS)] == ['b']
        assert accounts.get('a').email == 'me@example.com'
        assert accounts.delete('a') is True
        assert accounts.delete('a') is False
        assert accounts.get('a') is None

    def test_status_and_tokens(self, accounts):
        accounts.save(CalendarAccount(id='a', provider=EventProvider.OUTLOOK, refresh_token='r1'))
        when = utc(2025, 1, 6, 10)

        updated = accounts.update_status('a', AccountStatus.ERROR, error_message='401')
        assert updated.status == AccountStatus.ERROR
        assert updated.error_message == '401'

        updated = accounts.update_status('a', AccountStatus.IDLE, last_sync=when)
        assert updated.error_message is None
        assert updated.last_sync == when

        updated = accounts.update_tokens('a', TokenBundle(access_token='t2', expires_at=when, tenant_id='tn'))
        assert updated.access_token == 't2'
        assert updated.refresh_token == 'r1'
        assert updated.access_token_expires_at == when
        assert updated.tenant_id == 'tn'
        assert accounts.update_status('missing', AccountStatus.IDLE) is None
