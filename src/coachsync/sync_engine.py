"""Sync engine wiring the local store, the sync peer and provider imports."""

import logging
from datetime import timedelta
from typing import Dict, List, Optional

import httpx

from .account_manager import AccountSyncManager
from .config import Settings
from .database import AccountRepository, DatabaseManager, EventStore
from .models import CalendarEvent, EventProvider, SyncReport, utc_now
from .protocol import SyncProtocolClient
from .scheduler import SyncScheduler
from .services import (
    BaseProviderAdapter, GoogleCalendarAdapter, IcsFeedAdapter, OutlookCalendarAdapter
)
from .sync_state import SyncCursorStore

logger = logging.getLogger(__name__)


class SyncEngine:
    """Composition root of one replica.

    ``initialize`` builds every component; ``start`` additionally arms the
    background timers (periodic sync, debounced local changes, the initial
    sync and per-account imports). Use as an async context manager.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        db_manager: Optional[DatabaseManager] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            http_client: HTTP client to use; one is created (and closed) when omitted
            db_manager: Database manager to use; one is created when omitted
        """
        self.settings = settings
        self.config = settings.sync_config
        self.logger = logger.getChild('sync_engine')

        self._owns_http_client = http_client is None
        self.http_client = http_client
        self.db_manager = db_manager or DatabaseManager(settings)

        self.store: Optional[EventStore] = None
        self.accounts: Optional[AccountRepository] = None
        self.cursor_store: Optional[SyncCursorStore] = None
        self.protocol: Optional[SyncProtocolClient] = None
        self.scheduler: Optional[SyncScheduler] = None
        self.adapters: Dict[EventProvider, BaseProviderAdapter] = {}
        self.account_manager: Optional[AccountSyncManager] = None
        self._unsubscribe = None
        self._started = False

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Initialize database, store and sync components."""
        self.db_manager.init_db()
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=self.settings.request_timeout_seconds)

        self.store = EventStore(self.db_manager)
        self.accounts = AccountRepository(self.db_manager)
        self.cursor_store = SyncCursorStore(
            self.db_manager,
            channel=self.settings.sync_channel,
            cache_size=self.config.ack_cache_size,
        )
        self.protocol = SyncProtocolClient(self.store, self.cursor_store, self.http_client, self.settings)
        self.scheduler = SyncScheduler(
            self.protocol.runner,
            interval=self.config.sync_interval_seconds,
            change_delay=self.config.local_change_delay_seconds,
            name='event_sync',
        )

        adapter_args = (self.settings, self.store, self.accounts, self.http_client)
        self.adapters = {
            EventProvider.GOOGLE: GoogleCalendarAdapter(*adapter_args, on_imported=self._after_import),
            EventProvider.OUTLOOK: OutlookCalendarAdapter(*adapter_args, on_imported=self._after_import),
            EventProvider.ICS: IcsFeedAdapter(*adapter_args, on_imported=self._after_import),
        }
        self.account_manager = AccountSyncManager(self.settings, self.accounts, self.adapters)
        self.logger.info("Sync engine initialized successfully")

    async def start(self) -> None:
        """Arm background synchronization."""
        if self._started:
            return
        self._started = True
        self._unsubscribe = self.store.subscribe(self.scheduler.notify_local_change)
        self.scheduler.start()
        await self._schedule_initial_sync()
        await self.account_manager.initialize()
        self.logger.info("Background synchronization started")

    async def _schedule_initial_sync(self) -> None:
        cursor = self.cursor_store.cursor
        delay = self.config.initial_sync_delay_seconds
        try:
            pending = await self.store.list_changed_since(cursor.outgoing_since)
        except Exception as e:
            self.logger.warning(f"Could not check pending local changes: {e}")
            self.scheduler.schedule(delay, force=True)
            return

        never_synced = cursor.last_sync_at is None
        recently_pulled = (
            cursor.last_remote_sync_at is not None
            and utc_now() - cursor.last_remote_sync_at
            < timedelta(seconds=self.config.min_remote_pull_interval_seconds)
        )
        if pending or never_synced or not recently_pulled:
            self.scheduler.schedule(delay, force=never_synced)

    async def cleanup(self) -> None:
        """Stop timers, wait for in-flight work and release resources."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.account_manager is not None:
            await self.account_manager.shutdown()
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.store is not None:
            await self.store.writer.drain()
        if self.http_client is not None and self._owns_http_client:
            await self.http_client.aclose()
            self.http_client = None
        self._started = False
        self.logger.info("Sync engine cleaned up")

    async def _after_import(self) -> None:
        await self.scheduler.request_sync(force=True)

    async def sync(self, force: bool = False) -> Optional[SyncReport]:
        """Run one round trip with the peer now.

        Returns None when the request coalesced with a running round trip.
        """
        return await self.scheduler.request_sync(force=force)

    async def add_event(self, event: CalendarEvent) -> CalendarEvent:
        return await self.store.save_event(event)

    async def update_event(self, row_id: int, **changes) -> Optional[CalendarEvent]:
        return await self.store.update_event(row_id, **changes)

    async def list_events(self, include_removed: bool = False) -> List[CalendarEvent]:
        return await self.store.list_events(include_removed=include_removed)

    async def remove_event(self, row_id: int) -> Optional[CalendarEvent]:
        """Mark an event removed and delete it at its provider when it has one."""
        removed = await self.store.mark_removed(row_id)
        if removed is None:
            return None

        if removed.provider in (EventProvider.GOOGLE, EventProvider.OUTLOOK) and removed.account_id:
            account = self.accounts.get(removed.account_id)
            external_id = removed.external_id
            if account is not None and external_id:
                await self.adapters[removed.provider].delete_remote(account, external_id)
            self.account_manager.notify_account_local_change(removed.account_id)
        return removed

    async def pull_account(self, account_id: str) -> Optional[Dict[str, int]]:
        """Import one provider account now."""
        return await self.account_manager.trigger_manual_sync(account_id)
