"""Per-account import scheduling."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import Settings
from .database import AccountRepository
from .models import CalendarAccount, EventProvider
from .scheduler import CoalescingRunner, SyncScheduler
from .services.base import BaseProviderAdapter, CalendarServiceError

logger = logging.getLogger(__name__)


@dataclass
class AccountRunner:
    account: CalendarAccount
    runner: CoalescingRunner
    scheduler: SyncScheduler


class AccountSyncManager:
    """Keeps one coalescing runner and timer set per registered account.

    Accounts with auto sync disabled are registered without timers; they can
    still be pulled on demand.
    """

    def __init__(
        self,
        settings: Settings,
        accounts: AccountRepository,
        adapters: Dict[EventProvider, BaseProviderAdapter],
    ):
        self.settings = settings
        self.config = settings.sync_config
        self.accounts = accounts
        self.adapters = adapters
        self.logger = logger.getChild('manager')
        self._runners: Dict[str, AccountRunner] = {}

    @property
    def registered_ids(self) -> List[str]:
        return list(self._runners)

    def get_runner(self, account_id: str) -> Optional[AccountRunner]:
        return self._runners.get(account_id)

    def adapter_for(self, provider: EventProvider) -> BaseProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise CalendarServiceError(f"Provider {provider.value} is not supported")
        return adapter

    async def initialize(self) -> None:
        """Register every stored account."""
        for account in self.accounts.list():
            await self.register_account(account)

    async def register_account(self, account: CalendarAccount) -> None:
        """Start (or refresh) the runner of an account."""
        existing = self._runners.get(account.id)
        if existing is not None:
            was_enabled = existing.account.auto_sync_enabled
            existing.account = account
            if was_enabled == account.auto_sync_enabled:
                return
            await self.unregister_account(account.id)

        runner = CoalescingRunner(
            lambda force, account_id=account.id: self._pull(account_id),
            retrigger_delay=self.config.account_change_delay_seconds,
            name=f"account.{account.id}",
        )
        scheduler = SyncScheduler(
            runner,
            interval=self.config.account_sync_interval_seconds,
            change_delay=self.config.account_change_delay_seconds,
            name=f"account.{account.id}",
        )
        self._runners[account.id] = AccountRunner(account=account, runner=runner, scheduler=scheduler)

        if account.auto_sync_enabled:
            scheduler.start()
            scheduler.schedule(self.config.initial_sync_delay_seconds)
            self.logger.info(f"Registered account {account.id} ({account.provider.value}) with auto sync")
        else:
            self.logger.info(f"Registered account {account.id} ({account.provider.value}) without auto sync")

    async def unregister_account(self, account_id: str) -> None:
        """Stop the account's timers and wait for an in-flight import."""
        entry = self._runners.pop(account_id, None)
        if entry is None:
            return
        await entry.scheduler.stop()

    def notify_account_local_change(self, account_id: str) -> None:
        entry = self._runners.get(account_id)
        if entry is not None and entry.account.auto_sync_enabled:
            entry.scheduler.notify_local_change()

    async def trigger_manual_sync(self, account_id: str) -> Optional[Dict[str, int]]:
        """Import an account now.

        Returns the replace statistics, or None when the request coalesced
        with an import already running.

        Raises:
            CalendarServiceError: If the account is unknown or the import failed
        """
        entry = self._runners.get(account_id)
        if entry is None:
            return await self._pull(account_id)
        return await entry.scheduler.request_sync(force=True)

    async def _pull(self, account_id: str) -> Dict[str, int]:
        account = self.accounts.get(account_id)
        if account is None:
            raise CalendarServiceError(f"Unknown calendar account {account_id}")
        entry = self._runners.get(account_id)
        if entry is not None:
            entry.account = account
        return await self.adapter_for(account.provider).pull(account)

    async def shutdown(self) -> None:
        for account_id in list(self._runners):
            await self.unregister_account(account_id)
