"""Coalescing sync runner and its timers."""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    """Lifecycle of a coalescing runner."""

    IDLE = "idle"
    SYNCING = "syncing"
    SYNCING_WITH_PENDING = "syncing-with-pending"


class CoalescingRunner:
    """Runs an async action at most once at a time.

    Triggers that arrive while the action is running collapse into a single
    follow-up, which runs ``retrigger_delay`` seconds after the current run
    finishes (whether it succeeded or failed). A forced trigger upgrades the
    pending follow-up to a forced one.
    """

    def __init__(
        self,
        action: Callable[[bool], Awaitable[Any]],
        retrigger_delay: float = 2.0,
        name: str = 'runner',
    ):
        self._action = action
        self.retrigger_delay = retrigger_delay
        self.name = name
        self.logger = logger.getChild(name)
        self.state = SyncState.IDLE
        self._pending_force = False
        self._follow_up: Optional[asyncio.Task] = None
        self._follow_up_force = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @property
    def has_follow_up(self) -> bool:
        return self._follow_up is not None and not self._follow_up.done()

    async def trigger(self, force: bool = False) -> Any:
        """Run the action now, or coalesce into the pending follow-up.

        Returns the action's result, or None when the trigger was coalesced.
        Errors raised by the action propagate to the caller.
        """
        if self._closed:
            return None

        if self.state != SyncState.IDLE:
            self.state = SyncState.SYNCING_WITH_PENDING
            self._pending_force = self._pending_force or force
            return None

        # A run starting now supersedes a follow-up still waiting for its delay
        if self.has_follow_up:
            force = force or self._follow_up_force
            self._follow_up.cancel()
            self._follow_up = None

        self.state = SyncState.SYNCING
        self._pending_force = False
        self._idle.clear()
        try:
            return await self._action(force)
        finally:
            pending = self.state == SyncState.SYNCING_WITH_PENDING
            force_next = self._pending_force
            self.state = SyncState.IDLE
            self._pending_force = False
            self._idle.set()
            if pending and not self._closed:
                self._schedule_follow_up(force_next)

    async def trigger_in_background(self, force: bool = False) -> Any:
        """Trigger and log failures instead of raising them."""
        try:
            return await self.trigger(force)
        except Exception as e:
            self.logger.warning(f"Background {self.name} run failed: {e}")
            return None

    def _schedule_follow_up(self, force: bool) -> None:
        self._follow_up_force = force
        self._follow_up = asyncio.create_task(self._run_follow_up(force))

    async def _run_follow_up(self, force: bool) -> None:
        await asyncio.sleep(self.retrigger_delay)
        self._follow_up = None
        await self.trigger_in_background(force)

    async def wait_idle(self) -> None:
        """Wait for an in-flight run to finish."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stop scheduling follow-ups and wait for the current run."""
        self._closed = True
        if self.has_follow_up:
            self._follow_up.cancel()
            try:
                await self._follow_up
            except asyncio.CancelledError:
                pass
        self._follow_up = None
        await self.wait_idle()


class SyncScheduler:
    """Drives a ``CoalescingRunner`` from a periodic tick and debounced changes.

    Three inputs feed the runner: a periodic tick every ``interval`` seconds,
    local-change notifications debounced by ``change_delay`` seconds, and
    explicit requests. A forced request cancels the pending debounce.
    """

    def __init__(
        self,
        runner: CoalescingRunner,
        interval: float,
        change_delay: float,
        name: str = 'scheduler',
    ):
        self.runner = runner
        self.interval = interval
        self.change_delay = change_delay
        self.logger = logger.getChild(name)
        self.running = False
        self._wakeup = asyncio.Event()
        self._periodic_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._wakeup.clear()
        self._periodic_task = asyncio.create_task(self._run_periodic())

    async def _run_periodic(self) -> None:
        while self.running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if not self.running:
                break
            self._wakeup.clear()
            await self.runner.trigger_in_background(False)

    def schedule(self, delay: float, force: bool = False) -> None:
        """(Re)arm the debounce timer; an earlier pending timer is replaced."""
        if not self.running:
            return
        self.cancel_debounce()
        self._debounce_task = asyncio.create_task(self._run_debounced(delay, force))

    async def _run_debounced(self, delay: float, force: bool) -> None:
        await asyncio.sleep(delay)
        # Past this point the run is never cancelled by a newer schedule
        self._debounce_task = None
        await self.runner.trigger_in_background(force)

    def cancel_debounce(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    @property
    def has_pending_debounce(self) -> bool:
        return self._debounce_task is not None and not self._debounce_task.done()

    def notify_local_change(self, *_: Any) -> None:
        """Schedule a debounced run after a local mutation."""
        self.schedule(self.change_delay)

    async def request_sync(self, force: bool = False) -> Any:
        """Run now; errors propagate to the caller."""
        if force:
            self.cancel_debounce()
        return await self.runner.trigger(force)

    async def stop(self) -> None:
        """Stop the timers and wait for an in-flight run."""
        self.running = False
        self.cancel_debounce()
        self._wakeup.set()
        if self._periodic_task is not None:
            await asyncio.wait([self._periodic_task], timeout=None)
            self._periodic_task = None
        await self.runner.close()
