"""Offline-first event synchronization against a remote peer.

A round trip sends the local changes the peer has not acknowledged yet, in
batches, and applies whatever the peer reports as changed since the last
watermark. Conflicts are settled by the ``updatedAt`` version stamp: the
newest version of an event wins on both sides.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .database import EventStore, UpsertResult
from .models import SyncEventPayload, SyncReport, parse_timestamp, to_iso, utc_now
from .scheduler import CoalescingRunner, SyncState
from .sync_state import ChangeSetBuilder, SyncCursorStore

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for event synchronization failures."""
    pass


class SyncNetworkError(SyncError):
    """The peer could not be reached."""
    pass


class SyncProtocolError(SyncError):
    """The peer answered with an error or an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncProtocolClient:
    """Client side of the ``POST /sync/events`` protocol."""

    def __init__(
        self,
        store: EventStore,
        cursor_store: SyncCursorStore,
        http_client: httpx.AsyncClient,
        settings: Settings,
    ):
        self.store = store
        self.cursor_store = cursor_store
        self.http = http_client
        self.settings = settings
        self.config = settings.sync_config
        self.builder = ChangeSetBuilder(store)
        self.runner = CoalescingRunner(
            self.run_round_trip,
            retrigger_delay=self.config.retrigger_delay_seconds,
            name='event_sync',
        )
        self.retry_wait = wait_exponential(multiplier=0.5, min=0.5, max=5)
        self.logger = logger.getChild('client')

    @property
    def state(self) -> SyncState:
        return self.runner.state

    async def trigger(self, force: bool = False) -> Optional[SyncReport]:
        """Request a round trip; coalesces with one already running."""
        return await self.runner.trigger(force)

    def _should_contact_peer(self, force: bool, has_outgoing: bool) -> bool:
        cursor = self.cursor_store.cursor
        if force or has_outgoing or cursor.last_sync_at is None or cursor.last_remote_sync_at is None:
            return True
        elapsed = utc_now() - cursor.last_remote_sync_at
        return elapsed >= timedelta(seconds=self.config.min_remote_pull_interval_seconds)

    async def run_round_trip(self, force: bool = False) -> SyncReport:
        """Exchange deltas with the peer once.

        Raises:
            SyncNetworkError: The peer was unreachable
            SyncProtocolError: The peer rejected a batch
        """
        cursor = self.cursor_store.cursor
        scan_started = utc_now()
        since = cursor.last_sync_at
        outgoing = await self.builder.build(cursor)

        if not self._should_contact_peer(force, bool(outgoing)):
            self.logger.debug("Skipping peer round trip, pulled recently")
            return SyncReport(skipped=True)

        chunks = ChangeSetBuilder.chunk(outgoing, self.config.batch_size)
        remote: Dict[str, SyncEventPayload] = {}
        latest_server_time: Optional[datetime] = None
        dropped = 0

        for chunk in chunks:
            data = await self._post_chunk(since, chunk)
            for raw in data.get('events') or []:
                payload = self._parse_remote(raw)
                if payload is None:
                    dropped += 1
                    continue
                existing = remote.get(payload.id)
                if existing is None or payload.updated_at_value > existing.updated_at_value:
                    remote[payload.id] = payload
            server_time = parse_timestamp(data.get('serverTime'))
            if server_time is not None:
                if latest_server_time is None or server_time > latest_server_time:
                    latest_server_time = server_time
            for item in chunk:
                self.cursor_store.acknowledge(item.id, item.updated_at)

        report = await self.apply_remote_changes(remote.values())
        report.sent = len(outgoing)
        report.chunks = len(chunks)
        report.received = len(remote)
        report.dropped += dropped

        cursor.last_sync_at = latest_server_time or utc_now()
        cursor.last_remote_sync_at = utc_now()
        cursor.last_local_scan_at = scan_started - timedelta(milliseconds=1)
        self.cursor_store.save(cursor)
        report.server_time = cursor.last_sync_at

        self.logger.info(
            f"Sync round trip: sent {report.sent} in {report.chunks} batch(es), "
            f"received {report.received} ({report.inserted} new, {report.updated} updated, "
            f"{report.unchanged} unchanged, {report.dropped} dropped)"
        )
        return report

    async def _post_chunk(self, since: Optional[datetime], chunk: List[SyncEventPayload]) -> Dict[str, Any]:
        body = {
            'since': to_iso(since) if since else None,
            'events': [item.to_wire() for item in chunk],
        }
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.sync_retry_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await self.http.post(self.settings.sync_endpoint, json=body)
        except httpx.TransportError as e:
            raise SyncNetworkError(f"Sync peer unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            message = None
            if isinstance(data, dict):
                message = data.get('error') or data.get('detail')
            raise SyncProtocolError(
                str(message or response.reason_phrase or "Sync failed"),
                status_code=response.status_code,
            )
        if not isinstance(data, dict):
            raise SyncProtocolError("Sync response is not a JSON object", status_code=response.status_code)
        return data

    def _parse_remote(self, raw: Any) -> Optional[SyncEventPayload]:
        if isinstance(raw, SyncEventPayload):
            return raw
        if not isinstance(raw, dict):
            return None
        try:
            return SyncEventPayload.model_validate(raw)
        except ValidationError as e:
            self.logger.debug(f"Dropping malformed remote event {raw.get('id')!r}: {e}")
            return None

    async def apply_remote_changes(
        self,
        changes: Iterable[Union[SyncEventPayload, Dict[str, Any]]],
    ) -> SyncReport:
        """Apply remote versions to the local store, newest version winning.

        Runs with store notifications suppressed so applied changes are not
        queued as outgoing local edits. Versions now held locally are recorded
        as acknowledged by the peer.
        """
        report = SyncReport()
        with self.store.suppress_notifications():
            for raw in changes:
                payload = self._parse_remote(raw)
                if payload is None or payload.start is None:
                    report.dropped += 1
                    continue
                result = await self.store.upsert_by_sync_id(payload.to_event())
                if result == UpsertResult.INSERTED:
                    report.inserted += 1
                elif result == UpsertResult.UPDATED:
                    report.updated += 1
                elif result == UpsertResult.UNCHANGED:
                    report.unchanged += 1
                else:
                    # Local copy is newer; it goes out on the next round trip
                    report.stale += 1
                    continue
                self.cursor_store.acknowledge(payload.id, payload.updated_at)
        return report
