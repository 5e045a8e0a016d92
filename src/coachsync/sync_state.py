"""Persisted sync cursor and outgoing change-set construction."""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .database import DatabaseManager, EventStore
from .models import SyncCursor, SyncEventPayload, sanitize_iso, to_iso

logger = logging.getLogger(__name__)


class SyncCursorStore:
    """Loads and persists the cursor of one sync channel.

    The cursor lives as a JSON blob in the ``sync_state`` table, keyed by
    channel name, so several replicas can share one database.
    """

    KEY_PREFIX = "sync_cursor:"

    def __init__(self, db_manager: DatabaseManager, channel: str = "events", cache_size: int = 1000):
        self.db = db_manager
        self.channel = channel
        self.cache_size = cache_size
        self.logger = logger.getChild('cursor')
        self._cursor: Optional[SyncCursor] = None

    @property
    def key(self) -> str:
        return f"{self.KEY_PREFIX}{self.channel}"

    @property
    def cursor(self) -> SyncCursor:
        if self._cursor is None:
            self._cursor = self.load()
        return self._cursor

    def load(self) -> SyncCursor:
        """Read the persisted cursor; corrupt state yields an empty cursor."""
        raw = self.db.get_state(self.key)
        if not raw:
            self._cursor = SyncCursor()
            return self._cursor
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("sync state is not an object")
            cursor = SyncCursor(
                last_sync_at=data.get('lastSyncAt'),
                last_remote_sync_at=data.get('lastRemoteSyncAt'),
                last_local_scan_at=data.get('lastLocalScanAt'),
                acknowledged_versions=data.get('syncedEvents') or {},
            )
        except (ValueError, ValidationError) as e:
            self.logger.warning(f"Discarding unreadable sync state for channel {self.channel}: {e}")
            cursor = SyncCursor()
        self._trim(cursor)
        self._cursor = cursor
        return cursor

    def save(self, cursor: Optional[SyncCursor] = None) -> None:
        cursor = cursor or self.cursor
        self._cursor = cursor
        self.db.set_state(self.key, json.dumps(self.serialize(cursor)))

    @staticmethod
    def serialize(cursor: SyncCursor) -> Dict[str, Any]:
        return {
            'lastSyncAt': to_iso(cursor.last_sync_at) if cursor.last_sync_at else None,
            'lastRemoteSyncAt': to_iso(cursor.last_remote_sync_at) if cursor.last_remote_sync_at else None,
            'lastLocalScanAt': to_iso(cursor.last_local_scan_at) if cursor.last_local_scan_at else None,
            'syncedEvents': dict(cursor.acknowledged_versions),
        }

    def acknowledge(self, sync_id: str, updated_at: str) -> None:
        """Record that the peer holds ``sync_id`` at version ``updated_at``."""
        value = sanitize_iso(updated_at)
        if not sync_id or value is None:
            return
        versions = self.cursor.acknowledged_versions
        versions.pop(sync_id, None)
        versions[sync_id] = value
        self._trim(self.cursor)

    def _trim(self, cursor: SyncCursor) -> None:
        versions = cursor.acknowledged_versions
        while len(versions) > self.cache_size:
            versions.pop(next(iter(versions)))

    def reset(self) -> None:
        """Forget all sync progress for this channel."""
        self.save(SyncCursor())


class ChangeSetBuilder:
    """Builds the list of local changes to send to the peer."""

    def __init__(self, store: EventStore):
        self.store = store

    async def build(self, cursor: SyncCursor) -> List[SyncEventPayload]:
        events = await self.store.list_changed_since(cursor.outgoing_since)
        payloads = []
        for event in events:
            try:
                payload = SyncEventPayload.from_event(event)
            except ValidationError as e:
                logger.warning(f"Skipping event {event.id} with invalid sync data: {e}")
                continue
            if payload is None:
                continue
            if cursor.is_acknowledged(payload.id, payload.updated_at):
                continue
            payloads.append(payload)
        return payloads

    @staticmethod
    def chunk(payloads: List[SyncEventPayload], size: int) -> List[List[SyncEventPayload]]:
        """Split payloads into POST batches; one empty batch when there is nothing to send."""
        if not payloads:
            return [[]]
        return [payloads[i:i + size] for i in range(0, len(payloads), size)]
