"""Reference sync peer served with FastAPI."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import func

from .config import Settings
from .database import DatabaseManager, RemoteEventDB, from_db_time, to_db_time
from .models import SyncEventPayload, parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

ONE_MS = timedelta(milliseconds=1)


class SyncPeer:
    """Event storage of the reference peer.

    Every stored change is stamped with a strictly increasing receive time,
    and "changed since" is answered by receive time. A replica that uploads
    an old offline edit late therefore still reaches the others.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self.logger = logger.getChild('peer')
        self._lock = asyncio.Lock()
        self._clock: Optional[datetime] = None

    def _load_clock(self) -> datetime:
        if self._clock is None:
            with self.db.get_session() as session:
                latest = session.query(func.max(RemoteEventDB.received_at)).scalar()
            self._clock = from_db_time(latest) if latest else utc_now() - ONE_MS
        return self._clock

    def _next_stamp(self) -> datetime:
        self._clock = max(utc_now(), self._load_clock() + ONE_MS)
        return self._clock

    def _server_time(self) -> datetime:
        self._clock = max(utc_now(), self._load_clock())
        return self._clock

    def count(self) -> int:
        with self.db.get_session() as session:
            return session.query(RemoteEventDB).count()

    async def exchange(self, since: Optional[datetime], events: List[SyncEventPayload]) -> Dict[str, Any]:
        """Store incoming versions newest-wins and report what changed since ``since``."""
        async with self._lock:
            self._load_clock()
            incoming: Dict[str, datetime] = {}
            with self.db.get_session() as session:
                for payload in events:
                    version = payload.updated_at_value
                    if payload.id in incoming and incoming[payload.id] >= version:
                        continue
                    incoming[payload.id] = version

                    row = session.get(RemoteEventDB, payload.id)
                    if row is not None and from_db_time(row.updated_at) >= version:
                        continue
                    if row is None:
                        row = RemoteEventDB(sync_id=payload.id)
                        session.add(row)
                    row.payload = json.dumps(payload.to_wire())
                    row.updated_at = to_db_time(version)
                    row.received_at = to_db_time(self._next_stamp())
                    session.flush()
                session.commit()

                query = session.query(RemoteEventDB)
                if since is not None:
                    query = query.filter(RemoteEventDB.received_at > to_db_time(since))
                rows = query.order_by(RemoteEventDB.received_at).all()

                changes = []
                for row in rows:
                    sent = incoming.get(row.sync_id)
                    # Do not echo a version the caller already holds
                    if sent is not None and from_db_time(row.updated_at) <= sent:
                        continue
                    changes.append(json.loads(row.payload))

            server_time = self._server_time()

        self.logger.info(f"Stored {len(events)} incoming event(s), returned {len(changes)} change(s)")
        return {'events': changes, 'serverTime': to_iso(server_time)}


def create_app(settings: Settings, db_manager: Optional[DatabaseManager] = None) -> FastAPI:
    """Build the reference peer application."""
    db_manager = db_manager or DatabaseManager(settings)
    db_manager.init_db()

    app = FastAPI(title="coachsync peer", version="1.0")
    app.state.settings = settings
    app.state.peer = SyncPeer(db_manager)

    @app.get("/health")
    async def health():
        peer: SyncPeer = app.state.peer
        return {"ok": True, "events": peer.count()}

    @app.post("/sync/events")
    async def sync_events(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        since = None
        if body.get('since') is not None:
            since = parse_timestamp(body['since'])
            if since is None:
                return JSONResponse(status_code=400, content={"error": "invalid_since"})

        payloads = []
        raw_events = body.get('events')
        for raw in raw_events if isinstance(raw_events, list) else []:
            if not isinstance(raw, dict):
                continue
            try:
                payloads.append(SyncEventPayload.model_validate(raw))
            except ValidationError as e:
                logger.debug(f"Ignoring invalid incoming event {raw.get('id')!r}: {e}")

        try:
            return await app.state.peer.exchange(since, payloads)
        except Exception as e:
            logger.error(f"Failed to process sync request: {e}")
            return JSONResponse(status_code=500, content={"error": "sync_failed"})

    return app
