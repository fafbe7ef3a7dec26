"""
Local change log.

Append-only record of every mutation made on this device plus every remote
mutation applied here, stored in the ``sync_log`` bookkeeping table.  Rows
are never deleted; the only update is the one-way ``synced`` flip after the
remote log acknowledges a push.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from posvault.db.connection import LocalStore
from posvault.db.models import SyncLogRow
from posvault.sync.models import ChangeEvent
from posvault.utils.idempotency import parse_iso, to_iso

logger = logging.getLogger(__name__)

_table = SyncLogRow.__table__


def _to_event(row) -> ChangeEvent:
    return ChangeEvent(
        id=row.id,
        table_name=row.table_name,
        operation=row.operation,
        record_id=row.record_id,
        payload=row.data,
        timestamp=row.timestamp,
        origin_device_id=row.device_id,
        synced=bool(row.synced),
    )


class ChangeLog:
    """``sync_log`` access for the sync engine."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    @asynccontextmanager
    async def _write(self, conn: AsyncConnection | None) -> AsyncIterator[AsyncConnection]:
        if conn is not None:
            yield conn
            return
        async with self._store.transaction() as own:
            yield own

    async def append(self, event: ChangeEvent, conn: AsyncConnection | None = None) -> None:
        """Insert *event*.  Pass *conn* to join a caller's transaction."""
        async with self._write(conn) as c:
            await c.execute(
                insert(_table).values(
                    id=event.id,
                    table_name=event.table_name,
                    operation=event.operation.value,
                    record_id=event.record_id,
                    data=event.payload_json(),
                    timestamp=to_iso(event.timestamp),
                    device_id=event.origin_device_id,
                    synced=event.synced,
                )
            )

    async def exists(self, event_id: str, conn: AsyncConnection | None = None) -> bool:
        async with self._store.using(conn) as c:
            found = await c.scalar(select(_table.c.id).where(_table.c.id == event_id))
        return found is not None

    async def get(self, event_id: str) -> ChangeEvent | None:
        async with self._store.engine.connect() as conn:
            row = (await conn.execute(select(_table).where(_table.c.id == event_id))).first()
        return _to_event(row) if row is not None else None

    async def pending(self, device_id: str) -> list[ChangeEvent]:
        """Unsynced events created on *device_id*, oldest first."""
        async with self._store.engine.connect() as conn:
            result = await conn.execute(
                select(_table)
                .where(_table.c.synced.is_(False), _table.c.device_id == device_id)
                .order_by(_table.c.timestamp.asc(), _table.c.id.asc())
            )
            return [_to_event(r) for r in result]

    async def pending_count(self, device_id: str) -> int:
        async with self._store.engine.connect() as conn:
            count = await conn.scalar(
                select(func.count())
                .select_from(_table)
                .where(_table.c.synced.is_(False), _table.c.device_id == device_id)
            )
        return int(count or 0)

    async def mark_synced(self, event_id: str) -> bool:
        """Flip ``synced`` to true.  Returns False if it already was."""
        async with self._store.transaction() as conn:
            result = await conn.execute(
                update(_table)
                .where(_table.c.id == event_id, _table.c.synced.is_(False))
                .values(synced=True)
            )
        return result.rowcount > 0

    async def list_events(self, table_name: str | None = None) -> list[ChangeEvent]:
        """Every event, optionally for one table, in timestamp order."""
        stmt = select(_table).order_by(_table.c.timestamp.asc(), _table.c.id.asc())
        if table_name is not None:
            stmt = stmt.where(_table.c.table_name == table_name)
        async with self._store.engine.connect() as conn:
            return [_to_event(r) for r in await conn.execute(stmt)]

    async def latest_timestamp(self, device_id: str) -> datetime | None:
        """Newest timestamp this device has logged, if any."""
        async with self._store.engine.connect() as conn:
            value = await conn.scalar(
                select(func.max(_table.c.timestamp)).where(_table.c.device_id == device_id)
            )
        return parse_iso(value) if value else None
