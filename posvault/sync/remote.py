"""
Remote change log clients.

The remote ``sync_log`` table holds every event any device has pushed.
Two operations are needed:

    upsert(event)                         idempotent on event id
    fetch_since(watermark, exclude_device)
        -> every event with timestamp > watermark, device_id != exclude_device,
           synced = true, ascending by (timestamp, id)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol, runtime_checkable

import aiohttp

from posvault.errors import RemoteError
from posvault.sync.models import ChangeEvent
from posvault.utils.idempotency import parse_iso, to_iso
from posvault.utils.supabase import SupabaseClient

logger = logging.getLogger(__name__)


@runtime_checkable
class RemoteChangeLog(Protocol):
    """Durable, shared log of change events."""

    async def upsert(self, event: ChangeEvent) -> None:
        ...

    async def fetch_since(self, watermark: datetime, exclude_device: str) -> list[ChangeEvent]:
        ...


class InMemoryChangeLog:
    """Shared in-process remote log.  Several sync engines may point at one."""

    def __init__(self) -> None:
        self.rows: dict[str, dict] = {}

    async def upsert(self, event: ChangeEvent) -> None:
        self.rows[event.id] = event.to_remote()

    async def fetch_since(self, watermark: datetime, exclude_device: str) -> list[ChangeEvent]:
        watermark = parse_iso(watermark)
        matched = [
            row for row in self.rows.values()
            if parse_iso(row["timestamp"]) > watermark
            and row["device_id"] != exclude_device
            and row["synced"]
        ]
        matched.sort(key=lambda r: (r["timestamp"], r["id"]))
        return [ChangeEvent.from_remote(row) for row in matched]


class SupabaseChangeLog(SupabaseClient):
    """``sync_log`` table behind Supabase PostgREST.

    PostgREST caps every response at its ``max-rows`` setting (1000 on
    Supabase), so ``fetch_since`` pages with ``offset``/``limit`` and stops
    at the first empty page.  A short page is not the end: the server cap
    may be lower than *page_size*.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "sync_log",
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        page_size: int = 1000,
    ) -> None:
        super().__init__("supabase-rest", base_url, api_key, timeout_seconds, session)
        self._table = table
        self._page_size = page_size

    @property
    def _url(self) -> str:
        return f"{self._base}/rest/v1/{self._table}"

    async def upsert(self, event: ChangeEvent) -> None:
        await self._request(
            "POST",
            self._url,
            params={"on_conflict": "id"},
            json=[event.to_remote()],
            headers={
                "Content-Type": "application/json",
                "Prefer": "resolution=merge-duplicates,return=minimal",
            },
        )

    async def fetch_since(self, watermark: datetime, exclude_device: str) -> list[ChangeEvent]:
        events: list[ChangeEvent] = []
        offset = 0
        while True:
            rows = await self._fetch_page(watermark, exclude_device, offset)
            if not rows:
                break
            offset += len(rows)
            for row in rows:
                try:
                    events.append(ChangeEvent.from_remote(row))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning(
                        "Ignoring malformed remote change %s: %s",
                        row.get("id") if isinstance(row, dict) else row, exc,
                    )
        return events

    async def _fetch_page(self, watermark: datetime, exclude_device: str, offset: int) -> list:
        payload = await self._request(
            "GET",
            self._url,
            params={
                "select": "*",
                "timestamp": f"gt.{to_iso(watermark)}",
                "device_id": f"neq.{exclude_device}",
                "synced": "eq.true",
                "order": "timestamp.asc,id.asc",
                "offset": str(offset),
                "limit": str(self._page_size),
            },
            headers={"Accept": "application/json"},
        )
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise RemoteError(f"unexpected {self._table} response: {type(payload).__name__}")
        return payload
