"""
Backup repositories: durable blob storage for snapshot payloads.

Every repository offers the same five calls::

    await repo.put(name, data)
    url = await repo.signed_url(name, ttl_seconds)
    data = await repo.get(name)
    blobs = await repo.list()           # newest name first
    await repo.remove([name, ...])

Blob names embed a sortable UTC timestamp, so lexical order of names equals
recency order.  Implementations:

    SupabaseStorageRepository   Supabase Storage REST API via aiohttp
    LocalDirectoryRepository    a directory on the device / a mounted share
    InMemoryRepository          tests and offline operation
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp

from posvault.backup.models import BlobInfo
from posvault.errors import RemoteError
from posvault.utils.idempotency import parse_iso, utc_now
from posvault.utils.supabase import SupabaseClient

logger = logging.getLogger(__name__)


@runtime_checkable
class BackupRepository(Protocol):
    """Durable blob storage for snapshots."""

    async def put(self, name: str, data: bytes) -> None:
        ...

    async def signed_url(self, name: str, ttl_seconds: int = 60) -> str:
        ...

    async def get(self, name: str) -> bytes:
        ...

    async def list(self) -> list[BlobInfo]:
        ...

    async def remove(self, names: list[str]) -> None:
        ...


def _check_name(name: str) -> str:
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValueError(f"invalid blob name: {name!r}")
    return name


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryRepository:
    """Dict-backed repository for tests and offline operation."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self._updated: dict[str, datetime] = {}

    async def put(self, name: str, data: bytes) -> None:
        self.blobs[_check_name(name)] = bytes(data)
        self._updated[name] = utc_now()

    async def signed_url(self, name: str, ttl_seconds: int = 60) -> str:
        if name not in self.blobs:
            raise RemoteError(f"Object not found: {name}", status=404)
        return f"memory://{quote(name)}?ttl={ttl_seconds}"

    async def get(self, name: str) -> bytes:
        try:
            return self.blobs[name]
        except KeyError:
            raise RemoteError(f"Object not found: {name}", status=404) from None

    async def list(self) -> list[BlobInfo]:
        return [
            BlobInfo(name=n, size=len(self.blobs[n]), updated_at=self._updated.get(n))
            for n in sorted(self.blobs, reverse=True)
        ]

    async def remove(self, names: list[str]) -> None:
        for name in names:
            self.blobs.pop(name, None)
            self._updated.pop(name, None)


# ---------------------------------------------------------------------------
# Local directory
# ---------------------------------------------------------------------------


class LocalDirectoryRepository:
    """Stores each blob as a file under *root*.

    Writes go to a temporary file that is fsynced and then atomically
    renamed over the target, so a crash never leaves a truncated blob.
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self._root / _check_name(name)

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    async def put(self, name: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._write_atomic, self._path(name), data)
        except OSError as exc:
            raise RemoteError(f"Failed to write {name}: {exc}") from exc

    async def signed_url(self, name: str, ttl_seconds: int = 60) -> str:
        path = self._path(name)
        if not path.exists():
            raise RemoteError(f"Object not found: {name}", status=404)
        return path.resolve().as_uri()

    async def get(self, name: str) -> bytes:
        try:
            return await asyncio.to_thread(self._path(name).read_bytes)
        except FileNotFoundError:
            raise RemoteError(f"Object not found: {name}", status=404) from None
        except OSError as exc:
            raise RemoteError(f"Failed to read {name}: {exc}") from exc

    async def list(self) -> list[BlobInfo]:
        def _scan() -> list[BlobInfo]:
            blobs = []
            for entry in self._root.iterdir():
                if not entry.is_file() or entry.name.endswith(".tmp"):
                    continue
                stat = entry.stat()
                blobs.append(
                    BlobInfo(
                        name=entry.name,
                        size=stat.st_size,
                        updated_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    )
                )
            blobs.sort(key=lambda b: b.name, reverse=True)
            return blobs

        try:
            return await asyncio.to_thread(_scan)
        except OSError as exc:
            raise RemoteError(f"Failed to list {self._root}: {exc}") from exc

    async def remove(self, names: list[str]) -> None:
        for name in names:
            try:
                await asyncio.to_thread(self._path(name).unlink, missing_ok=True)
            except OSError as exc:
                raise RemoteError(f"Failed to remove {name}: {exc}") from exc


# ---------------------------------------------------------------------------
# Supabase Storage
# ---------------------------------------------------------------------------


class SupabaseStorageRepository(SupabaseClient):
    """Supabase Storage bucket accessed through its REST API.

    Downloads go through a short-lived signed URL, the same path the mobile
    client uses, so bucket policies never need public read access.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        bucket: str = "backups",
        timeout_seconds: float = 30.0,
        signed_url_ttl: int = 60,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__("supabase-storage", base_url, api_key, timeout_seconds, session)
        self._bucket = bucket
        self._signed_url_ttl = signed_url_ttl

    def _object_url(self, *parts: str) -> str:
        path = "/".join(quote(p, safe="") for p in parts)
        return f"{self._base}/storage/v1/object/{path}"

    async def put(self, name: str, data: bytes) -> None:
        await self._request(
            "POST",
            self._object_url(self._bucket, _check_name(name)),
            data=data,
            headers={"Content-Type": "application/octet-stream", "x-upsert": "true"},
        )
        logger.debug("Uploaded %s (%d bytes) to bucket %s", name, len(data), self._bucket)

    async def signed_url(self, name: str, ttl_seconds: int = 60) -> str:
        payload = await self._request(
            "POST",
            self._object_url("sign", self._bucket, _check_name(name)),
            json={"expiresIn": ttl_seconds},
        )
        signed = None
        if isinstance(payload, dict):
            signed = payload.get("signedURL") or payload.get("signedUrl")
        if not signed:
            raise RemoteError(f"Supabase did not return a signed URL for {name}")
        if signed.startswith("http"):
            return signed
        return f"{self._base}/storage/v1{signed}"

    async def get(self, name: str) -> bytes:
        url = await self.signed_url(name, self._signed_url_ttl)
        return await self._request("GET", url, raw=True)

    async def list(self) -> list[BlobInfo]:
        payload = await self._request(
            "POST",
            self._object_url("list", self._bucket),
            json={
                "prefix": "",
                "limit": 1000,
                "offset": 0,
                "sortBy": {"column": "name", "order": "desc"},
            },
        )
        blobs = []
        for item in payload or []:
            name = item.get("name")
            if not name:
                continue
            meta = item.get("metadata") or {}
            updated = item.get("updated_at")
            blobs.append(
                BlobInfo(
                    name=name,
                    size=meta.get("size"),
                    updated_at=parse_iso(updated) if updated else None,
                )
            )
        blobs.sort(key=lambda b: b.name, reverse=True)
        return blobs

    async def remove(self, names: list[str]) -> None:
        if not names:
            return
        await self._request(
            "DELETE",
            self._object_url(self._bucket),
            json={"prefixes": list(names)},
        )
