"""
Snapshot exporter.

Reads the allow-listed application tables into one canonical document::

    {
      "metadata": {"exportDate": "2024-05-01T10:00:00.000000+00:00", "version": "1.0.0"},
      "data": {"users": [...], "inventory_items": [...], ...}
    }

then protects it (compress + encrypt) and uploads it to the backup
repository under a lexically sortable blob name.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from posvault.backup.models import Snapshot
from posvault.backup.repository import BackupRepository
from posvault.config.settings import DEFAULT_EXPORT_TABLES
from posvault.db.connection import LocalStore
from posvault.db.models import BOOKKEEPING_TABLES
from posvault.transform.pipeline import TransformPipeline
from posvault.utils.gate import StoreGate
from posvault.utils.idempotency import (
    backup_blob_name,
    generate_uuid7,
    hash_bytes,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def serialize_document(document: dict[str, Any]) -> bytes:
    """Canonical UTF-8 JSON encoding of an export document."""
    return json.dumps(document, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class SnapshotExporter:
    """Exports the local store and stores protected snapshots.

    Usage::

        exporter = SnapshotExporter(store, repository, pipeline, gate)
        snapshot = await exporter.backup(user_id="cashier-1")
    """

    def __init__(
        self,
        store: LocalStore,
        repository: BackupRepository,
        pipeline: TransformPipeline,
        gate: StoreGate,
        tables: list[str] | None = None,
        format_version: str = "1.0.0",
        name_prefix: str = "posvault-backup",
    ) -> None:
        self._store = store
        self._repository = repository
        self._pipeline = pipeline
        self._gate = gate
        self._tables = list(tables if tables is not None else DEFAULT_EXPORT_TABLES)
        self._format_version = format_version
        self._name_prefix = name_prefix

    @property
    def tables(self) -> list[str]:
        return list(self._tables)

    async def export(self) -> dict[str, Any]:
        """Read every allow-listed table inside one read transaction.

        Tables that do not exist, or fail to read, are exported as empty
        lists.  Raises StoreBusyError while a restore holds the store.
        """
        data: dict[str, list[dict[str, Any]]] = {}
        async with self._gate.shared("export"):
            async with self._store.engine.connect() as conn:
                async with conn.begin():
                    existing = set(await self._store.list_tables(conn))
                    for table in self._tables:
                        if table in BOOKKEEPING_TABLES or table not in existing:
                            logger.debug("Table %s not present, exporting as empty", table)
                            data[table] = []
                            continue
                        try:
                            data[table] = await self._store.read_all(table, conn)
                        except SQLAlchemyError as exc:
                            logger.warning("Failed to read table %s, exporting as empty: %s", table, exc)
                            data[table] = []

        document = {
            "metadata": {
                "exportDate": to_iso(utc_now()),
                "version": self._format_version,
            },
            "data": data,
        }
        logger.info(
            "Exported %d tables (%d rows)",
            len(data), sum(len(rows) for rows in data.values()),
        )
        return document

    async def backup(self, user_id: str | None = None) -> Snapshot:
        """Export, protect and upload one snapshot.

        Raises:
            StoreBusyError: a restore is in progress.
            RemoteError: the upload failed.
        """
        document = await self.export()
        raw = serialize_document(document)
        payload, stages = self._pipeline.protect(raw)

        created_at: datetime = utc_now()
        name = backup_blob_name(self._name_prefix, created_at, user_id)
        await self._repository.put(name, payload)

        snapshot = Snapshot(
            id=generate_uuid7(),
            blob_name=name,
            created_at=created_at,
            size_bytes=len(payload),
            checksum=hash_bytes(payload),
            stages=stages,
        )
        logger.info(
            "Stored backup %s (%d bytes, %.2f%% saved, stages=%s)",
            name,
            len(payload),
            TransformPipeline.compression_ratio(raw, payload),
            ",".join(stages) or "none",
        )
        return snapshot

    async def export_to_file(self, path: str | os.PathLike[str]) -> Path:
        """Write a protected export to a local file and return its path."""
        document = await self.export()
        payload, _ = self._pipeline.protect(serialize_document(document))
        target = Path(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".tmp")
            with open(tmp, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)

        await asyncio.to_thread(_write)
        logger.info("Exported database to %s (%d bytes)", target, len(payload))
        return target
