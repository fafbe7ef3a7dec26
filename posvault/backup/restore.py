"""
Restore engine.

Replaces the contents of the local application tables with a decoded
snapshot.  The whole apply runs in one local-store transaction while the
store gate is held exclusively:

1. tables missing from the live schema, and bookkeeping tables, are skipped
2. each restored table is emptied and its auto-increment counter reset
3. every row is inserted inside its own SAVEPOINT; a failing row is logged,
   reported as skipped, and the restore carries on
4. anything else aborts and rolls back the whole transaction

Decoding happens before the gate is taken, so a corrupt backup never
touches local state.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection

from posvault.backup.decoder import SnapshotDecoder
from posvault.backup.models import RecordOutcome, RecordStatus, RestoreReport
from posvault.backup.repository import BackupRepository
from posvault.db.connection import LocalStore
from posvault.db.models import BOOKKEEPING_TABLES
from posvault.errors import (
    NoBackupFilesError,
    PosVaultError,
    RecordApplyError,
    TransactionError,
)
from posvault.observability.metrics import MetricsCollector
from posvault.utils.gate import StoreGate

logger = logging.getLogger(__name__)

_STAMP = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}(?:-\d{6})?Z)\.json$")


def _recency_key(name: str) -> tuple[str, str]:
    match = _STAMP.search(name)
    return (match.group(1) if match else "", name)


class RestoreEngine:
    """Applies snapshots to the local store."""

    def __init__(
        self,
        store: LocalStore,
        repository: BackupRepository,
        decoder: SnapshotDecoder,
        gate: StoreGate,
        name_prefix: str = "posvault-backup",
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._decoder = decoder
        self._gate = gate
        self._prefix = name_prefix
        self._metrics = metrics

    # -- entry points ----------------------------------------------------------

    async def restore_blob(self, name: str) -> RestoreReport:
        """Download *name* from the repository and restore it."""
        logger.info("Restoring from backup %s", name)
        try:
            content = await self._repository.get(name)
        except PosVaultError:
            self._count("blob", "failed")
            raise
        return await self._restore(content, source=name, kind="blob")

    async def restore_latest(self, user_id: str | None = None) -> RestoreReport:
        """Restore the newest backup, preferring *user_id*'s own backups.

        Raises:
            NoBackupFilesError: the repository holds no matching backup.
        """
        name = await self.latest_blob_name(user_id)
        if name is None:
            self._count("latest", "failed")
            raise NoBackupFilesError("No backup files found")
        content = await self._repository.get(name)
        return await self._restore(content, source=name, kind="latest")

    async def import_content(self, content: bytes | str) -> RestoreReport:
        """Restore from content supplied directly (a file the user picked)."""
        return await self._restore(content, source="import", kind="import")

    async def latest_blob_name(self, user_id: str | None = None) -> str | None:
        """Name of the newest backup, or None.

        With *user_id*, backups named for that user win; when there are
        none, the newest backup not tied to any user is used.
        """
        blobs = [b.name for b in await self._repository.list() if b.name.startswith(self._prefix + "-")]
        if user_id:
            own = [n for n in blobs if n.startswith(f"{self._prefix}-{user_id}-")]
            if own:
                return max(own, key=_recency_key)
            generic = [n for n in blobs if re.match(rf"{re.escape(self._prefix)}-\d{{4}}-", n)]
            if generic:
                logger.info("No backups for user %s, falling back to generic backups", user_id)
                return max(generic, key=_recency_key)
            return None
        return max(blobs, key=_recency_key) if blobs else None

    # -- internals -------------------------------------------------------------

    async def _restore(self, content: bytes | str, source: str, kind: str) -> RestoreReport:
        started = time.monotonic()
        try:
            document, strategy = self._decoder.decode(content)
        except PosVaultError:
            self._count(kind, "failed")
            raise

        try:
            async with self._gate.exclusive(f"restore:{kind}"):
                report = await self._apply(document["data"])
        except PosVaultError:
            self._count(kind, "failed")
            raise

        report.source = source
        report.strategy = strategy
        report.duration_seconds = round(time.monotonic() - started, 3)
        self._count(kind, "success")
        if self._metrics is not None:
            for outcome in report.outcomes:
                if outcome.status == RecordStatus.SKIPPED:
                    self._metrics.records_skipped.labels(table=outcome.table).inc()
        logger.info(
            "Restore from %s complete: %d tables, %d rows inserted, %d skipped (%.3fs)",
            source, len(report.tables_restored), report.inserted, report.skipped,
            report.duration_seconds,
        )
        return report

    async def _apply(self, data: dict[str, Any]) -> RestoreReport:
        report = RestoreReport()
        try:
            async with self._store.transaction() as conn:
                existing = set(await self._store.list_tables(conn))
                for table, rows in data.items():
                    if table in BOOKKEEPING_TABLES:
                        logger.warning("Refusing to restore bookkeeping table %s", table)
                        report.skipped_tables.append(table)
                        continue
                    if table not in existing:
                        logger.warning("Table %s does not exist locally, skipping", table)
                        report.skipped_tables.append(table)
                        continue
                    if not isinstance(rows, list):
                        logger.warning("Table %s has no row list in backup, skipping", table)
                        report.skipped_tables.append(table)
                        continue
                    await self._replace_table(conn, table, rows, report)
                    report.tables_restored.append(table)
        except PosVaultError:
            raise
        except Exception as exc:
            logger.error("Restore transaction rolled back: %s", exc)
            raise TransactionError(f"Restore failed and was rolled back: {exc}") from exc
        return report

    async def _replace_table(
        self,
        conn: AsyncConnection,
        table: str,
        rows: list[Any],
        report: RestoreReport,
    ) -> None:
        deleted = await self._store.delete_all(table, conn)
        await self._store.reset_auto_increment(table, conn)
        logger.debug("Cleared %d rows from %s", deleted, table)

        for index, row in enumerate(rows):
            if not isinstance(row, dict) or not row:
                logger.warning("Skipping %s[%d]: not a row object", table, index)
                report.outcomes.append(RecordOutcome(
                    table=table, index=index, status=RecordStatus.SKIPPED,
                    reason="not a row object",
                ))
                continue
            try:
                async with conn.begin_nested():
                    await self._store.insert(table, row, conn)
            except Exception as exc:  # constraint, binding and range errors alike
                error = RecordApplyError(table, index, str(exc).splitlines()[0] if str(exc) else repr(exc))
                logger.warning("Skipping row: %s", error)
                report.outcomes.append(RecordOutcome(
                    table=table, index=index, status=RecordStatus.SKIPPED,
                    reason=error.reason,
                ))
                continue
            report.outcomes.append(RecordOutcome(
                table=table, index=index, status=RecordStatus.INSERTED,
            ))

    def _count(self, kind: str, status: str) -> None:
        if self._metrics is not None:
            self._metrics.restores.labels(source=kind, status=status).inc()
