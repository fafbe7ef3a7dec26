"""
Version Ledger.

Catalogues stored snapshots under monotonically assigned version numbers
and rolls the local store back to any retained one:

- ``create_version`` exports, protects and uploads a snapshot, then records
  it as ``counter + 1``
- ``rollback_to`` restores a retained snapshot and moves the current-version
  pointer, with every attempt written to the rollback audit log
- ``cleanup_old_versions`` keeps the N highest versions
- periodic backups run as a background asyncio task

The version counter is the historical maximum ever assigned, kept apart from
the pointer, so versions created after a rollback never reuse a number.
All ledger state lives in the bookkeeping tables and survives restarts.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from posvault.backup.exporter import SnapshotExporter
from posvault.backup.models import (
    RollbackLogEntry,
    RollbackStatus,
    Snapshot,
    VersionRecord,
)
from posvault.backup.repository import BackupRepository
from posvault.backup.restore import RestoreEngine
from posvault.db.connection import LocalStore
from posvault.db.models import AppState, BackupVersionRow, RollbackLogRow
from posvault.errors import (
    PosVaultError,
    RemoteError,
    RollbackError,
    VersionNotFoundError,
)
from posvault.observability.metrics import MetricsCollector
from posvault.utils.idempotency import generate_uuid7, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

CURRENT_VERSION_KEY = "ledger.current_version"
VERSION_COUNTER_KEY = "ledger.version_counter"


def _to_record(row: BackupVersionRow) -> VersionRecord:
    snapshot = Snapshot(
        id=row.id,
        blob_name=row.blob_name,
        created_at=parse_iso(row.created_at),
        version=row.version,
        size_bytes=row.size_bytes or 0,
        checksum=row.checksum or "",
        stages=[s for s in (row.stages or "").split(",") if s],
    )
    return VersionRecord(snapshot=snapshot, version=row.version, description=row.description)


def _to_log_entry(row: RollbackLogRow) -> RollbackLogEntry:
    return RollbackLogEntry(
        id=row.id,
        timestamp=parse_iso(row.timestamp),
        from_version=row.from_version,
        to_version=row.to_version,
        status=RollbackStatus(row.status),
        error_message=row.error_message,
    )


class VersionLedger:
    """Numbered snapshot catalogue with rollback.

    Usage::

        ledger = VersionLedger(store, exporter, restore, repository)
        record = await ledger.create_version("before price update")
        await ledger.rollback_to(record.version)
        await ledger.cleanup_old_versions(keep=10)

        ledger.start_periodic(interval_seconds=3600)
    """

    def __init__(
        self,
        store: LocalStore,
        exporter: SnapshotExporter,
        restore: RestoreEngine,
        repository: BackupRepository,
        keep_count: int = 10,
        rollback_log_retention_days: int = 30,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._exporter = exporter
        self._restore = restore
        self._repository = repository
        self._keep_count = keep_count
        self._retention_days = rollback_log_retention_days
        self._metrics = metrics

        self._lock = asyncio.Lock()
        self._periodic_task: asyncio.Task[None] | None = None

    # -- version creation ------------------------------------------------------

    async def create_version(
        self,
        description: str | None = None,
        user_id: str | None = None,
    ) -> VersionRecord:
        """Take a snapshot and record it as the next version.

        Raises:
            StoreBusyError: a restore is in progress.
            RemoteError: the upload failed.
            SQLAlchemyError: the version record could not be written; the
                uploaded blob is removed again.
        """
        async with self._lock:
            try:
                snapshot = await self._exporter.backup(user_id)
            except PosVaultError:
                self._count_backup("failed")
                raise

            version = await self.version_counter() + 1
            snapshot = snapshot.model_copy(update={"version": version})

            try:
                await self._insert_version(snapshot, version, description)
            except SQLAlchemyError as exc:
                self._count_backup("failed")
                logger.error("Recording version %d failed, removing its blob: %s", version, exc)
                try:
                    await self._repository.remove([snapshot.blob_name])
                except RemoteError as remove_exc:
                    logger.error("Orphaned backup blob %s left behind: %s", snapshot.blob_name, remove_exc)
                raise

            self._count_backup("success")
            if self._metrics is not None:
                self._metrics.backup_size_bytes.observe(snapshot.size_bytes)
                self._metrics.current_version.set(version)
            logger.info("Created version %d (%s)", version, snapshot.blob_name)
            return VersionRecord(snapshot=snapshot, version=version, description=description)

    async def _insert_version(self, snapshot: Snapshot, version: int, description: str | None) -> None:
        async with self._store.get_session() as session:
            async with session.begin():
                session.add(BackupVersionRow(
                    id=snapshot.id,
                    version=version,
                    blob_name=snapshot.blob_name,
                    created_at=to_iso(snapshot.created_at),
                    description=description,
                    size_bytes=snapshot.size_bytes,
                    checksum=snapshot.checksum,
                    stages=",".join(snapshot.stages),
                ))
                await session.merge(AppState(key=VERSION_COUNTER_KEY, value=str(version)))
                await session.merge(AppState(key=CURRENT_VERSION_KEY, value=str(version)))

    # -- rollback --------------------------------------------------------------

    async def rollback_to(self, version: int) -> bool:
        """Restore the snapshot recorded as *version* and point at it.

        Newer versions are kept, so rolling forward again is a rollback too.

        Raises:
            VersionNotFoundError: *version* is not in the ledger.
            RollbackError: the restore failed and the pointer is unchanged, or
                the restore committed but could not be recorded.
        """
        async with self._lock:
            current = await self.current_version()
            entry = RollbackLogEntry(
                id=generate_uuid7(),
                timestamp=utc_now(),
                from_version=current,
                to_version=version,
            )

            record = await self.by_version(version)
            if record is None:
                error = VersionNotFoundError(version)
                entry.status = RollbackStatus.FAILED
                entry.error_message = str(error)
                await self._insert_log(entry)
                self._count_rollback("failed")
                logger.error("Rollback %d -> %d refused: %s", current, version, error)
                raise error

            await self._insert_log(entry)
            logger.info("Rolling back from version %d to %d", current, version)

            try:
                report = await self._restore.restore_blob(record.blob_name)
            except PosVaultError as exc:
                await self._finish_log(entry.id, RollbackStatus.FAILED, str(exc))
                self._count_rollback("failed")
                logger.error("Rollback %d -> %d failed: %s", current, version, exc)
                raise RollbackError(f"Rollback to version {version} failed: {exc}") from exc

            await self._record_rollback(entry.id, current, version)
            self._count_rollback("success")
            if self._metrics is not None:
                self._metrics.current_version.set(version)
            logger.info(
                "Rolled back to version %d (%d rows restored, %d skipped)",
                version, report.inserted, report.skipped,
            )
            return True

    async def _record_rollback(self, entry_id: str, current: int, version: int) -> None:
        """Mark *entry_id* successful and move the pointer, retrying once.

        The restore has already committed, so a second failure leaves the
        data at *version* with the pointer still at *current*.
        """
        try:
            await self._finish_log(entry_id, RollbackStatus.SUCCESS, None, pointer=version)
            return
        except SQLAlchemyError as exc:
            logger.warning("Recording rollback to version %d failed, retrying: %s", version, exc)
        try:
            await self._finish_log(entry_id, RollbackStatus.SUCCESS, None, pointer=version)
        except SQLAlchemyError as exc:
            self._count_rollback("failed")
            logger.error(
                "Data restored to version %d but the pointer still reads %d and "
                "rollback log %s is left as started: %s",
                version, current, entry_id, exc,
            )
            raise RollbackError(
                f"Restored version {version} but could not record it: {exc}"
            ) from exc

    async def _insert_log(self, entry: RollbackLogEntry) -> None:
        async with self._store.get_session() as session:
            async with session.begin():
                session.add(RollbackLogRow(
                    id=entry.id,
                    timestamp=to_iso(entry.timestamp),
                    from_version=entry.from_version,
                    to_version=entry.to_version,
                    status=entry.status.value,
                    error_message=entry.error_message,
                ))

    async def _finish_log(
        self,
        entry_id: str,
        status: RollbackStatus,
        error_message: str | None,
        pointer: int | None = None,
    ) -> None:
        async with self._store.get_session() as session:
            async with session.begin():
                await session.execute(
                    update(RollbackLogRow)
                    .where(RollbackLogRow.id == entry_id)
                    .values(status=status.value, error_message=error_message)
                )
                if pointer is not None:
                    await session.merge(AppState(key=CURRENT_VERSION_KEY, value=str(pointer)))

    # -- retention -------------------------------------------------------------

    async def cleanup_old_versions(self, keep: int | None = None) -> int:
        """Keep the *keep* highest versions; delete the others and their blobs.

        A blob that cannot be removed is logged and its record dropped anyway.

        Returns:
            Number of versions removed.
        """
        keep = self._keep_count if keep is None else keep
        if keep < 0:
            raise ValueError("keep must be >= 0")

        async with self._lock:
            versions = await self.list_versions()  # newest first
            to_remove = versions[keep:]
            if not to_remove:
                return 0

            names = [r.blob_name for r in to_remove]
            try:
                await self._repository.remove(names)
            except RemoteError as exc:
                logger.error("Failed to remove %d old backup blobs: %s", len(names), exc)

            async with self._store.get_session() as session:
                async with session.begin():
                    await session.execute(
                        delete(BackupVersionRow).where(
                            BackupVersionRow.version.in_([r.version for r in to_remove])
                        )
                    )

            logger.info(
                "Removed %d old versions (kept %d): %s",
                len(to_remove), len(versions) - len(to_remove),
                ", ".join(str(r.version) for r in to_remove),
            )
            return len(to_remove)

    # -- lookups ---------------------------------------------------------------

    async def by_version(self, version: int) -> VersionRecord | None:
        async with self._store.get_session() as session:
            row = await session.scalar(
                select(BackupVersionRow).where(BackupVersionRow.version == version)
            )
        return _to_record(row) if row is not None else None

    async def by_id(self, snapshot_id: str) -> VersionRecord | None:
        async with self._store.get_session() as session:
            row = await session.get(BackupVersionRow, snapshot_id)
        return _to_record(row) if row is not None else None

    async def latest(self) -> VersionRecord | None:
        """The highest retained version."""
        async with self._store.get_session() as session:
            row = await session.scalar(
                select(BackupVersionRow).order_by(BackupVersionRow.version.desc()).limit(1)
            )
        return _to_record(row) if row is not None else None

    async def list_versions(self) -> list[VersionRecord]:
        """All retained versions, newest first."""
        async with self._store.get_session() as session:
            rows = await session.scalars(
                select(BackupVersionRow).order_by(BackupVersionRow.version.desc())
            )
            return [_to_record(r) for r in rows]

    async def current_version(self) -> int:
        """Version the pointer is at; 0 before the first backup."""
        return int(await self._store.get_state(CURRENT_VERSION_KEY, "0"))

    async def version_counter(self) -> int:
        """Highest version number ever assigned."""
        stored = int(await self._store.get_state(VERSION_COUNTER_KEY, "0"))
        async with self._store.get_session() as session:
            highest = await session.scalar(select(func.max(BackupVersionRow.version)))
        return max(stored, highest or 0)

    # -- rollback audit --------------------------------------------------------

    async def rollback_logs(self, limit: int = 50) -> list[RollbackLogEntry]:
        """Most recent rollback attempts, newest first."""
        async with self._store.get_session() as session:
            rows = await session.scalars(
                select(RollbackLogRow)
                .order_by(RollbackLogRow.timestamp.desc())
                .limit(limit)
            )
            return [_to_log_entry(r) for r in rows]

    async def clear_old_rollback_logs(self, max_age_days: int | None = None) -> int:
        """Delete rollback log entries older than *max_age_days*.  Returns the count."""
        max_age_days = self._retention_days if max_age_days is None else max_age_days
        cutoff = to_iso(utc_now() - timedelta(days=max_age_days))
        async with self._store.get_session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RollbackLogRow).where(RollbackLogRow.timestamp < cutoff)
                )
        removed = result.rowcount or 0
        if removed:
            logger.info("Cleared %d rollback log entries older than %d days", removed, max_age_days)
        return removed

    async def reset_versioning(self) -> None:
        """Forget every version and rollback log entry.

        Stored blobs are left in the repository.
        """
        async with self._lock:
            async with self._store.get_session() as session:
                async with session.begin():
                    await session.execute(delete(BackupVersionRow))
                    await session.execute(delete(RollbackLogRow))
                    await session.merge(AppState(key=VERSION_COUNTER_KEY, value="0"))
                    await session.merge(AppState(key=CURRENT_VERSION_KEY, value="0"))
            if self._metrics is not None:
                self._metrics.current_version.set(0)
            logger.warning("Versioning reset: all version records and rollback logs cleared")

    # -- periodic backups ------------------------------------------------------

    async def schedule_periodic_backups(
        self,
        interval_seconds: float,
        keep: int | None = None,
    ) -> None:
        """Create a version every *interval_seconds*, then apply retention.

        Long-running coroutine meant for ``asyncio.create_task()``; runs until
        cancelled.  A failed cycle is logged and the loop continues.
        """
        logger.info("Starting periodic backups every %ss", interval_seconds)
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                record = await self.create_version("Scheduled backup")
                await self.cleanup_old_versions(keep)
                logger.info("Periodic backup created: version %d", record.version)
            except asyncio.CancelledError:
                logger.info("Periodic backup task cancelled")
                raise
            except Exception as exc:
                logger.error("Periodic backup failed: %s", exc)

    def start_periodic(
        self,
        interval_seconds: float,
        keep: int | None = None,
    ) -> asyncio.Task[None]:
        """Start periodic backups as a background task.

        Returns the ``asyncio.Task`` so the caller can cancel it later.
        """
        if self._periodic_task is not None and not self._periodic_task.done():
            logger.warning("Periodic backup task already running; not starting another")
            return self._periodic_task

        self._periodic_task = asyncio.create_task(
            self.schedule_periodic_backups(interval_seconds, keep),
            name="posvault-periodic-backup",
        )
        return self._periodic_task

    def stop_periodic(self) -> None:
        """Cancel the periodic backup task."""
        if self._periodic_task is not None and not self._periodic_task.done():
            self._periodic_task.cancel()
        self._periodic_task = None

    @property
    def periodic_running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    # -- metrics ---------------------------------------------------------------

    def _count_backup(self, status: str) -> None:
        if self._metrics is not None:
            self._metrics.backups.labels(status=status).inc()

    def _count_rollback(self, status: str) -> None:
        if self._metrics is not None:
            self._metrics.rollbacks.labels(status=status).inc()
