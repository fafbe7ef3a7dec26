"""
Wiring for one posvault instance.

The host process builds a single :class:`VaultContext` at startup and passes
it (or the components it holds) to whatever needs them.  Nothing in posvault
reaches for a module-level instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from posvault.backup.decoder import SnapshotDecoder
from posvault.backup.exporter import SnapshotExporter
from posvault.backup.ledger import VersionLedger
from posvault.backup.repository import (
    BackupRepository,
    InMemoryRepository,
    LocalDirectoryRepository,
    SupabaseStorageRepository,
)
from posvault.backup.restore import RestoreEngine
from posvault.config.settings import PosVaultSettings
from posvault.db.connection import LocalStore
from posvault.observability.metrics import MetricsCollector
from posvault.sync.change_log import ChangeLog
from posvault.sync.engine import SyncEngine
from posvault.sync.remote import InMemoryChangeLog, RemoteChangeLog, SupabaseChangeLog
from posvault.transform.pipeline import TransformPipeline
from posvault.utils.gate import StoreGate

logger = logging.getLogger(__name__)


@dataclass
class VaultContext:
    """Every long-lived posvault component, built once."""
    settings: PosVaultSettings
    store: LocalStore
    gate: StoreGate
    pipeline: TransformPipeline
    repository: BackupRepository
    remote: RemoteChangeLog
    exporter: SnapshotExporter
    decoder: SnapshotDecoder
    restore: RestoreEngine
    ledger: VersionLedger
    change_log: ChangeLog
    sync: SyncEngine
    metrics: MetricsCollector
    opened: bool = field(default=False)

    async def open(self) -> None:
        """Connect the store, create bookkeeping tables and load sync state."""
        if self.opened:
            return
        await self.store.connect()
        await self.store.create_tables()
        await self.sync.load()
        self.metrics.current_version.set(await self.ledger.current_version())
        self.opened = True

    async def close(self) -> None:
        """Stop background tasks and release connections."""
        self.ledger.stop_periodic()
        await self.sync.cleanup()
        for client in (self.repository, self.remote):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        await self.store.disconnect()
        self.opened = False


def build_repository(settings: PosVaultSettings) -> BackupRepository:
    backend = settings.backup_backend.lower()
    if backend == "supabase":
        if not (settings.supabase_url and settings.supabase_key):
            raise ValueError("backup_backend=supabase requires supabase_url and supabase_key")
        return SupabaseStorageRepository(
            settings.supabase_url,
            settings.supabase_key,
            bucket=settings.supabase_bucket,
            timeout_seconds=settings.http_timeout_seconds,
            signed_url_ttl=settings.signed_url_ttl_seconds,
        )
    if backend == "local":
        return LocalDirectoryRepository(settings.backup_local_dir)
    if backend == "memory":
        return InMemoryRepository()
    raise ValueError(f"unknown backup_backend: {settings.backup_backend}")


def build_remote(settings: PosVaultSettings) -> RemoteChangeLog:
    if settings.supabase_url and settings.supabase_key:
        return SupabaseChangeLog(
            settings.supabase_url,
            settings.supabase_key,
            table=settings.supabase_sync_table,
            timeout_seconds=settings.http_timeout_seconds,
            page_size=settings.sync_pull_page_size,
        )
    logger.warning("Supabase not configured; change log replicates in-process only")
    return InMemoryChangeLog()


def build_context(
    settings: PosVaultSettings,
    repository: Optional[BackupRepository] = None,
    remote: Optional[RemoteChangeLog] = None,
    metrics: Optional[MetricsCollector] = None,
) -> VaultContext:
    """Build (but do not open) every component from *settings*.

    *repository*, *remote* and *metrics* override what the settings select,
    which is how tests inject in-memory collaborators.
    """
    store = LocalStore(settings.database_url, timeout=settings.database_timeout_seconds)
    gate = StoreGate()
    pipeline = TransformPipeline.from_settings(settings)
    repository = repository if repository is not None else build_repository(settings)
    remote = remote if remote is not None else build_remote(settings)
    metrics = metrics if metrics is not None else MetricsCollector(settings.prometheus_port)

    exporter = SnapshotExporter(
        store,
        repository,
        pipeline,
        gate,
        tables=settings.export_tables,
        format_version=settings.export_format_version,
        name_prefix=settings.backup_name_prefix,
    )
    decoder = SnapshotDecoder(pipeline)
    restore = RestoreEngine(
        store,
        repository,
        decoder,
        gate,
        name_prefix=settings.backup_name_prefix,
        metrics=metrics,
    )
    ledger = VersionLedger(
        store,
        exporter,
        restore,
        repository,
        keep_count=settings.backup_keep_count,
        rollback_log_retention_days=settings.rollback_log_retention_days,
        metrics=metrics,
    )
    change_log = ChangeLog(store)
    sync = SyncEngine(
        store,
        change_log,
        remote,
        gate,
        device_id=settings.device_id,
        interval_seconds=settings.sync_interval_seconds,
        pull_lookback_seconds=settings.sync_pull_lookback_seconds,
        capture_changes_while_disabled=settings.capture_changes_while_disabled,
        key_column_for=settings.key_column_for,
        metrics=metrics,
    )
    return VaultContext(
        settings=settings,
        store=store,
        gate=gate,
        pipeline=pipeline,
        repository=repository,
        remote=remote,
        exporter=exporter,
        decoder=decoder,
        restore=restore,
        ledger=ledger,
        change_log=change_log,
        sync=sync,
        metrics=metrics,
    )
