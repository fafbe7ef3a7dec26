"""
Sync Engine.

Replicates individual mutations between this device and the remote change
log without needing continuous connectivity.

States::

    disabled --enable_sync()--> enabled-idle --timer / sync_with_remote()--> syncing
        ^                            |                                          |
        +------disable_sync()--------+<-----------------------------------------+

One cycle:
    1. push  unsynced local events (oldest first); flip ``synced`` on ack
    2. pull  remote events newer than the watermark from other devices
    3. apply each pulled event once; the local log append shares the
             transaction with the data change
    4. advance the watermark to the pull's start time, only when push and
       pull both completed without a remote failure

Conflicts across devices resolve by last-applied-wins.  No vector clocks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncConnection

from posvault.db.connection import LocalStore
from posvault.db.models import BOOKKEEPING_TABLES
from posvault.db.values import coerce_row
from posvault.errors import RemoteError, StoreBusyError
from posvault.observability.metrics import MetricsCollector
from posvault.sync.change_log import ChangeLog
from posvault.sync.models import (
    ChangeEvent,
    Operation,
    SyncMetadata,
    SyncReport,
    SyncStatus,
)
from posvault.sync.remote import RemoteChangeLog
from posvault.utils.gate import StoreGate
from posvault.utils.idempotency import (
    EPOCH,
    MonotonicClock,
    generate_device_id,
    generate_uuid7,
    parse_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "sync.device_id"
WATERMARK_KEY = "sync.last_watermark"
ENABLED_KEY = "sync.enabled"

APPLIED = "applied"
DUPLICATE = "duplicate"
SKIPPED = "skipped"


class SyncEngine:
    """Push/pull replication of the local change log.

    Usage::

        engine = SyncEngine(store, ChangeLog(store), remote, gate)
        await engine.load()
        await engine.log_change("inventory_items", "UPDATE", "SKU001", {"quantity": 5})
        await engine.enable_sync()          # starts the 30 s timer
        report = await engine.sync_with_remote()
    """

    def __init__(
        self,
        store: LocalStore,
        change_log: ChangeLog,
        remote: RemoteChangeLog,
        gate: StoreGate,
        device_id: str = "",
        interval_seconds: float = 30.0,
        pull_lookback_seconds: float = 0.0,
        capture_changes_while_disabled: bool = True,
        key_column_for: Callable[[str], str] | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._log = change_log
        self._remote = remote
        self._gate = gate
        self._configured_device_id = device_id
        self._interval = interval_seconds
        self._lookback = timedelta(seconds=pull_lookback_seconds)
        self._capture_while_disabled = capture_changes_while_disabled
        self._key_column_for = key_column_for or (lambda table: "id")
        self._metrics = metrics

        self._clock = MonotonicClock()
        self._metadata: SyncMetadata | None = None
        self._running = False
        self._timer_task: asyncio.Task[None] | None = None
        self._cycle_task: asyncio.Task[SyncReport] | None = None

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def load(self) -> SyncMetadata:
        """Load persisted sync metadata, creating a device id on first run."""
        device_id = self._configured_device_id or await self._store.get_state(DEVICE_ID_KEY)
        if not device_id:
            device_id = generate_device_id()
            logger.info("Generated device id %s", device_id)
        watermark = await self._store.get_state(WATERMARK_KEY)
        enabled = await self._store.get_state(ENABLED_KEY, "0")

        self._metadata = SyncMetadata(
            device_id=device_id,
            last_sync_watermark=parse_iso(watermark) if watermark else EPOCH,
            sync_enabled=enabled == "1",
        )
        latest = await self._log.latest_timestamp(device_id)
        if latest is not None:
            self._clock.observe(latest)
        await self._save_metadata()
        await self._refresh_pending()
        return self._metadata

    @property
    def metadata(self) -> SyncMetadata:
        if self._metadata is None:
            raise RuntimeError("SyncEngine.load() has not been awaited")
        return self._metadata

    @property
    def device_id(self) -> str:
        return self.metadata.device_id

    @property
    def enabled(self) -> bool:
        return self.metadata.sync_enabled

    @property
    def watermark(self) -> datetime:
        return self.metadata.last_sync_watermark

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timer_active(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    async def _save_metadata(self) -> None:
        meta = self.metadata
        await self._store.set_state({
            DEVICE_ID_KEY: meta.device_id,
            WATERMARK_KEY: to_iso(meta.last_sync_watermark),
            ENABLED_KEY: "1" if meta.sync_enabled else "0",
        })

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def log_change(
        self,
        table: str,
        operation: Operation | str,
        record_id: Any,
        payload: Mapping[str, Any] | None = None,
        conn: AsyncConnection | None = None,
    ) -> ChangeEvent | None:
        """Record one local mutation for replication.

        Pass *conn* to make the log entry part of the caller's own
        transaction.  Returns None when sync is disabled and changes are not
        captured while disabled.
        """
        if not self.enabled and not self._capture_while_disabled:
            logger.debug("Sync disabled, not logging %s on %s", operation, table)
            return None

        event = ChangeEvent(
            id=generate_uuid7(),
            table_name=table,
            operation=Operation(operation),
            record_id=str(record_id),
            payload=coerce_row(payload or {}),
            timestamp=self._clock.now(),
            origin_device_id=self.device_id,
            synced=False,
        )
        await self._log.append(event, conn)
        if self._metrics is not None:
            self._metrics.pending_events.inc()
        logger.debug(
            "Logged change %s: %s %s/%s", event.id, event.operation.value, table, event.record_id,
        )
        return event

    # ------------------------------------------------------------------
    # Enable / disable / timer
    # ------------------------------------------------------------------

    async def enable_sync(self) -> None:
        self.metadata.sync_enabled = True
        await self._save_metadata()
        self.start_timer()
        logger.info("Sync enabled for device %s", self.device_id)

    async def disable_sync(self) -> None:
        """Stop the timer.  A cycle already running is allowed to finish."""
        self.metadata.sync_enabled = False
        await self._save_metadata()
        self.stop_timer()
        logger.info("Sync disabled for device %s", self.device_id)

    def start(self) -> None:
        """Resume the timer after a restart if sync was left enabled."""
        if self.enabled:
            self.start_timer()

    def start_timer(self) -> asyncio.Task[None]:
        if self.timer_active:
            return self._timer_task
        self._timer_task = asyncio.create_task(
            self._timer_loop(), name=f"posvault-sync-timer-{self.device_id}",
        )
        return self._timer_task

    def stop_timer(self) -> None:
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None

    async def _timer_loop(self) -> None:
        logger.info("Sync timer started (every %ss)", self._interval)
        while True:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                logger.info("Sync timer stopped")
                raise
            if not self.enabled:
                continue
            if self._running or (self._cycle_task is not None and not self._cycle_task.done()):
                logger.debug("Sync cycle still running; dropping timer fire")
                continue
            self._cycle_task = asyncio.create_task(
                self.sync_with_remote(), name=f"posvault-sync-cycle-{self.device_id}",
            )
            self._cycle_task.add_done_callback(self._on_cycle_done)

    @staticmethod
    def _on_cycle_done(task: asyncio.Task[SyncReport]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sync cycle crashed: %s", exc, exc_info=exc)

    async def cleanup(self) -> None:
        """Stop the timer and wait for an in-flight cycle to finish."""
        self.stop_timer()
        task = self._cycle_task
        if task is not None and not task.done():
            await asyncio.wait([task])
        self._cycle_task = None

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def sync_with_remote(self) -> SyncReport:
        """Run one push/pull cycle.

        Never raises for remote or per-event failures; the report says what
        happened.  Returns a ``skipped`` report when sync is disabled, a
        cycle is already running, or a restore holds the store.
        """
        if not self.enabled:
            return self._skipped("sync disabled")
        if self._running:
            return self._skipped("cycle already running")

        self._running = True
        started = time.monotonic()
        report = SyncReport()
        try:
            async with self._gate.shared("sync"):
                logger.info("Starting sync cycle for device %s", self.device_id)
                push_ok = await self._push(report)
                pull_started_at = utc_now()
                pull_ok = await self._pull(report)

                if push_ok and pull_ok:
                    self.metadata.last_sync_watermark = pull_started_at
                    await self._save_metadata()
                    report.watermark_advanced = True
                report.watermark = self.metadata.last_sync_watermark

                if not push_ok and not pull_ok:
                    report.status = SyncStatus.FAILED
                elif not (push_ok and pull_ok) or report.apply_failed:
                    report.status = SyncStatus.PARTIAL
        except StoreBusyError as exc:
            logger.info("Sync cycle skipped: %s", exc)
            report = self._skipped(str(exc))
            return report
        finally:
            self._running = False

        report.duration_seconds = round(time.monotonic() - started, 3)
        await self._refresh_pending()
        if self._metrics is not None:
            self._metrics.sync_cycles.labels(status=report.status.value).inc()
            self._metrics.sync_latency.observe(report.duration_seconds)
        logger.info(
            "Sync cycle %s: pushed=%d (failed %d) pulled=%d applied=%d duplicate=%d failed=%d",
            report.status.value, report.pushed, report.push_failed, report.pulled,
            report.applied, report.already_applied, report.apply_failed,
        )
        return report

    def _skipped(self, reason: str) -> SyncReport:
        if self._metrics is not None:
            self._metrics.sync_cycles.labels(status=SyncStatus.SKIPPED.value).inc()
        return SyncReport(status=SyncStatus.SKIPPED, reason=reason)

    async def _push(self, report: SyncReport) -> bool:
        pending = await self._log.pending(self.device_id)
        for event in pending:
            try:
                await self._remote.upsert(event)
            except RemoteError as exc:
                report.push_failed += 1
                report.errors.append(f"push {event.id}: {exc}")
                logger.warning("Failed to push change %s, will retry: %s", event.id, exc)
                continue
            try:
                await self._log.mark_synced(event.id)
            except Exception as exc:
                # still pending locally; the upsert is idempotent on the next push
                report.push_failed += 1
                report.errors.append(f"mark synced {event.id}: {exc}")
                logger.warning("Pushed change %s but could not mark it synced: %s", event.id, exc)
                continue
            report.pushed += 1
            if self._metrics is not None:
                self._metrics.events_pushed.inc()
        if pending:
            logger.info("Pushed %d/%d local changes", report.pushed, len(pending))
        return report.push_failed == 0

    async def _pull(self, report: SyncReport) -> bool:
        since = self.metadata.last_sync_watermark - self._lookback
        try:
            events = await self._remote.fetch_since(since, self.device_id)
        except RemoteError as exc:
            report.errors.append(f"pull: {exc}")
            logger.warning("Failed to pull remote changes: %s", exc)
            return False

        report.pulled = len(events)
        for event in events:
            await self._apply_pulled(event, report)
        if events:
            logger.info("Pulled %d remote changes (%d applied)", len(events), report.applied)
        return True

    async def _apply_pulled(self, event: ChangeEvent, report: SyncReport) -> None:
        try:
            result = await self.apply_remote_event(event)
        except Exception as exc:
            report.apply_failed += 1
            report.errors.append(f"apply {event.id}: {exc}")
            logger.warning(
                "Failed to apply remote change %s (%s on %s): %s",
                event.id, event.operation.value, event.table_name, exc,
            )
            return
        if result == APPLIED:
            report.applied += 1
            if self._metrics is not None:
                self._metrics.events_pulled.inc()
        elif result == DUPLICATE:
            report.already_applied += 1
        else:
            report.apply_failed += 1

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply_remote_event(self, event: ChangeEvent) -> str:
        """Apply one remote event at most once.

        Returns ``"applied"``, ``"duplicate"`` (id already in the local log)
        or ``"skipped"`` (target table unknown here).  A failing statement
        raises and leaves both the table and the log untouched.
        """
        table = event.table_name
        async with self._store.transaction() as conn:
            if await self._log.exists(event.id, conn):
                return DUPLICATE
            if table in BOOKKEEPING_TABLES or not await self._store.table_exists(table, conn):
                logger.warning("Remote change %s targets unknown table %s, skipping", event.id, table)
                return SKIPPED

            key_column = self._key_column_for(table)
            if event.operation == Operation.INSERT:
                await self._store.insert(table, event.payload, conn)
            elif event.operation == Operation.UPDATE:
                updated = await self._store.update(
                    table, key_column, event.record_id, event.payload, conn,
                )
                if updated == 0:
                    logger.debug("Remote update %s matched no row in %s", event.id, table)
            else:
                await self._store.delete(table, key_column, event.record_id, conn)

            await self._log.append(event.model_copy(update={"synced": True}), conn)
        logger.debug("Applied remote change %s: %s on %s", event.id, event.operation.value, table)
        return APPLIED

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def pending_count(self) -> int:
        return await self._log.pending_count(self.device_id)

    async def _refresh_pending(self) -> None:
        if self._metrics is not None:
            self._metrics.pending_events.set(await self.pending_count())

    async def status(self) -> dict[str, Any]:
        meta = self.metadata
        return {
            "device_id": meta.device_id,
            "sync_enabled": meta.sync_enabled,
            "last_sync_watermark": to_iso(meta.last_sync_watermark),
            "running": self._running,
            "timer_active": self.timer_active,
            "pending": await self.pending_count(),
        }
