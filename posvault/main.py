"""posvault - Main Application Entry Point.

Brings up the backup and sync subsystem in order:
1. Configuration loading
2. Logging
3. Observability (metrics server)
4. Local store + bookkeeping tables
5. Sync metadata, sync timer
6. Periodic backups

Every user-triggered operation returns exactly one ``OperationOutcome``;
partial failures inside an operation are logged, never surfaced as extra
results.
"""

import asyncio
import json
import logging
import logging.config
import signal
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from posvault import __version__
from posvault.config.settings import PosVaultSettings, get_settings
from posvault.context import VaultContext, build_context
from posvault.errors import PosVaultError


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(log_level: str = "INFO", log_format: str = "json"):
    """Setup structured logging.

    Two modes are supported:
    - ``json``  -- machine-parseable JSON-ish format (default)
    - ``text``  -- human-readable format for local development

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: ``"json"`` or ``"text"``.
    """
    if log_format == "json":
        formatter = {
            "class": "logging.Formatter",
            "format": json.dumps({
                "time": "%(asctime)s",
                "level": "%(levelname)s",
                "module": "%(name)s",
                "message": "%(message)s",
            }),
        }
    else:
        formatter = {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        }
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
        "loggers": {
            # SQL echo and connection pool chatter stay at WARNING
            "sqlalchemy": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


logger = logging.getLogger(__name__)


class OperationOutcome(BaseModel):
    """The single result shown to the user for one operation."""
    operation: str
    ok: bool
    message: str
    detail: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Application orchestrator
# ---------------------------------------------------------------------------

class PosVaultApplication:
    """Owns the posvault context and exposes the user-facing operations.

    Usage::

        app = PosVaultApplication()
        await app.initialize()
        outcome = await app.backup("end of day")
        await app.run()        # blocks until shutdown signal
        await app.shutdown()
    """

    def __init__(
        self,
        settings: Optional[PosVaultSettings] = None,
        context: Optional[VaultContext] = None,
    ):
        self._settings = settings
        self._ctx = context
        self._shutdown_event = asyncio.Event()

    @property
    def context(self) -> VaultContext:
        if self._ctx is None:
            raise RuntimeError("PosVaultApplication not initialized")
        return self._ctx

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, configure_logging: bool = True):
        """Build and open the context, then start background tasks."""
        if self._settings is None:
            self._settings = self._ctx.settings if self._ctx is not None else get_settings()
        if configure_logging:
            setup_logging(self._settings.log_level, self._settings.log_format)

        logger.info("posvault %s starting (environment=%s)", __version__, self._settings.environment)

        if self._ctx is None:
            self._ctx = build_context(self._settings)
        ctx = self._ctx

        if self._settings.metrics_enabled:
            ctx.metrics.start_server()

        await ctx.open()
        ctx.metrics.set_build_info(__version__, ctx.sync.device_id, self._settings.environment)
        logger.info("Device: %s", ctx.sync.device_id)
        logger.info("Export tables: %s", ", ".join(ctx.exporter.tables))

        ctx.sync.start()
        if self._settings.backup_interval_seconds > 0:
            ctx.ledger.start_periodic(
                self._settings.backup_interval_seconds,
                keep=self._settings.backup_keep_count,
            )

    async def run(self):
        """Block until a shutdown signal arrives."""
        logger.info("posvault running")
        await self._shutdown_event.wait()

    def request_shutdown(self):
        self._shutdown_event.set()

    async def shutdown(self):
        """Stop background tasks and close connections."""
        logger.info("Shutting down posvault...")
        if self._ctx is not None and self._ctx.opened:
            try:
                await self._ctx.close()
            except (PosVaultError, SQLAlchemyError, OSError) as exc:
                logger.error("Error closing posvault context: %s", exc)
        logger.info("posvault shutdown complete")

    # ------------------------------------------------------------------
    # User-facing operations
    # ------------------------------------------------------------------

    async def backup(
        self,
        description: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> OperationOutcome:
        """Create a new version, then apply retention."""
        ctx = self.context
        try:
            record = await ctx.ledger.create_version(description, user_id=user_id)
        except (PosVaultError, SQLAlchemyError) as exc:
            logger.error("Backup failed: %s", exc)
            return OperationOutcome(operation="backup", ok=False, message=f"Backup failed: {exc}")

        try:
            removed = await ctx.ledger.cleanup_old_versions(ctx.settings.backup_keep_count)
        except (PosVaultError, SQLAlchemyError) as exc:
            logger.warning("Retention after backup failed: %s", exc)
            removed = 0

        return OperationOutcome(
            operation="backup",
            ok=True,
            message=f"Backup created: version {record.version}",
            detail={
                "version": record.version,
                "blob_name": record.blob_name,
                "size_bytes": record.snapshot.size_bytes,
                "stages": record.snapshot.stages,
                "removed_versions": removed,
            },
        )

    async def restore_latest(self, user_id: Optional[str] = None) -> OperationOutcome:
        try:
            report = await self.context.restore.restore_latest(user_id)
        except (PosVaultError, SQLAlchemyError) as exc:
            logger.error("Restore failed: %s", exc)
            return OperationOutcome(operation="restore", ok=False, message=f"Restore failed: {exc}")
        return OperationOutcome(
            operation="restore",
            ok=True,
            message=f"Restored from {report.source}",
            detail=self._report_detail(report),
        )

    async def import_content(self, content: bytes | str) -> OperationOutcome:
        try:
            report = await self.context.restore.import_content(content)
        except (PosVaultError, SQLAlchemyError) as exc:
            logger.error("Import failed: %s", exc)
            return OperationOutcome(operation="import", ok=False, message=f"Import failed: {exc}")
        return OperationOutcome(
            operation="import",
            ok=True,
            message="Data imported",
            detail=self._report_detail(report),
        )

    async def rollback(self, version: int) -> OperationOutcome:
        ledger = self.context.ledger
        try:
            await ledger.rollback_to(version)
        except (PosVaultError, SQLAlchemyError) as exc:
            logger.error("Rollback failed: %s", exc)
            return OperationOutcome(
                operation="rollback",
                ok=False,
                message=str(exc),
                detail={"version": version, "current_version": await ledger.current_version()},
            )
        return OperationOutcome(
            operation="rollback",
            ok=True,
            message=f"Rolled back to version {version}",
            detail={"version": version, "current_version": version},
        )

    async def sync_once(self) -> OperationOutcome:
        try:
            report = await self.context.sync.sync_with_remote()
        except (PosVaultError, SQLAlchemyError) as exc:
            logger.error("Sync failed: %s", exc)
            return OperationOutcome(operation="sync", ok=False, message=f"Sync failed: {exc}")
        ok = report.status.value in ("success", "partial")
        return OperationOutcome(
            operation="sync",
            ok=ok,
            message=f"Sync {report.status.value}" + (f": {report.reason}" if report.reason else ""),
            detail=report.model_dump(mode="json", exclude={"errors"}),
        )

    @staticmethod
    def _report_detail(report) -> dict[str, Any]:
        return {
            "source": report.source,
            "strategy": report.strategy,
            "tables_restored": report.tables_restored,
            "skipped_tables": report.skipped_tables,
            "inserted": report.inserted,
            "skipped": report.skipped,
        }


# ---------------------------------------------------------------------------
# Async entry point
# ---------------------------------------------------------------------------

async def main():
    """Main async entry point."""
    app = PosVaultApplication()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        app.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.initialize()
        await app.run()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as exc:
        logger.critical("Fatal error: %s", exc, exc_info=True)
    finally:
        await app.shutdown()


def run():
    """Console-script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
