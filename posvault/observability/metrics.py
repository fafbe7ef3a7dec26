"""Prometheus metrics for backup, restore and sync.

What gets counted:
- backups created / failed, and the size of each stored blob
- restores and rollbacks by outcome
- rows skipped during restore apply
- sync cycles by outcome, events pushed and pulled
- pending (unsynced) local events and the ledger's current version
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server,
)

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Centralized Prometheus metrics collector.

    Each instance owns its registry, so several contexts (or tests) can
    coexist in one process without duplicate-timeseries errors.
    """

    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        # === Backups ===
        self.backups = Counter(
            'posvault_backups_total',
            'Backups attempted',
            ['status'],
            registry=self.registry,
        )

        self.backup_size_bytes = Histogram(
            'posvault_backup_size_bytes',
            'Size of stored backup blobs',
            buckets=[1e3, 1e4, 1e5, 1e6, 1e7, 1e8],
            registry=self.registry,
        )

        self.current_version = Gauge(
            'posvault_current_version',
            'Version the ledger pointer is at',
            registry=self.registry,
        )

        # === Restore / rollback ===
        self.restores = Counter(
            'posvault_restores_total',
            'Restores and imports attempted',
            ['source', 'status'],
            registry=self.registry,
        )

        self.records_skipped = Counter(
            'posvault_restore_records_skipped_total',
            'Rows skipped while applying a snapshot',
            ['table'],
            registry=self.registry,
        )

        self.rollbacks = Counter(
            'posvault_rollbacks_total',
            'Rollbacks attempted',
            ['status'],
            registry=self.registry,
        )

        # === Sync ===
        self.sync_cycles = Counter(
            'posvault_sync_cycles_total',
            'Sync cycles by outcome',
            ['status'],
            registry=self.registry,
        )

        self.events_pushed = Counter(
            'posvault_sync_events_pushed_total',
            'Local change events acknowledged by the remote log',
            registry=self.registry,
        )

        self.events_pulled = Counter(
            'posvault_sync_events_pulled_total',
            'Remote change events applied locally',
            registry=self.registry,
        )

        self.pending_events = Gauge(
            'posvault_sync_pending_events',
            'Local change events not yet pushed',
            registry=self.registry,
        )

        self.sync_latency = Histogram(
            'posvault_sync_cycle_seconds',
            'Duration of one sync cycle',
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        # === Build Info ===
        self.build_info = Info(
            'posvault_build',
            'Build information',
            registry=self.registry,
        )

    def start_server(self):
        """Start Prometheus HTTP server."""
        if self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
            self._started = True
            logger.info("Prometheus metrics server started on port %d", self._port)
        except OSError as e:
            logger.error("Failed to start metrics server: %s", e)

    def set_build_info(self, version: str, device_id: str, environment: str):
        """Set build information."""
        self.build_info.info({
            'version': version,
            'device_id': device_id,
            'environment': environment,
        })

    def sample(self, name: str, labels: Optional[dict] = None) -> float:
        """Current value of one sample, 0.0 when it has not been observed."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0
