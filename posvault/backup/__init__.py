"""posvault -- Backup package.

Snapshot export, protected storage, decoding, restore and the version ledger.
"""

from posvault.backup.decoder import SnapshotDecoder
from posvault.backup.exporter import SnapshotExporter
from posvault.backup.ledger import VersionLedger
from posvault.backup.models import (
    BlobInfo,
    RecordOutcome,
    RecordStatus,
    RestoreReport,
    RollbackLogEntry,
    RollbackStatus,
    Snapshot,
    VersionRecord,
)
from posvault.backup.repository import (
    BackupRepository,
    InMemoryRepository,
    LocalDirectoryRepository,
    SupabaseStorageRepository,
)
from posvault.backup.restore import RestoreEngine

__all__: list[str] = [
    "BackupRepository",
    "BlobInfo",
    "InMemoryRepository",
    "LocalDirectoryRepository",
    "RecordOutcome",
    "RecordStatus",
    "RestoreEngine",
    "RestoreReport",
    "RollbackLogEntry",
    "RollbackStatus",
    "Snapshot",
    "SnapshotDecoder",
    "SnapshotExporter",
    "SupabaseStorageRepository",
    "VersionLedger",
    "VersionRecord",
]
