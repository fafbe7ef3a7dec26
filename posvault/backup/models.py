"""Data models for snapshots, versions, rollback audit and restore reports."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class BlobInfo(BaseModel):
    """One object listed by a backup repository."""
    name: str
    size: int | None = None
    updated_at: datetime | None = None


class Snapshot(BaseModel):
    """An uploaded, immutable export of the tracked tables."""
    id: str
    blob_name: str
    created_at: datetime
    version: int = Field(default=0)
    size_bytes: int = Field(default=0)
    checksum: str = Field(default="")
    stages: list[str] = Field(default_factory=list)


class VersionRecord(BaseModel):
    """A snapshot under its ledger version number."""
    snapshot: Snapshot
    version: int
    description: str | None = None

    @property
    def id(self) -> str:
        return self.snapshot.id

    @property
    def blob_name(self) -> str:
        return self.snapshot.blob_name

    @property
    def created_at(self) -> datetime:
        return self.snapshot.created_at


class RollbackStatus(str, Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"


class RollbackLogEntry(BaseModel):
    """Audit record of one rollback attempt."""
    id: str
    timestamp: datetime
    from_version: int
    to_version: int
    status: RollbackStatus = RollbackStatus.STARTED
    error_message: str | None = None


class RecordStatus(str, Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"


class RecordOutcome(BaseModel):
    """What happened to one row of the snapshot during apply."""
    table: str
    index: int
    status: RecordStatus
    reason: str | None = None


class RestoreReport(BaseModel):
    """Result of a successful restore or import.

    A restore can succeed while dropping individual rows; ``outcomes`` and
    ``skipped_tables`` make that visible to callers and tests.
    """
    source: str = Field(default="")
    strategy: str = Field(default="")
    tables_restored: list[str] = Field(default_factory=list)
    skipped_tables: list[str] = Field(default_factory=list)
    outcomes: list[RecordOutcome] = Field(default_factory=list)
    duration_seconds: float = Field(default=0.0)

    @property
    def inserted(self) -> int:
        return sum(1 for o in self.outcomes if o.status == RecordStatus.INSERTED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == RecordStatus.SKIPPED)

    def inserted_for(self, table: str) -> int:
        return sum(
            1 for o in self.outcomes
            if o.table == table and o.status == RecordStatus.INSERTED
        )
