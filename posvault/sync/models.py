"""Data models for change-log replication."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from posvault.db.values import RowValue, coerce_row
from posvault.utils.idempotency import EPOCH, parse_iso, to_iso


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """One logged mutation of one record.

    Immutable apart from ``synced``, which only ever goes false -> true.
    """
    id: str
    table_name: str
    operation: Operation
    record_id: str
    payload: dict[str, RowValue] = Field(default_factory=dict)
    timestamp: datetime
    origin_device_id: str
    synced: bool = False

    @field_validator("payload", mode="before")
    @classmethod
    def _coerce_payload(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, (str, bytes)):
            value = json.loads(value) if value else {}
        if isinstance(value, dict):
            return coerce_row(value)
        return value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        if isinstance(value, (str, datetime)):
            return parse_iso(value)
        return value

    @field_validator("record_id", mode="before")
    @classmethod
    def _record_id_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    def payload_json(self) -> str:
        return json.dumps(self.payload, ensure_ascii=False, separators=(",", ":"))

    def to_remote(self) -> dict[str, Any]:
        """Row shape of the remote ``sync_log`` table.

        Only acknowledged-on-push events reach the remote log, so ``synced``
        is always true there.
        """
        return {
            "id": self.id,
            "table_name": self.table_name,
            "operation": self.operation.value,
            "record_id": self.record_id,
            "data": self.payload,
            "timestamp": to_iso(self.timestamp),
            "device_id": self.origin_device_id,
            "synced": True,
        }

    @classmethod
    def from_remote(cls, row: dict[str, Any]) -> "ChangeEvent":
        return cls(
            id=str(row["id"]),
            table_name=row["table_name"],
            operation=row["operation"],
            record_id=row["record_id"],
            payload=row.get("data"),
            timestamp=row["timestamp"],
            origin_device_id=row["device_id"],
            synced=bool(row.get("synced", True)),
        )


class SyncMetadata(BaseModel):
    """Process-wide sync state persisted across restarts."""
    device_id: str
    last_sync_watermark: datetime = Field(default=EPOCH)
    sync_enabled: bool = False


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncReport(BaseModel):
    """Outcome of one sync cycle."""
    status: SyncStatus = SyncStatus.SUCCESS
    reason: str | None = None
    pushed: int = 0
    push_failed: int = 0
    pulled: int = 0
    applied: int = 0
    already_applied: int = 0
    apply_failed: int = 0
    watermark: datetime | None = None
    watermark_advanced: bool = False
    duration_seconds: float = 0.0
    errors: list[str] = Field(default_factory=list)
