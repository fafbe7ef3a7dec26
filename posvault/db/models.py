"""Bookkeeping tables owned by posvault.

Uses SQLAlchemy 2.0 declarative style.  These tables live in the same SQLite
file as the application data but are never exported into a snapshot and
never overwritten by a restore.

Timestamps are stored as fixed-width ISO-8601 UTC text (see
``posvault.utils.idempotency.to_iso``) so ``ORDER BY timestamp`` is
chronological.
"""

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BackupVersionRow(Base):
    """One retained snapshot and the version number assigned to it."""
    __tablename__ = "backup_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    blob_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=True)
    checksum: Mapped[str] = mapped_column(String(64), nullable=True)
    stages: Mapped[str] = mapped_column(String(64), nullable=True)  # "compress,encrypt"


class RollbackLogRow(Base):
    """Append-only rollback audit trail."""
    __tablename__ = "rollback_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[str] = mapped_column(String(40), nullable=False)
    from_version: Mapped[int] = mapped_column(Integer, nullable=False)
    to_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # started | success | failed
    error_message: Mapped[str] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_rollback_logs_timestamp", "timestamp"),
    )


class SyncLogRow(Base):
    """Local change log.  Mirrors the remote ``sync_log`` table column for column."""
    __tablename__ = "sync_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(128), nullable=False)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)  # INSERT | UPDATE | DELETE
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)  # JSON payload
    timestamp: Mapped[str] = mapped_column(String(40), nullable=False)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_sync_log_pending", "synced", "device_id", "timestamp"),
    )


class AppState(Base):
    """Durable key/value state (ledger pointer, sync metadata)."""
    __tablename__ = "app_state"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=True)


BOOKKEEPING_TABLES: frozenset[str] = frozenset(Base.metadata.tables.keys())
