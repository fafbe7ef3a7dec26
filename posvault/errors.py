"""posvault -- Exception hierarchy.

Every failure the subsystem reports derives from :class:`PosVaultError` so
callers at the application boundary can catch one type.  Where each kind is
raised and who handles it:

    TransformError      transform stage failed; backup degrades, decode moves on
    DecodeError         no decode strategy produced a document
    SchemaError         decoded document lacks an object ``data`` member
    RecordApplyError    one row failed to insert; logged and skipped
    RestoreError        restore failed before or during apply
    TransactionError    restore transaction failed and was rolled back
    NoBackupFilesError  restore-latest found nothing to restore
    RemoteError         network / storage failure; retried next sync cycle
    RollbackError       rollback target missing or its restore failed
    StoreBusyError      operation conflicts with an in-flight restore
"""

from __future__ import annotations


class PosVaultError(Exception):
    """Base class for all posvault errors."""


class TransformError(PosVaultError):
    """Raised when a compress/decompress/encrypt/decrypt stage fails."""


class DecodeError(PosVaultError):
    """Raised when no decode strategy succeeds.

    ``last_error`` keeps the failure of the final strategy attempted.
    """

    def __init__(self, message: str, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class SchemaError(PosVaultError):
    """Raised when a decoded snapshot does not have the expected shape."""


class RecordApplyError(PosVaultError):
    """A single row could not be written.  Never escapes the restore loop."""

    def __init__(self, table: str, index: int, reason: str) -> None:
        super().__init__(f"{table}[{index}]: {reason}")
        self.table = table
        self.index = index
        self.reason = reason


class RestoreError(PosVaultError):
    """Raised when a restore or import cannot complete."""


class TransactionError(RestoreError):
    """Raised when the restore transaction fails and is rolled back."""


class NoBackupFilesError(RestoreError):
    """Raised when the repository holds no backup to restore from."""


class RemoteError(PosVaultError):
    """Raised on network or remote storage failures."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RollbackError(PosVaultError):
    """Raised when a rollback cannot be completed."""


class VersionNotFoundError(RollbackError):
    """Raised when the requested version is not in the ledger."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Version {version} not found")
        self.version = version


class StoreBusyError(PosVaultError):
    """Raised when the local store is held exclusively by a restore."""
