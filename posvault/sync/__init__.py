"""posvault -- Change-log replication package.

Core components:
    ChangeLog          -- local ``sync_log`` table
    RemoteChangeLog    -- protocol for the shared remote log
    SyncEngine         -- push / pull / apply cycles on a timer
"""

from posvault.sync.change_log import ChangeLog
from posvault.sync.engine import SyncEngine
from posvault.sync.models import (
    ChangeEvent,
    Operation,
    SyncMetadata,
    SyncReport,
    SyncStatus,
)
from posvault.sync.remote import InMemoryChangeLog, RemoteChangeLog, SupabaseChangeLog

__all__ = [
    "ChangeEvent",
    "ChangeLog",
    "InMemoryChangeLog",
    "Operation",
    "RemoteChangeLog",
    "SupabaseChangeLog",
    "SyncEngine",
    "SyncMetadata",
    "SyncReport",
    "SyncStatus",
]
