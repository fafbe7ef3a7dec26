"""posvault -- Shared utility modules."""

from posvault.utils.gate import StoreGate
from posvault.utils.idempotency import (
    MonotonicClock,
    backup_blob_name,
    generate_device_id,
    generate_uuid7,
    hash_bytes,
    parse_iso,
    to_iso,
    utc_now,
)

__all__ = [
    # gate
    "StoreGate",
    # idempotency
    "MonotonicClock",
    "backup_blob_name",
    "generate_device_id",
    "generate_uuid7",
    "hash_bytes",
    "parse_iso",
    "to_iso",
    "utc_now",
]
