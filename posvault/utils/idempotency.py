"""
posvault -- Shared identifier, timestamp and hashing helpers.

* ``generate_uuid7``    -- time-ordered unique ID for change events, snapshots
                           and rollback log entries.
* ``MonotonicClock``    -- UTC timestamps that never go backwards within one
                           process, so a device's own events keep creation order.
* ``backup_blob_name``  -- repository name whose lexical order equals recency.
* ``hash_bytes``        -- SHA-256 fingerprint of a stored blob.

Timestamps are always timezone-aware UTC and serialise with a fixed
microsecond width so that string comparison matches time order.
"""

from __future__ import annotations

import hashlib
import os
import struct
import time
import uuid
from datetime import datetime, timedelta, timezone


# --------------------------------------------------------------------------- #
# UUIDv7  (timestamp-prefixed, random suffix)
# --------------------------------------------------------------------------- #


def generate_uuid7() -> str:
    """Generate a UUIDv7 string (time-ordered, random-suffix).

    The first 48 bits encode the current Unix timestamp in milliseconds,
    giving natural chronological ordering when sorted lexicographically.
    The remaining 80 bits come from ``os.urandom`` with version and variant
    bits set per RFC 9562.
    """
    timestamp_ms = int(time.time() * 1000)
    ts_bytes = struct.pack(">Q", timestamp_ms)[2:]  # last 6 bytes = 48 bits

    raw = bytearray(ts_bytes + os.urandom(10))

    # Version nibble -> 7
    raw[6] = (raw[6] & 0x0F) | 0x70
    # Variant bits -> 0b10
    raw[8] = (raw[8] & 0x3F) | 0x80

    hex_str = raw.hex()
    return (
        f"{hex_str[0:8]}-{hex_str[8:12]}-{hex_str[12:16]}"
        f"-{hex_str[16:20]}-{hex_str[20:32]}"
    )


# --------------------------------------------------------------------------- #
# Timestamps
# --------------------------------------------------------------------------- #


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialise *value* as fixed-width ISO-8601 UTC (microsecond precision)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | datetime) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MonotonicClock:
    """Hands out strictly increasing UTC timestamps.

    Wall clocks on handheld devices jump (NTP corrections, manual changes).
    If the clock reads a value not after the previous one, the previous
    value plus one microsecond is returned instead.
    """

    _STEP = timedelta(microseconds=1)

    def __init__(self) -> None:
        self._last: datetime | None = None

    def now(self) -> datetime:
        current = utc_now()
        if self._last is not None and current <= self._last:
            current = self._last + self._STEP
        self._last = current
        return current

    def observe(self, value: datetime) -> None:
        """Make sure later timestamps sort after *value* (e.g. loaded from disk)."""
        value = parse_iso(value)
        if self._last is None or value > self._last:
            self._last = value


# --------------------------------------------------------------------------- #
# Blob names
# --------------------------------------------------------------------------- #


def backup_blob_name(
    prefix: str,
    when: datetime | None = None,
    user_id: str | None = None,
) -> str:
    """Build a repository name such as ``posvault-backup-2024-05-01T10-00-00-000001Z.json``.

    ``:`` and ``.`` are replaced so the name is safe for object stores while
    keeping the timestamp lexically sortable.
    """
    when = when or utc_now()
    stamp = when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    if user_id:
        return f"{prefix}-{user_id}-{stamp}.json"
    return f"{prefix}-{stamp}.json"


# --------------------------------------------------------------------------- #
# Hashing
# --------------------------------------------------------------------------- #


def hash_bytes(data: bytes) -> str:
    """Return the 64-char lowercase hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def generate_device_id() -> str:
    """Random identifier for a device that has not been given one."""
    return f"device_{uuid.uuid4().hex[:9]}"
