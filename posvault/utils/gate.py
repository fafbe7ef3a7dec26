"""
Single-writer discipline for the local store.

A restore or rollback replaces whole tables and must never interleave with a
sync cycle or a backup export.  Sync cycles and exports may overlap each
other and ordinary application reads/writes.

    gate = StoreGate()

    async with gate.exclusive("rollback"):   # waits for shared holders to drain
        ...

    async with gate.shared("sync"):          # StoreBusyError while a restore runs
        ...
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from posvault.errors import StoreBusyError

logger = logging.getLogger(__name__)


class StoreGate:
    """Exclusive/shared gate around the local store."""

    def __init__(self) -> None:
        self._exclusive_lock = asyncio.Lock()
        self._shared_holders: dict[str, int] = {}
        self._drained = asyncio.Event()
        self._drained.set()
        self._exclusive_owner: str | None = None

    @property
    def restore_in_progress(self) -> bool:
        return self._exclusive_lock.locked()

    @property
    def exclusive_owner(self) -> str | None:
        return self._exclusive_owner

    @property
    def shared_count(self) -> int:
        return sum(self._shared_holders.values())

    @asynccontextmanager
    async def exclusive(self, owner: str) -> AsyncIterator[None]:
        """Hold the store exclusively.

        New shared holders are refused as soon as the lock is taken; the
        caller then waits for the current shared holders to finish.
        """
        async with self._exclusive_lock:
            self._exclusive_owner = owner
            try:
                if not self._drained.is_set():
                    logger.info(
                        "%s waiting for %d in-flight store users to finish",
                        owner, self.shared_count,
                    )
                await self._drained.wait()
                yield
            finally:
                self._exclusive_owner = None

    @asynccontextmanager
    async def shared(self, kind: str) -> AsyncIterator[None]:
        """Hold the store alongside other shared users.

        Raises:
            StoreBusyError: a restore/rollback currently owns the store.
        """
        if self._exclusive_lock.locked():
            raise StoreBusyError(
                f"{kind} refused: {self._exclusive_owner or 'restore'} in progress"
            )
        self._shared_holders[kind] = self._shared_holders.get(kind, 0) + 1
        self._drained.clear()
        try:
            yield
        finally:
            self._shared_holders[kind] -= 1
            if self._shared_holders[kind] == 0:
                del self._shared_holders[kind]
            if not self._shared_holders:
                self._drained.set()
