"""Reader/writer lock for asyncio tasks.

Many readers may hold the lock at once; a writer holds it alone. Once a
writer is waiting, new readers queue behind it so a steady stream of reads
cannot starve writes.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ReadWriteLock:
    """Shared/exclusive lock for coroutines running on one event loop.

    Usage:
        lock = ReadWriteLock()

        async with lock.read():
            ...  # concurrent with other readers

        async with lock.write():
            ...  # exclusive, may await I/O while held
    """

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        """Number of readers currently holding the lock."""
        return self._readers

    @property
    def writer_active(self) -> bool:
        """Whether a writer currently holds the lock."""
        return self._writer_active

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        """Hold the lock in shared mode."""
        async with self._condition:
            await self._condition.wait_for(
                lambda: not self._writer_active and self._writers_waiting == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            await asyncio.shield(self._release(writer=False))

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        """Hold the lock in exclusive mode."""
        async with self._condition:
            self._writers_waiting += 1
            try:
                await self._condition.wait_for(
                    lambda: not self._writer_active and self._readers == 0
                )
            finally:
                # Also runs when the waiter is cancelled
                self._writers_waiting -= 1
                self._condition.notify_all()
            self._writer_active = True
        try:
            yield
        finally:
            await asyncio.shield(self._release(writer=True))

    async def _release(self, writer: bool) -> None:
        # Shielded by callers: a cancellation here would leave the lock held forever
        async with self._condition:
            if writer:
                self._writer_active = False
            else:
                self._readers -= 1
            self._condition.notify_all()
