# FILE: coverpages/services/book_locks.py
"""
Per-book asyncio locks

A book directory has a single writer at a time. Readers of published
artifacts do not lock.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class BookLocks:
    """Registry of one asyncio.Lock per book id"""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, book_id: str) -> asyncio.Lock:
        lock = self._locks.get(book_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[book_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, *book_ids: str) -> AsyncIterator[None]:
        """Acquire locks for all ids, in sorted order to avoid deadlock"""
        ordered = sorted(set(book_ids))
        acquired = []
        try:
            for book_id in ordered:
                await self.get(book_id).acquire()
                acquired.append(book_id)
            yield
        finally:
            for book_id in reversed(acquired):
                self._locks[book_id].release()
