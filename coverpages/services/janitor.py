# FILE: coverpages/services/janitor.py
"""
Cache janitor

Strips a book directory down to the canonical page halves and the JSON
artifacts needed to serve it again. Marker files, logs, unsplit images and
temp files are all removed.
"""
import asyncio
import logging
import shutil
from typing import List, Optional

from coverpages.models.books import SweepReport
from coverpages.services.content_store import (
    CANONICAL_ASSET_RE,
    CONTENT_ANALYSIS,
    ID_MAPPING,
    METADATA,
    OCR_RESULTS,
    ContentStore,
)

logger = logging.getLogger(__name__)

JSON_WHITELIST = frozenset({ID_MAPPING, OCR_RESULTS, CONTENT_ANALYSIS, METADATA})


def is_kept(filename: str) -> bool:
    return filename in JSON_WHITELIST or bool(CANONICAL_ASSET_RE.match(filename))


class CacheJanitor:
    """Whitelist sweeps of book directories"""

    def __init__(self, store: ContentStore):
        self.store = store

    async def sweep(self, book_id: str) -> SweepReport:
        """Sweep one book; holds the book lock for the duration"""
        async with self.store.lock(book_id):
            return await asyncio.to_thread(self._sweep_sync, book_id)

    async def sweep_all(self, book_ids: Optional[List[str]] = None) -> List[SweepReport]:
        reports = []
        for book_id in book_ids or self.store.list_book_ids():
            reports.append(await self.sweep(book_id))
        removed = sum(len(r.removed) for r in reports)
        logger.info(f"Swept {len(reports)} book directories, removed {removed} artifacts")
        return reports

    def _sweep_sync(self, book_id: str) -> SweepReport:
        report = SweepReport(book_id=book_id)
        book_dir = self.store.book_dir(book_id)
        if not book_dir.exists():
            return report

        for path in sorted(book_dir.iterdir()):
            if path.is_file() and is_kept(path.name):
                report.kept.append(path.name)
                continue
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                report.removed.append(path.name)
            except OSError as e:
                logger.warning(f"[{book_id}] Could not remove {path.name}: {e}")

        if not any(book_dir.iterdir()):
            book_dir.rmdir()
            report.directory_removed = True

        if report.removed:
            logger.info(f"[{book_id}] Janitor removed {len(report.removed)} artifacts")
        return report
