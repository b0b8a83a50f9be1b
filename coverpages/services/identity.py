# FILE: coverpages/services/identity.py
"""
Identity reconciler

A book is first known by the client's upload id and later also by the
canonical source id found during search. Both directories carry the same
MappingRecord; a missing mirror just means the pair is not reconciled yet.
"""
import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError

from coverpages.models.books import BookMetadata, ContentAnalysis, MappingRecord
from coverpages.services.content_store import (
    CONTENT_ANALYSIS,
    METADATA,
    OCR_RESULTS,
    ContentStore,
    sanitize_id,
)
from coverpages.services.errors import IdentityConflict

logger = logging.getLogger(__name__)


class IdentityReconciler:
    """Upload id <-> canonical source id mapping and metadata propagation"""

    def __init__(self, store: ContentStore):
        self.store = store

    def resolve(self, upload_id: str) -> Optional[str]:
        """Canonical source id for upload_id, or None if not linked yet"""
        record = self.store.get_mapping_record(upload_id)
        if record is None:
            return None
        return record.canonical_source_id

    async def link_ids(self, upload_id: str, canonical_id: str, metadata: BookMetadata) -> MappingRecord:
        """Create or refresh the mapping in both directories (idempotent)"""
        async with self.store.lock(upload_id, canonical_id):
            return await asyncio.to_thread(self._link_sync, upload_id, canonical_id, metadata)

    def _link_sync(self, upload_id: str, canonical_id: str, metadata: BookMetadata) -> MappingRecord:
        existing = self.store.get_mapping_record(upload_id)
        if (
            existing is not None
            and sanitize_id(existing.upload_id) == sanitize_id(upload_id)
            and existing.canonical_source_id != canonical_id
        ):
            raise IdentityConflict(
                f"{upload_id} is already linked to {existing.canonical_source_id}, not {canonical_id}",
                book_id=upload_id,
            )

        record = MappingRecord(
            upload_id=upload_id,
            canonical_source_id=canonical_id,
            snapshot_metadata=metadata,
        )
        self.store.write_mapping_record(record)
        for book_id in {upload_id, canonical_id}:
            self.store.write_json(book_id, METADATA, metadata.to_json())

        logger.info(f"Linked upload {upload_id} -> {canonical_id} ({metadata.title!r} by {metadata.author!r})")
        return record

    def linked_ids(self, book_id: str) -> List[str]:
        """book_id plus every id reachable through mapping records"""
        seen = [book_id]
        seen_keys = {sanitize_id(book_id)}
        queue = deque([book_id])
        while queue:
            current = queue.popleft()
            record = self.store.get_mapping_record(current)
            if record is None:
                continue
            for other in (record.upload_id, record.canonical_source_id):
                if sanitize_id(other) not in seen_keys:
                    seen_keys.add(sanitize_id(other))
                    seen.append(other)
                    queue.append(other)
        return seen

    def locate(self, book_id: str) -> Optional[MappingRecord]:
        """Mapping for book_id, scanning every directory when it has none of its own"""
        record = self.store.get_mapping_record(book_id)
        if record is not None:
            return record
        if self.store.exists(book_id):
            return None

        wanted = sanitize_id(book_id)
        for candidate in self.store.list_book_ids():
            record = self.store.get_mapping_record(candidate)
            if record is not None and sanitize_id(record.upload_id) == wanted:
                logger.info(f"Located {book_id} through mapping in {candidate}")
                return record
        return None

    async def propagate_metadata(self, book_id: str, metadata: BookMetadata) -> List[str]:
        """
        Refresh ContentAnalysis metadata in every linked directory.

        Only directories that already have OCR results are touched; page
        text is never computed here. Safe to call any number of times.
        """
        if metadata.is_empty():
            return []

        updated = []
        for linked_id in self.linked_ids(book_id):
            async with self.store.lock(linked_id):
                changed = await asyncio.to_thread(self._propagate_one, linked_id, metadata)
            if changed:
                updated.append(linked_id)

        if updated:
            logger.info(f"Propagated metadata for {book_id} to {updated}")
        return updated

    def _propagate_one(self, book_id: str, metadata: BookMetadata) -> bool:
        if not self.store.exists(book_id, OCR_RESULTS):
            logger.debug(f"[{book_id}] No OCR results; skipping metadata propagation")
            return False

        data = self.store.read_json(book_id, CONTENT_ANALYSIS)
        analysis = self._parse_analysis(book_id, data) or ContentAnalysis()
        refreshed = analysis.with_metadata(metadata)
        if data is not None and refreshed == analysis:
            return False

        refreshed.last_updated = datetime.utcnow()
        self.store.write_json(book_id, CONTENT_ANALYSIS, refreshed.to_json())
        return True

    def _parse_analysis(self, book_id: str, data) -> Optional[ContentAnalysis]:
        if not data:
            return None
        try:
            return ContentAnalysis.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[{book_id}] Invalid content analysis: {e}")
            return None

    def effective_metadata(self, book_id: str) -> BookMetadata:
        """ContentAnalysis, then metadata.json, then the mapping snapshot"""
        ids = self.linked_ids(book_id)

        for linked_id in ids:
            analysis = self._parse_analysis(linked_id, self.store.read_json(linked_id, CONTENT_ANALYSIS))
            if analysis is not None and (analysis.title or analysis.author):
                return analysis.metadata()

        for linked_id in ids:
            data = self.store.read_json(linked_id, METADATA)
            if data:
                try:
                    metadata = BookMetadata.model_validate(data)
                except ValidationError:
                    continue
                if not metadata.is_empty():
                    return metadata

        for linked_id in ids:
            record = self.store.get_mapping_record(linked_id)
            if record is not None and not record.snapshot_metadata.is_empty():
                return record.snapshot_metadata

        return BookMetadata()
