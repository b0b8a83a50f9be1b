# FILE: coverpages/services/pipeline.py
"""
OCR/analysis pipeline

Per book: NoAssets -> OCRed -> Analyzed. Both transitions check what is
already on disk first and redo the work when the stored artifact is
missing, corrupt or implausible, so every entry point can simply call
reconcile(book_id).
"""
import asyncio
import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from coverpages.config import Settings, get_settings
from coverpages.models.books import ContentAnalysis, OCRDocument, OCRRecord, PageAssetRef
from coverpages.providers.registry import CapabilityRegistry
from coverpages.services.activity_log import ActivityLog
from coverpages.services.content_store import CONTENT_ANALYSIS, OCR_RESULTS, ContentStore
from coverpages.services.errors import CapabilityUnavailable, IncompleteArtifact
from coverpages.services.identity import IdentityReconciler
from coverpages.services.page_text import build_ocr_document
from coverpages.services.text_cleaner import clean_ocr_text

logger = logging.getLogger(__name__)


def ocr_digest(records: List[OCRRecord]) -> str:
    """Identifies an OCR collection by its files, their order and their text"""
    digest = hashlib.sha256()
    for record in records:
        digest.update(f"{record.index}\0{record.filename}\0{record.text}\0".encode("utf-8"))
    return digest.hexdigest()


class AnalysisPipeline:
    """Runs OCR and the cleanup pass over a book's stored pages"""

    def __init__(
        self,
        store: ContentStore,
        identity: IdentityReconciler,
        capabilities: CapabilityRegistry,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.identity = identity
        self.capabilities = capabilities
        self.settings = settings or store.settings
        self.activity = ActivityLog(store)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def is_plausible_page(self, text: Optional[str]) -> bool:
        if not text:
            return False
        if self.settings.content_error_sentinel in text:
            return False
        return len(text.strip()) >= self.settings.min_content_length

    def analysis_is_valid(self, analysis: Optional[ContentAnalysis]) -> bool:
        return (
            analysis is not None
            and self.is_plausible_page(analysis.first_page)
            and self.is_plausible_page(analysis.second_page)
        )

    def load_ocr_records(self, book_id: str) -> List[OCRRecord]:
        """Stored OCR collection; raises IncompleteArtifact when missing or malformed"""
        data = self.store.read_json(book_id, OCR_RESULTS)
        if data is None:
            raise IncompleteArtifact(OCR_RESULTS, "missing or unreadable", book_id=book_id)
        if not isinstance(data, list) or not data:
            raise IncompleteArtifact(OCR_RESULTS, "empty or not a list", book_id=book_id)
        try:
            return [OCRRecord.model_validate(item) for item in data]
        except ValidationError as e:
            raise IncompleteArtifact(OCR_RESULTS, f"invalid record: {e}", book_id=book_id)

    def _check_ocr_complete(self, book_id: str, assets: List[PageAssetRef]) -> List[OCRRecord]:
        records = self.load_ocr_records(book_id)
        if [r.filename for r in records] != [a.filename for a in assets]:
            raise IncompleteArtifact(
                OCR_RESULTS,
                f"{len(records)} records do not match {len(assets)} stored pages",
                book_id=book_id,
            )
        return records

    def load_analysis(self, book_id: str) -> Optional[ContentAnalysis]:
        data = self.store.read_json(book_id, CONTENT_ANALYSIS)
        if not data:
            return None
        try:
            return ContentAnalysis.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[{book_id}] Invalid content analysis, will recompute: {e}")
            return None

    # ------------------------------------------------------------------
    # NoAssets -> OCRed
    # ------------------------------------------------------------------

    async def run_ocr(self, book_id: str, force: bool = False) -> List[OCRRecord]:
        """
        OCR every stored half in capture order.

        An existing collection is reused when it matches the stored pages.
        The new collection is published in one atomic write; a capability
        failure part way through leaves the previous state untouched.
        """
        async with self.store.lock(book_id):
            assets = await asyncio.to_thread(self.store.get_page_assets, book_id)
            if not assets:
                raise IncompleteArtifact("page_assets", "no stored pages", book_id=book_id)

            if not force:
                try:
                    return await asyncio.to_thread(self._check_ocr_complete, book_id, assets)
                except IncompleteArtifact as e:
                    logger.info(f"[{book_id}] Running OCR: {e.message}")

            records = []
            for index, asset in enumerate(assets):
                image_bytes = await asyncio.to_thread(Path(asset.path).read_bytes)
                result = await self.capabilities.run_ocr(image_bytes)
                records.append(OCRRecord(
                    index=index,
                    filename=asset.filename,
                    page_key=asset.page_key,
                    side=asset.side,
                    text=result.get("text", "") or "",
                    confidence=float(result.get("confidence", 0.0) or 0.0),
                ))

            await asyncio.to_thread(
                self.store.write_json, book_id, OCR_RESULTS, [r.to_json() for r in records]
            )

        self.activity.log(book_id, f"OCR complete: {len(records)} page halves")
        return records

    # ------------------------------------------------------------------
    # OCRed -> Analyzed
    # ------------------------------------------------------------------

    def _prompt_records(self, records: List[OCRRecord]) -> List[Dict[str, Any]]:
        limit = self.settings.analysis_page_char_limit
        prompt_records = []
        for record in records:
            text = clean_ocr_text(record.text, max_chars=limit)
            if text:
                prompt_records.append({
                    "index": record.index,
                    "pageKey": record.page_key,
                    "side": record.side,
                    "text": text,
                })
        return prompt_records

    def _pick(self, *candidates: Optional[str]) -> str:
        """First plausible candidate, else first usable one, else the sentinel"""
        for text in candidates:
            if self.is_plausible_page(text):
                return text.strip()
        for text in candidates:
            if text and text.strip() and self.settings.content_error_sentinel not in text:
                return text.strip()
        return self.settings.content_error_sentinel

    async def analyze(self, book_id: str, force: bool = False) -> ContentAnalysis:
        """
        Produce ContentAnalysis from the OCR collection.

        Trusted as-is when both pages look valid and were chosen from
        the current OCR collection. Otherwise the cleanup
        pass runs, then direct extraction if that gave nothing usable.
        A good page already on disk is never replaced by a worse one.
        """
        async with self.store.lock(book_id):
            records = await asyncio.to_thread(self.load_ocr_records, book_id)
            existing = await asyncio.to_thread(self.load_analysis, book_id)
            digest = ocr_digest(records)
            if not force and self.analysis_is_valid(existing) and existing.ocr_digest == digest:
                return existing

            metadata = await asyncio.to_thread(self.identity.effective_metadata, book_id)
            known_title = metadata.title or None
            known_author = metadata.author or None
            known_non_fiction = None if metadata.is_empty() else metadata.is_non_fiction
            prompt_records = self._prompt_records(records)

            primary: Dict[str, Any] = {}
            direct: Dict[str, Any] = {}
            failures = 0

            try:
                primary = await self.capabilities.cleanup_and_classify(
                    prompt_records, known_title, known_author, known_non_fiction
                ) or {}
            except CapabilityUnavailable as e:
                failures += 1
                logger.warning(f"[{book_id}] Cleanup pass failed: {e.message}")

            primary_ok = (
                self.is_plausible_page(primary.get("firstPage"))
                and self.is_plausible_page(primary.get("secondPage"))
            )
            if not primary_ok:
                logger.info(f"[{book_id}] Cleanup output unusable; trying direct extraction")
                try:
                    direct = await self.capabilities.extract_pages_direct(
                        prompt_records, known_title, known_author
                    ) or {}
                except CapabilityUnavailable as e:
                    failures += 1
                    logger.warning(f"[{book_id}] Direct extraction failed: {e.message}")

            if failures == 2:
                if existing is None:
                    raise CapabilityUnavailable(
                        "content_cleaner", "cleanup and direct extraction both failed", book_id=book_id
                    )
                return existing

            direct_ok = (
                self.is_plausible_page(direct.get("firstPage"))
                and self.is_plausible_page(direct.get("secondPage"))
            )
            previous = existing or ContentAnalysis()

            if primary_ok:
                first, second = primary["firstPage"], primary["secondPage"]
            elif direct_ok:
                first, second = direct["firstPage"], direct["secondPage"]
            else:
                first = self._pick(primary.get("firstPage"), direct.get("firstPage"), previous.first_page)
                second = self._pick(primary.get("secondPage"), direct.get("secondPage"), previous.second_page)
            first = self._pick(first, previous.first_page)
            second = self._pick(second, previous.second_page)

            if known_non_fiction is not None:
                is_non_fiction = known_non_fiction
            elif "isNonFiction" in primary:
                is_non_fiction = bool(primary["isNonFiction"])
            else:
                is_non_fiction = previous.is_non_fiction

            analysis = ContentAnalysis(
                title=known_title or primary.get("title") or previous.title,
                author=known_author or primary.get("author") or previous.author,
                is_non_fiction=is_non_fiction,
                fiction=not is_non_fiction,
                first_page=first,
                second_page=second,
                last_updated=datetime.utcnow(),
                ocr_digest=digest,
            )
            await asyncio.to_thread(self.store.write_json, book_id, CONTENT_ANALYSIS, analysis.to_json())

        valid = self.analysis_is_valid(analysis)
        self.activity.log(book_id, f"Content analysis written (valid={valid})")
        logger.info(f"[{book_id}] Content analysis written: valid={valid}")
        return analysis

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def complete_batch(self, book_id: str) -> ContentAnalysis:
        """All pages for the batch are stored: OCR, analyse, propagate"""
        await self.run_ocr(book_id)
        analysis = await self.analyze(book_id)
        metadata = await asyncio.to_thread(self.identity.effective_metadata, book_id)
        await self.identity.propagate_metadata(book_id, metadata)
        return analysis

    async def reconcile(self, book_id: str) -> Optional[ContentAnalysis]:
        """
        Make every directory linked to book_id consistent.

        Idempotent; transient capability failures are logged and leave the
        stored state as it was.
        """
        linked = await asyncio.to_thread(self.identity.linked_ids, book_id)

        for linked_id in linked:
            if self.store.batch_open(linked_id):
                logger.info(f"[{linked_id}] Capture batch still open; leaving it to complete_batch")
                continue
            assets = await asyncio.to_thread(self.store.get_page_assets, linked_id)
            if not assets:
                continue
            try:
                await self.run_ocr(linked_id)
                await self.analyze(linked_id)
            except CapabilityUnavailable as e:
                logger.warning(f"[{linked_id}] Reconcile deferred: {e.message}")
            except IncompleteArtifact as e:
                logger.info(f"[{linked_id}] Reconcile skipped: {e.message}")

        metadata = await asyncio.to_thread(self.identity.effective_metadata, book_id)
        await self.identity.propagate_metadata(book_id, metadata)
        return await asyncio.to_thread(self.best_analysis, linked)

    def best_analysis(self, book_ids: List[str]) -> Optional[ContentAnalysis]:
        """First analysis with displayable content, else the first one found"""
        fallback = None
        sentinel = self.settings.content_error_sentinel
        for book_id in book_ids:
            analysis = self.load_analysis(book_id)
            if analysis is None:
                continue
            if analysis.has_content(sentinel):
                return analysis
            if fallback is None:
                fallback = analysis
        return fallback

    def ocr_document(self, book_ids: List[str]) -> Optional[OCRDocument]:
        """Per-page OCR text of the first linked id that has a usable collection"""
        for book_id in book_ids:
            try:
                records = self.load_ocr_records(book_id)
            except IncompleteArtifact:
                continue
            return build_ocr_document(book_id, records, self.settings.page_confidence_mode)
        return None
