# FILE: coverpages/services/acquisition.py
"""
Acquisition orchestrator

Cover photo -> classification -> source search -> id linking -> preview
capture -> page storage -> OCR/analysis. Runs as a background job; every
failure ends up as a marker artifact, never as an exception past the job.
"""
import asyncio
import logging
from typing import Dict, Optional

from coverpages.config import Settings
from coverpages.models.books import BookStatus, ErrorCode
from coverpages.providers.registry import CapabilityRegistry
from coverpages.services import activity_log as milestones
from coverpages.services.activity_log import ActivityLog
from coverpages.services.content_store import ACTIVITY_LOG, ERROR, METADATA, SOURCE_INFO, STATUS, ContentStore
from coverpages.services.errors import CapabilityUnavailable, CorruptImage, NoPreviewAvailable
from coverpages.services.identity import IdentityReconciler
from coverpages.services.job_registry import AcquisitionJob, AcquisitionJobRegistry
from coverpages.services.pipeline import AnalysisPipeline
from coverpages.services.status import StatusResolver

logger = logging.getLogger(__name__)


class AcquisitionService:
    """Drives one upload from cover photo to displayable pages"""

    def __init__(
        self,
        store: ContentStore,
        identity: IdentityReconciler,
        pipeline: AnalysisPipeline,
        status: StatusResolver,
        capabilities: CapabilityRegistry,
        jobs: Optional[AcquisitionJobRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.identity = identity
        self.pipeline = pipeline
        self.status = status
        self.capabilities = capabilities
        self.jobs = jobs or AcquisitionJobRegistry()
        self.settings = settings or store.settings
        self.activity = ActivityLog(store)
        # canonical id -> capture in flight, shared by concurrent uploads
        self._captures: Dict[str, asyncio.Task] = {}

    def submit(self, upload_id: str, image_bytes: bytes) -> AcquisitionJob:
        """Start (or join) the background job for upload_id"""
        job, _ = self.jobs.start(upload_id, lambda: self.process_book(upload_id, image_bytes))
        return job

    async def wait(self, job: AcquisitionJob, deadline: Optional[float] = None) -> BookStatus:
        """
        Wait for the job up to the request deadline.

        On timeout the caller gets the current status and the job keeps
        running; clients poll the status query afterwards.
        """
        deadline = deadline if deadline is not None else self.settings.request_deadline_seconds
        try:
            result = await asyncio.wait_for(asyncio.shield(job.task), timeout=deadline)
        except asyncio.TimeoutError:
            self.activity.milestone(job.upload_id, milestones.BOOK_CONTENT_TIMEOUT, f"still running after {deadline}s")
            return self.status.get_status(job.upload_id)
        if isinstance(result, BookStatus):
            return result
        return self.status.get_status(job.upload_id)

    async def process_book(self, upload_id: str, image_bytes: bytes) -> BookStatus:
        """Background job body; converts every failure into markers"""
        await self._reset_markers(upload_id)
        self.activity.milestone(upload_id, milestones.REQUEST_RECEIVED, f"{len(image_bytes)} bytes")
        try:
            await self._acquire(upload_id, image_bytes)
        except NoPreviewAvailable as e:
            await self._record_no_pages(upload_id, e.message)
        except CapabilityUnavailable as e:
            # transient: no error marker so a later run can retry
            self.activity.milestone(upload_id, milestones.CAPABILITY_UNAVAILABLE, e.message)
        except Exception as e:
            logger.error(f"[{upload_id}] Book processing failed: {e}", exc_info=True)
            self.activity.log(upload_id, f"{milestones.PROCESSING_FAILURE_SIGNATURE}: {e}")
            self.activity.milestone(upload_id, milestones.API_REQUEST_ERROR, str(e))
            await self.status.record_error(upload_id, str(e), ErrorCode.PROCESSING_ERROR.value)
        return self.status.get_status(upload_id)

    async def _acquire(self, upload_id: str, image_bytes: bytes):
        self.activity.milestone(upload_id, milestones.API_REQUEST_START, "classifying cover")
        metadata = await self.capabilities.classify_cover(image_bytes)
        async with self.store.lock(upload_id):
            await asyncio.to_thread(self.store.write_json, upload_id, METADATA, metadata.to_json())
        self.activity.log(
            upload_id,
            f'Book detection result: isBook={metadata.is_book}, title="{metadata.title}", '
            f'author="{metadata.author}", isNonFiction={metadata.is_non_fiction}'
        )

        if not metadata.is_book:
            await self.status.record_error(
                upload_id, metadata.reason or "The image does not appear to show a book",
                ErrorCode.NOT_A_BOOK.value,
            )
            return
        if not metadata.title:
            await self.status.record_error(
                upload_id, "Could not read a title from the cover", ErrorCode.BOOK_NOT_FOUND.value
            )
            return

        source = await self.capabilities.search_source(metadata.title, metadata.author)
        if source is None:
            await self.status.record_error(
                upload_id,
                f'No source found for "{metadata.title}" by {metadata.author or "unknown author"}',
                ErrorCode.BOOK_NOT_FOUND.value,
            )
            return

        canonical_id = source.source_id
        async with self.store.lock(canonical_id):
            await asyncio.to_thread(self.store.write_json, canonical_id, SOURCE_INFO, source.to_json())
        self.activity.log(upload_id, f"Source {canonical_id} viewability={source.viewability}")

        await self.identity.link_ids(upload_id, canonical_id, metadata)

        if not source.has_pages:
            self.activity.log(
                upload_id,
                f'{milestones.NO_PAGES_SIGNATURE} title="{metadata.title}" author="{metadata.author}"'
            )
            raise NoPreviewAvailable(f'"{metadata.title}" has no preview pages available', book_id=upload_id)

        await self._ensure_pages(upload_id, canonical_id)

        await self.pipeline.complete_batch(canonical_id)
        await self.pipeline.reconcile(upload_id)
        self.activity.milestone(upload_id, milestones.PROCESSING_COMPLETE, canonical_id)

    async def _ensure_pages(self, upload_id: str, canonical_id: str):
        # an in-flight capture may have stored only some pages so far
        task = self._captures.get(canonical_id)
        if task is not None:
            logger.info(f"[{upload_id}] Joining capture already running for {canonical_id}")
        elif self.store.get_page_assets(canonical_id):
            logger.info(f"[{upload_id}] Pages for {canonical_id} already cached; skipping capture")
            return
        else:
            task = asyncio.create_task(self._capture(upload_id, canonical_id))
            self._captures[canonical_id] = task
            task.add_done_callback(lambda _: self._captures.pop(canonical_id, None))
        await task

    async def _capture(self, upload_id: str, canonical_id: str):
        pages = await self.capabilities.capture_preview_pages(canonical_id)
        stored = 0
        self.store.begin_batch(canonical_id)
        try:
            for number, image_bytes in enumerate(pages, start=1):
                try:
                    await self.store.put_page_image(canonical_id, number, image_bytes)
                    stored += 1
                except CorruptImage as e:
                    logger.warning(f"[{canonical_id}] Page {number} could not be split: {e.message}")
                    await self.store.store_unsplit(canonical_id, number, image_bytes)
        finally:
            self.store.end_batch(canonical_id)

        self.activity.milestone(upload_id, milestones.PAGES_CAPTURED, f"{stored} of {len(pages)} pages for {canonical_id}")
        if stored == 0:
            self.activity.log(upload_id, f"{milestones.NO_PAGES_SIGNATURE} (capture returned no usable pages)")
            raise NoPreviewAvailable("No preview pages could be captured", book_id=upload_id)

    async def _record_no_pages(self, upload_id: str, message: str):
        self.activity.milestone(upload_id, milestones.BOOK_NOT_AVAILABLE, message)
        targets = [upload_id]
        canonical_id = self.identity.resolve(upload_id)
        if canonical_id and canonical_id != upload_id:
            targets.append(canonical_id)
        for book_id in targets:
            await self.status.record_error(book_id, message, ErrorCode.NO_PAGES_AVAILABLE.value)

    async def _reset_markers(self, upload_id: str):
        """A new run starts without the markers of a previous attempt"""
        async with self.store.lock(upload_id):
            for name in (ERROR, STATUS, ACTIVITY_LOG):
                await asyncio.to_thread(self.store.remove_artifact, upload_id, name)
