# FILE: coverpages/services/status.py
"""
Status resolver

Processing status is never stored as such; it is derived from whichever
marker artifacts are present, in a fixed precedence:

1. error.json            -> error
2. status.json           -> its status, verbatim
3. content_analysis.json -> complete (error if the source has no pages)
4. logs.txt              -> error on a known signature, else processing
                            (a capability outage is a retryable error)
5. nothing               -> unknown
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from coverpages.models.books import (
    BookStatus,
    ContentAnalysis,
    ErrorCode,
    ErrorInfo,
    ProcessingStatus,
    SourceInfo,
    StatusMarker,
)
from coverpages.services.activity_log import (
    API_REQUEST_ERROR,
    BOOK_NOT_AVAILABLE,
    CAPABILITY_UNAVAILABLE,
    NO_PAGES_SIGNATURE,
    PROCESSING_FAILURE_SIGNATURE,
    ActivityLog,
)
from coverpages.services.content_store import (
    CONTENT_ANALYSIS,
    ERROR,
    SOURCE_INFO,
    STATUS,
    ContentStore,
)
from coverpages.services.identity import IdentityReconciler

logger = logging.getLogger(__name__)

NOT_AVAILABLE_SIGNATURES = (NO_PAGES_SIGNATURE, BOOK_NOT_AVAILABLE)
FAILURE_SIGNATURES = (PROCESSING_FAILURE_SIGNATURE, API_REQUEST_ERROR)
CAPABILITY_SIGNATURE = f"MILESTONE: {CAPABILITY_UNAVAILABLE}"

NO_PAGES_MESSAGE = "This book has no preview pages available"
PROCESSING_ERROR_MESSAGE = "An error occurred while processing the book"
CAPABILITY_MESSAGE = "A required service is temporarily unavailable; submit the book again to retry"

_TITLE_RE = re.compile(r'title="([^"]*)"')
_AUTHOR_RE = re.compile(r'author="([^"]*)"')


@dataclass
class StatusSnapshot:
    """Everything the resolver looks at for one directory"""
    dir_exists: bool
    error: Optional[Dict[str, Any]] = None
    status_marker: Optional[Dict[str, Any]] = None
    analysis: Optional[ContentAnalysis] = None
    source_info: Optional[SourceInfo] = None
    activity_log: Optional[str] = None


def resolve_status(snapshot: StatusSnapshot, sentinel: str = "Error extracting content") -> BookStatus:
    """Pure precedence function; the first signal present wins"""
    if not snapshot.dir_exists:
        return BookStatus(
            status=ProcessingStatus.PROCESSING.value,
            detail={"message": "Book is still being processed"},
        )

    if snapshot.error is not None:
        error = snapshot.error
        detail = {
            "message": error.get("message") or "Unknown error",
            "code": error.get("code") or ErrorCode.PROCESSING_ERROR.value,
        }
        if error.get("timestamp"):
            detail["timestamp"] = error["timestamp"]
        return BookStatus(status=ProcessingStatus.ERROR.value, detail=detail)

    if snapshot.status_marker is not None:
        marker = dict(snapshot.status_marker)
        status = str(marker.pop("status", ProcessingStatus.UNKNOWN.value))
        return BookStatus(status=status, detail=marker)

    analysis = snapshot.analysis
    if analysis is not None and analysis.has_content(sentinel):
        if snapshot.source_info is not None and not snapshot.source_info.has_pages:
            return BookStatus(
                status=ProcessingStatus.ERROR.value,
                detail={
                    "message": NO_PAGES_MESSAGE,
                    "code": ErrorCode.NO_PAGES_AVAILABLE.value,
                    "title": analysis.title or snapshot.source_info.title,
                    "author": analysis.author or snapshot.source_info.author,
                },
            )
        return BookStatus(
            status=ProcessingStatus.COMPLETE.value,
            detail={
                "title": analysis.title,
                "author": analysis.author,
                "isNonFiction": analysis.is_non_fiction,
            },
        )

    log = snapshot.activity_log
    if log is not None:
        if any(signature in log for signature in NOT_AVAILABLE_SIGNATURES):
            detail = {"message": NO_PAGES_MESSAGE, "code": ErrorCode.NO_PAGES_AVAILABLE.value}
            title = _TITLE_RE.search(log)
            author = _AUTHOR_RE.search(log)
            if title:
                detail["title"] = title.group(1)
            if author:
                detail["author"] = author.group(1)
            return BookStatus(status=ProcessingStatus.ERROR.value, detail=detail)
        if any(signature in log for signature in FAILURE_SIGNATURES):
            return BookStatus(
                status=ProcessingStatus.ERROR.value,
                detail={"message": PROCESSING_ERROR_MESSAGE, "code": ErrorCode.PROCESSING_ERROR.value},
            )
        if CAPABILITY_SIGNATURE in log:
            return BookStatus(
                status=ProcessingStatus.ERROR.value,
                detail={
                    "message": CAPABILITY_MESSAGE,
                    "code": ErrorCode.CAPABILITY_UNAVAILABLE.value,
                    "retryable": True,
                },
            )
        return BookStatus(
            status=ProcessingStatus.PROCESSING.value,
            detail={"message": "Book is still being processed"},
        )

    return BookStatus(status=ProcessingStatus.UNKNOWN.value, detail={"message": "No status information"})


class StatusResolver:
    """Reads marker artifacts from disk and applies resolve_status"""

    def __init__(self, store: ContentStore, identity: IdentityReconciler):
        self.store = store
        self.identity = identity
        self.activity = ActivityLog(store)

    def snapshot(self, book_id: str) -> StatusSnapshot:
        if not self.store.exists(book_id):
            return StatusSnapshot(dir_exists=False)

        analysis = None
        data = self.store.read_json(book_id, CONTENT_ANALYSIS)
        if data:
            try:
                analysis = ContentAnalysis.model_validate(data)
            except ValidationError as e:
                logger.warning(f"[{book_id}] Ignoring invalid content analysis: {e}")

        source_info = None
        data = self.store.read_json(book_id, SOURCE_INFO)
        if data:
            try:
                source_info = SourceInfo.model_validate(data)
            except ValidationError as e:
                logger.warning(f"[{book_id}] Ignoring invalid source info: {e}")

        error = self.store.read_json(book_id, ERROR)
        status_marker = self.store.read_json(book_id, STATUS)

        return StatusSnapshot(
            dir_exists=True,
            error=error if isinstance(error, dict) else None,
            status_marker=status_marker if isinstance(status_marker, dict) else None,
            analysis=analysis,
            source_info=source_info,
            activity_log=self.activity.read(book_id),
        )

    def get_status(self, book_id: str) -> BookStatus:
        """Status for book_id; a linked directory answers when this one is not final"""
        sentinel = self.store.settings.content_error_sentinel
        status = resolve_status(self.snapshot(book_id), sentinel)
        if status.is_terminal and not status.detail.get("retryable"):
            return status

        linked = self.identity.linked_ids(book_id)[1:]
        if not linked and not self.store.exists(book_id):
            record = self.identity.locate(book_id)
            if record is not None:
                linked = [record.canonical_source_id]

        for linked_id in linked:
            other = resolve_status(self.snapshot(linked_id), sentinel)
            if other.is_terminal and not other.detail.get("retryable"):
                other.detail["resolvedFrom"] = linked_id
                return other
        return status

    async def record_error(self, book_id: str, message: str, code: Optional[str] = None) -> ErrorInfo:
        """Write error.json and status.json for book_id"""
        error = ErrorInfo(message=message, code=code or ErrorCode.PROCESSING_ERROR.value)
        marker = StatusMarker(status=ProcessingStatus.ERROR.value, error=message)
        async with self.store.lock(book_id):
            await asyncio.to_thread(self.store.write_json, book_id, ERROR, error.to_json())
            await asyncio.to_thread(self.store.write_json, book_id, STATUS, marker.to_json())
        self.activity.log(book_id, f"Recorded error {error.code}: {message}")
        logger.info(f"[{book_id}] Recorded error {error.code}: {message}")
        return error
