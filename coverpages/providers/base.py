# FILE: coverpages/providers/base.py
"""
Capability interfaces for the external collaborators

Providers are synchronous; the capability registry runs them in a worker
thread with a timeout.
"""
import logging
from typing import Any, Dict, List, Optional

from coverpages.models.books import BookMetadata, SourceInfo

logger = logging.getLogger(__name__)


class CoverClassifier:
    """Identify a book from a photo of its cover"""

    def classify_cover(self, image_bytes: bytes) -> BookMetadata:
        raise NotImplementedError


class SourceSearch:
    """Find a previewable source for a title/author"""

    def search_source(self, title: str, author: str) -> Optional[SourceInfo]:
        raise NotImplementedError


class PreviewCapture:
    """Fetch preview page images in reading order"""

    def capture_preview_pages(self, preview_handle: str) -> List[bytes]:
        raise NotImplementedError


class OCREngine:
    """Image to text; returns {text, confidence} with confidence in [0, 1]"""

    def run_ocr(self, image_bytes: bytes) -> Dict[str, Any]:
        raise NotImplementedError


class ContentCleaner:
    """
    Pick the first two real content pages out of ordered OCR records.

    Both methods return {title, author, isNonFiction, firstPage, secondPage}.
    """

    def cleanup_and_classify(
        self,
        records: List[Dict[str, Any]],
        title: Optional[str] = None,
        author: Optional[str] = None,
        is_non_fiction: Optional[bool] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_pages_direct(
        self,
        records: List[Dict[str, Any]],
        title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError
