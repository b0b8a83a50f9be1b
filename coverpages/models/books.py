# FILE: coverpages/models/books.py
"""
Book artifact models

Field aliases are the camelCase names used in the per-book JSON files.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "ProcessingStatus",
    "ErrorCode",
    "BookMetadata",
    "MappingRecord",
    "PageAssetRef",
    "OCRRecord",
    "ContentAnalysis",
    "ErrorInfo",
    "StatusMarker",
    "SourceInfo",
    "BookStatus",
    "SweepReport",
    "RecordErrorRequest",
    "PageText",
    "OCRDocument",
]


class ProcessingStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    NO_PAGES_AVAILABLE = "NO_PAGES_AVAILABLE"
    BOOK_NOT_FOUND = "BOOK_NOT_FOUND"
    NOT_A_BOOK = "NOT_A_BOOK"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    CAPABILITY_UNAVAILABLE = "CAPABILITY_UNAVAILABLE"


class _Artifact(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class BookMetadata(_Artifact):
    """Title/author/genre as known at some stage"""
    title: str = ""
    author: str = ""
    is_non_fiction: bool = Field(default=False, alias="isNonFiction")
    is_book: bool = Field(default=True, alias="isBook")
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reason: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.title or self.author)


class MappingRecord(_Artifact):
    """Link between a client upload id and the canonical source id"""
    upload_id: str = Field(alias="uploadId", min_length=1)
    canonical_source_id: str = Field(alias="canonicalSourceId", min_length=1)
    snapshot_metadata: BookMetadata = Field(default_factory=BookMetadata, alias="snapshotMetadata")


class PageAssetRef(_Artifact):
    """Reference to one stored page half"""
    book_id: str = Field(alias="bookId")
    page_key: str = Field(alias="pageKey")
    side: str
    filename: str
    path: str

    @property
    def right_filename(self) -> str:
        return self.filename.replace("_left.png", "_right.png")


class OCRRecord(_Artifact):
    index: int
    filename: str
    page_key: str = Field(alias="pageKey")
    side: str
    text: str = ""
    confidence: float = 0.0


class ContentAnalysis(_Artifact):
    """The authoritative first/second displayable pages plus metadata"""
    title: str = ""
    author: str = ""
    is_non_fiction: bool = Field(default=False, alias="isNonFiction")
    fiction: bool = True
    first_page: str = Field(default="", alias="firstPage")
    second_page: str = Field(default="", alias="secondPage")
    # digest of the OCR collection the pages were chosen from
    ocr_digest: Optional[str] = Field(default=None, alias="ocrDigest")
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")

    def with_metadata(self, metadata: BookMetadata) -> "ContentAnalysis":
        """Copy with metadata fields refreshed; page text is untouched"""
        return self.model_copy(update={
            "title": metadata.title or self.title,
            "author": metadata.author or self.author,
            "is_non_fiction": metadata.is_non_fiction,
            "fiction": not metadata.is_non_fiction,
        })

    def metadata(self) -> BookMetadata:
        return BookMetadata(title=self.title, author=self.author, is_non_fiction=self.is_non_fiction)

    def has_content(self, sentinel: str) -> bool:
        """At least one page is non-blank and not the extraction-error sentinel"""
        return any(
            page.strip() and sentinel not in page
            for page in (self.first_page, self.second_page)
        )

    def recommended_content(self) -> str:
        """Fiction opens on the second page, non-fiction on the first"""
        return self.first_page if self.is_non_fiction else self.second_page


class ErrorInfo(_Artifact):
    message: str
    code: str = ErrorCode.PROCESSING_ERROR.value
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class StatusMarker(_Artifact):
    status: str
    error: Optional[str] = None
    last_updated: datetime = Field(default_factory=datetime.utcnow, alias="lastUpdated")


class SourceInfo(_Artifact):
    """Result of the source search; the preview handle is the source id"""
    source_id: str = Field(alias="sourceId")
    viewability: str = "UNKNOWN"
    title: str = ""
    author: str = ""

    @property
    def has_pages(self) -> bool:
        return self.viewability != "NO_PAGES"


class BookStatus(_Artifact):
    status: str
    detail: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ProcessingStatus.COMPLETE.value, ProcessingStatus.ERROR.value)


class SweepReport(_Artifact):
    book_id: str = Field(alias="bookId")
    removed: list = Field(default_factory=list)
    kept: list = Field(default_factory=list)
    directory_removed: bool = Field(default=False, alias="directoryRemoved")


class RecordErrorRequest(_Artifact):
    """Record an error for a book"""
    book_id: str = Field(alias="bookId")
    message: str
    code: Optional[str] = None


class PageText(_Artifact):
    """Both OCRed halves of one captured page"""
    page_key: str = Field(alias="pageKey")
    left_text: str = Field(default="", alias="leftText")
    right_text: str = Field(default="", alias="rightText")
    left_confidence: float = Field(default=0.0, alias="leftConfidence")
    right_confidence: float = Field(default=0.0, alias="rightConfidence")
    confidence: float = 0.0
    left_filename: str = Field(default="", alias="leftFilename")
    right_filename: str = Field(default="", alias="rightFilename")

    @property
    def full_text(self) -> str:
        return f"Page {self.page_key}:\n{self.left_text}\n{self.right_text}".strip()


class OCRDocument(_Artifact):
    """Per-page view over an OCR collection"""
    book_id: str = Field(alias="bookId")
    pages: List[PageText] = Field(default_factory=list)
    full_text: str = Field(default="", alias="fullText")
    average_confidence: float = Field(default=0.0, alias="averageConfidence")
