# FILE: coverpages/services/activity_log.py
"""
Per-book activity log (logs.txt)

Plain timestamped lines plus named milestones. The status resolver falls
back to scanning this text when no marker file has been written.
"""
import logging
from datetime import datetime
from typing import Optional

from coverpages.services.content_store import ACTIVITY_LOG, ContentStore

logger = logging.getLogger(__name__)

# Milestone names
REQUEST_RECEIVED = "REQUEST_RECEIVED"
API_REQUEST_START = "API_REQUEST_START"
API_REQUEST_ERROR = "API_REQUEST_ERROR"
BOOK_CONTENT_TIMEOUT = "BOOK_CONTENT_TIMEOUT"
BOOK_NOT_AVAILABLE = "BOOK_NOT_AVAILABLE"
CAPABILITY_UNAVAILABLE = "CAPABILITY_UNAVAILABLE"
PAGES_CAPTURED = "PAGES_CAPTURED"
PROCESSING_COMPLETE = "PROCESSING_COMPLETE"

# Log text recognised by the status resolver
NO_PAGES_SIGNATURE = "Book has NO_PAGES viewability"
PROCESSING_FAILURE_SIGNATURE = "ERROR IN BOOK CONTENT PROCESSING"


class ActivityLog:
    """Append-only activity log stored next to the book's artifacts"""

    def __init__(self, store: ContentStore):
        self.store = store

    def log(self, book_id: str, message: str):
        line = f"[{datetime.utcnow().isoformat()}] {message}\n"
        try:
            self.store.append_text(book_id, ACTIVITY_LOG, line)
        except OSError as e:
            logger.warning(f"[{book_id}] Could not append activity log: {e}")
        logger.debug(f"[{book_id}] {message}")

    def milestone(self, book_id: str, name: str, details: Optional[str] = None):
        message = f"MILESTONE: {name}"
        if details:
            message += f" - {details}"
        self.log(book_id, message)
        logger.info(f"[{book_id}] {message}")

    def read(self, book_id: str) -> Optional[str]:
        return self.store.read_text(book_id, ACTIVITY_LOG)
