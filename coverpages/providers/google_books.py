# FILE: coverpages/providers/google_books.py
"""
Google Books adapters: volume search and preview page capture
"""
import logging
from typing import List, Optional

import httpx

from coverpages.models.books import SourceInfo
from coverpages.providers.base import PreviewCapture, SourceSearch

logger = logging.getLogger(__name__)

PREVIEWABLE = ("PARTIAL", "ALL_PAGES")


class GoogleBooksSearch(SourceSearch):
    """Google Books volumes search"""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        logger.info(f"Google Books search: {base_url}")

    def search_source(self, title: str, author: str) -> Optional[SourceInfo]:
        """Best volume for title/author; previewable volumes win"""
        query = f'intitle:"{title}"'
        if author:
            query += f' inauthor:"{author}"'

        params = {
            "q": query,
            "maxResults": 5,
            "printType": "books",
            "projection": "full",
        }
        if self.api_key:
            params["key"] = self.api_key

        response = httpx.get(f"{self.base_url}/volumes", params=params, timeout=self.timeout)
        response.raise_for_status()

        items = response.json().get("items") or []
        if not items:
            logger.info(f"No volumes for {query}")
            return None

        chosen = next(
            (item for item in items if item.get("accessInfo", {}).get("viewability") in PREVIEWABLE),
            items[0],
        )
        info = chosen.get("volumeInfo", {})
        source = SourceInfo(
            source_id=chosen["id"],
            viewability=chosen.get("accessInfo", {}).get("viewability", "UNKNOWN"),
            title=info.get("title", title),
            author=", ".join(info.get("authors", [])) or author,
        )
        logger.info(f"Selected volume {source.source_id} ({source.viewability}) for {query}")
        return source


class GoogleBooksPreviewCapture(PreviewCapture):
    """Fetch preview page images one by one until the preview runs out"""

    def __init__(self, url_template: str, max_pages: int = 15, timeout: int = 30):
        self.url_template = url_template
        self.max_pages = max_pages
        self.timeout = timeout

    def capture_preview_pages(self, preview_handle: str) -> List[bytes]:
        pages: List[bytes] = []
        with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
            for page in range(1, self.max_pages + 1):
                url = self.url_template.format(source_id=preview_handle, page=page)
                response = client.get(url)
                content_type = response.headers.get("content-type", "")
                if response.status_code != 200 or not content_type.startswith("image/"):
                    logger.info(
                        f"Preview for {preview_handle} ended at page {page} "
                        f"(status={response.status_code}, type={content_type})"
                    )
                    break
                pages.append(response.content)
        logger.info(f"Captured {len(pages)} preview pages for {preview_handle}")
        return pages
