# FILE: coverpages/providers/openai.py
"""
OpenAI provider adapter

Cover classification (vision), cleanup/classification of OCR pages and
the simpler direct extraction used as a fallback.
"""
import base64
import json
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from coverpages.models.books import BookMetadata
from coverpages.providers.base import ContentCleaner, CoverClassifier

logger = logging.getLogger(__name__)

CLASSIFY_SYSTEM_PROMPT = (
    "You identify books from photographs of their covers. "
    "Respond with a JSON object with these keys:\n"
    "- isBook: (boolean) whether the image shows a book\n"
    "- title: (string) the book title, empty if unknown\n"
    "- author: (string) the author, empty if unknown\n"
    "- isNonFiction: (boolean) true for non-fiction\n"
    "- confidence: (number 0-1) how sure you are\n"
    "- reason: (string) one sentence explaining the decision"
)

CLEANUP_SYSTEM_PROMPT = (
    "You analyse OCR text of consecutive book pages. Find the first page of real content, "
    "after front matter such as the title page, copyright notice, dedication and table of contents. "
    "For fiction this is usually Chapter 1 or the Prologue; for non-fiction the Introduction or Chapter 1. "
    "Return the full text of that page and of the page after it, with OCR noise removed and nothing truncated. "
    "Respond with a JSON object with keys: title, author, fiction (boolean), first_page, second_page."
)

DIRECT_SYSTEM_PROMPT = (
    "Extract the first two pages of main body text from these OCR pages. "
    "Skip any front matter. Fix obvious OCR errors only. "
    "Respond with a JSON object with keys: first_page, second_page."
)


def _format_pages(records: List[Dict[str, Any]]) -> str:
    parts = []
    for record in records:
        label = f"{record.get('pageKey', record.get('index'))} ({record.get('side', '')})"
        parts.append(f"--- Page {record.get('index', 0) + 1}: {label} ---\n{record.get('text', '')}")
    return "\n\n".join(parts)


def _normalize_pages(data: Dict[str, Any], title: Optional[str], author: Optional[str],
                     is_non_fiction: Optional[bool]) -> Dict[str, Any]:
    fiction = data.get("fiction")
    if isinstance(fiction, bool):
        non_fiction = not fiction
    elif is_non_fiction is not None:
        non_fiction = is_non_fiction
    else:
        non_fiction = bool(data.get("isNonFiction", False))
    return {
        "title": data.get("title") or title or "",
        "author": data.get("author") or author or "",
        "isNonFiction": non_fiction,
        "firstPage": (data.get("first_page") or data.get("firstPage") or "").strip(),
        "secondPage": (data.get("second_page") or data.get("secondPage") or "").strip(),
    }


class OpenAIProvider(CoverClassifier, ContentCleaner):
    """OpenAI provider"""

    def __init__(self, api_key: str, model: str, vision_model: Optional[str] = None):
        self.client = OpenAI(api_key=api_key)
        self.model = model
        self.vision_model = vision_model or model
        logger.info(f"OpenAI provider: model={model}, vision_model={self.vision_model}")

    def _complete_json(self, model: str, messages: List[Dict[str, Any]], temperature: float,
                       max_tokens: int) -> Dict[str, Any]:
        response = self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        if not content:
            raise ValueError("Empty response from OpenAI")
        return json.loads(content)

    def classify_cover(self, image_bytes: bytes) -> BookMetadata:
        """Classify a cover photo"""
        encoded = base64.b64encode(image_bytes).decode("ascii")
        data = self._complete_json(
            self.vision_model,
            messages=[
                {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Identify this book."},
                        {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}},
                    ],
                },
            ],
            temperature=0.2,
            max_tokens=300,
        )
        confidence = data.get("confidence")
        return BookMetadata(
            title=(data.get("title") or "").strip(),
            author=(data.get("author") or "").strip(),
            is_non_fiction=bool(data.get("isNonFiction", False)),
            is_book=bool(data.get("isBook", False)),
            confidence=min(max(float(confidence), 0.0), 1.0) if confidence is not None else None,
            reason=data.get("reason"),
        )

    def cleanup_and_classify(
        self,
        records: List[Dict[str, Any]],
        title: Optional[str] = None,
        author: Optional[str] = None,
        is_non_fiction: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Pick and clean the first two content pages"""
        known = ""
        if title:
            known += f' titled "{title}"'
        if author:
            known += f" by {author}"
        prompt = (
            f"Here are {len(records)} consecutive OCR pages from a book{known}, in reading order.\n\n"
            f"{_format_pages(records)}"
        )
        data = self._complete_json(
            self.model,
            messages=[
                {"role": "system", "content": CLEANUP_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.1,
            max_tokens=4000,
        )
        return _normalize_pages(data, title, author, is_non_fiction)

    def extract_pages_direct(
        self,
        records: List[Dict[str, Any]],
        title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Plain extraction with no classification"""
        data = self._complete_json(
            self.model,
            messages=[
                {"role": "system", "content": DIRECT_SYSTEM_PROMPT},
                {"role": "user", "content": _format_pages(records)},
            ],
            temperature=0.1,
            max_tokens=4000,
        )
        return _normalize_pages(data, title, author, None)
