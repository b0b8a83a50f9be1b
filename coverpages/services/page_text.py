# FILE: coverpages/services/page_text.py
"""
Per-page view over an OCR collection

OCR runs on halves; readers want pages. Halves sharing a page key are
merged back into one PageText with both texts and a page confidence.
"""
import logging
from typing import Dict, List

from coverpages.models.books import OCRDocument, OCRRecord, PageText
from coverpages.services.content_store import capture_order_key

logger = logging.getLogger(__name__)


def combine_half_confidences(confidences: List[float], mode: str = "mean") -> float:
    """Page confidence from the confidences (0-1) of the halves that were OCRed"""
    if not confidences:
        return 0.0
    if mode == "min":
        return round(min(confidences), 4)
    return round(sum(confidences) / len(confidences), 4)


def merge_page_halves(records: List[OCRRecord], mode: str = "mean") -> List[PageText]:
    """Group half records by page key, in capture order"""
    pages: Dict[str, PageText] = {}
    halves: Dict[str, List[float]] = {}

    ordered = sorted(records, key=lambda r: (capture_order_key(r.page_key, r.side), r.index))
    for record in ordered:
        page = pages.get(record.page_key)
        if page is None:
            page = PageText(page_key=record.page_key)
            pages[record.page_key] = page
            halves[record.page_key] = []
        if record.side == "right":
            page.right_text = record.text
            page.right_confidence = record.confidence
            page.right_filename = record.filename
        else:
            page.left_text = record.text
            page.left_confidence = record.confidence
            page.left_filename = record.filename
        halves[record.page_key].append(record.confidence)

    for key, page in pages.items():
        page.confidence = combine_half_confidences(halves[key], mode)
    return list(pages.values())


def build_ocr_document(book_id: str, records: List[OCRRecord], mode: str = "mean") -> OCRDocument:
    """Pages, their joined text and the average confidence over every half"""
    pages = merge_page_halves(records, mode)
    average = combine_half_confidences([r.confidence for r in records], "mean")
    logger.debug(f"[{book_id}] OCR document: {len(pages)} pages, average confidence {average}")
    return OCRDocument(
        book_id=book_id,
        pages=pages,
        full_text="\n\n".join(page.full_text for page in pages),
        average_confidence=average,
    )
