# FILE: tests/test_page_text.py
"""Per-page merge of OCRed halves"""
import pytest

from coverpages.models.books import OCRRecord
from coverpages.services.page_text import build_ocr_document, combine_half_confidences, merge_page_halves


def _record(index, page_key, side, text, confidence):
    return OCRRecord(
        index=index,
        filename=f"{page_key}_{side}.png",
        page_key=page_key,
        side=side,
        text=text,
        confidence=confidence,
    )


RECORDS = [
    _record(0, "1", "left", "It was a bright cold day", 0.9),
    _record(1, "1", "right", "in April", 0.7),
    _record(2, "cover", "left", "NINETEEN", 0.5),
    _record(3, "cover", "right", "EIGHTY-FOUR", 0.3),
    _record(4, "2", "left", "and the clocks", 0.8),
    _record(5, "2", "right", "were striking thirteen", 0.6),
]


@pytest.mark.parametrize("confidences,mode,expected", [
    ([], "mean", 0.0),
    ([0.9, 0.7], "mean", 0.8),
    ([0.9, 0.7], "min", 0.7),
    ([0.55], "min", 0.55),
])
def test_combine_half_confidences(confidences, mode, expected):
    assert combine_half_confidences(confidences, mode) == expected


def test_pages_follow_capture_order():
    """Numbered pages first, then cover, whatever the record order"""
    pages = merge_page_halves(list(reversed(RECORDS)))

    assert [p.page_key for p in pages] == ["1", "2", "cover"]
    assert pages[0].left_text == "It was a bright cold day"
    assert pages[0].right_text == "in April"
    assert pages[0].left_filename == "1_left.png"
    assert pages[0].right_filename == "1_right.png"


def test_page_confidence_mode():
    mean_pages = merge_page_halves(RECORDS, "mean")
    min_pages = merge_page_halves(RECORDS, "min")

    assert mean_pages[0].confidence == 0.8
    assert min_pages[0].confidence == 0.7
    assert mean_pages[0].left_confidence == 0.9
    assert mean_pages[0].right_confidence == 0.7


def test_page_with_one_half():
    """A page missing its right half keeps the left confidence as-is"""
    pages = merge_page_halves([_record(0, "PT1", "left", "only left", 0.4)])

    assert len(pages) == 1
    assert pages[0].right_text == ""
    assert pages[0].right_filename == ""
    assert pages[0].confidence == 0.4
    assert pages[0].full_text == "Page PT1:\nonly left"


def test_build_ocr_document():
    document = build_ocr_document("vol-1", RECORDS, "min")

    assert document.book_id == "vol-1"
    assert len(document.pages) == 3
    assert document.average_confidence == pytest.approx(0.6333)
    assert document.full_text.split("\n\n")[0] == "Page 1:\nIt was a bright cold day\nin April"
    assert document.to_json()["pages"][2]["pageKey"] == "cover"


def test_empty_collection():
    document = build_ocr_document("vol-1", [])
    assert document.pages == []
    assert document.full_text == ""
    assert document.average_confidence == 0.0
