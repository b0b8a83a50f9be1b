# FILE: tests/conftest.py

import io
import os
import sys
import tempfile
import time
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Keep module-level settings (app import) out of the working tree
_tmp_root = Path(tempfile.mkdtemp(prefix="coverpages-tests-"))
os.environ.setdefault("CACHE_DIR", str(_tmp_root / "cache"))
os.environ.setdefault("LOGS_DIR", str(_tmp_root / "logs"))

import pytest
from PIL import Image

from coverpages.config import Settings, reload_settings
from coverpages.models.books import BookMetadata, SourceInfo
from coverpages.providers.base import (
    ContentCleaner,
    CoverClassifier,
    OCREngine,
    PreviewCapture,
    SourceSearch,
)
from coverpages.providers.registry import (
    CONTENT_CLEANER,
    COVER_CLASSIFIER,
    OCR,
    PREVIEW_CAPTURE,
    SOURCE_SEARCH,
    CapabilityRegistry,
)
from coverpages.services.container import build_services
from coverpages.services.content_store import ContentStore

# Drop any singleton built before the test env was set
reload_settings()

FIRST_PAGE = (
    "Chapter One. In a hole in the ground there lived a creature who liked "
    "nothing better than a quiet afternoon and a second breakfast."
)
SECOND_PAGE = (
    "The morning the wizard arrived was bright and green, and the smoke of "
    "the pipe curled up in long grey rings over the hill and the water."
)
DIRECT_FIRST = "Directly extracted opening page text that is comfortably longer than fifty characters."
DIRECT_SECOND = "Directly extracted following page text that is also comfortably longer than fifty."

COLORS = [(200, 30, 30), (30, 200, 30), (30, 30, 200), (200, 200, 30)]


def png_bytes(color, size=(200, 100), mode="RGB") -> bytes:
    """Solid-colour PNG"""
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeClassifier(CoverClassifier):
    def __init__(self, metadata: BookMetadata):
        self.metadata = metadata
        self.error = None
        self.calls = 0

    def classify_cover(self, image_bytes):
        self.calls += 1
        if self.error:
            raise self.error
        return self.metadata


class FakeSearch(SourceSearch):
    def __init__(self, source):
        self.source = source
        self.calls = []

    def search_source(self, title, author):
        self.calls.append((title, author))
        return self.source


class FakeCapture(PreviewCapture):
    def __init__(self, pages, delay: float = 0.0):
        self.pages = pages
        self.delay = delay
        self.calls = 0

    def capture_preview_pages(self, preview_handle):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return list(self.pages)


class FakeOCR(OCREngine):
    """Text is derived from the colour of the top-left pixel"""

    def __init__(self):
        self.calls = 0
        self.fail_after = None

    def run_ocr(self, image_bytes):
        if self.fail_after is not None and self.calls >= self.fail_after:
            raise RuntimeError("tesseract crashed")
        self.calls += 1
        image = Image.open(io.BytesIO(image_bytes)).convert("RGB")
        r, g, b = image.getpixel((0, 0))
        return {"text": f"Page text r{r} g{g} b{b}", "confidence": 0.9}


class FakeCleaner(ContentCleaner):
    """primary/direct may be a dict to return or an exception to raise"""

    def __init__(self):
        self.primary = None
        self.direct = None
        self.primary_calls = 0
        self.direct_calls = 0
        self.last_records = None
        self.last_known = None

    def cleanup_and_classify(self, records, title=None, author=None, is_non_fiction=None):
        self.primary_calls += 1
        self.last_records = records
        self.last_known = (title, author, is_non_fiction)
        if isinstance(self.primary, Exception):
            raise self.primary
        if self.primary is not None:
            return dict(self.primary)
        return {
            "title": title or "Model Title",
            "author": author or "Model Author",
            "isNonFiction": bool(is_non_fiction),
            "firstPage": FIRST_PAGE,
            "secondPage": SECOND_PAGE,
        }

    def extract_pages_direct(self, records, title=None, author=None):
        self.direct_calls += 1
        if isinstance(self.direct, Exception):
            raise self.direct
        if self.direct is not None:
            return dict(self.direct)
        return {"firstPage": DIRECT_FIRST, "secondPage": DIRECT_SECOND}


@pytest.fixture
def make_png():
    """Provide the PNG helper"""
    return png_bytes


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing at a per-test cache directory"""
    return Settings(
        CACHE_DIR=str(tmp_path / "cache"),
        LOGS_DIR=str(tmp_path / "logs"),
        CAPABILITY_TIMEOUT=5,
        REQUEST_DEADLINE_SECONDS=5,
        CIRCUIT_BREAKER_THRESHOLD=100,
    )


@pytest.fixture
def store(test_settings):
    return ContentStore(settings=test_settings)


@pytest.fixture
def fakes():
    """Fake capability providers"""
    return {
        COVER_CLASSIFIER: FakeClassifier(BookMetadata(
            title="The Hobbit", author="J.R.R. Tolkien", is_non_fiction=False, confidence=0.95
        )),
        SOURCE_SEARCH: FakeSearch(SourceInfo(
            source_id="vol-hobbit", viewability="PARTIAL", title="The Hobbit", author="J.R.R. Tolkien"
        )),
        PREVIEW_CAPTURE: FakeCapture([png_bytes(c) for c in COLORS]),
        OCR: FakeOCR(),
        CONTENT_CLEANER: FakeCleaner(),
    }


@pytest.fixture
def capabilities(fakes, test_settings):
    return CapabilityRegistry(providers=fakes, settings=test_settings)


@pytest.fixture
def services(store, capabilities, test_settings):
    """Fully wired services over fakes and a temp cache"""
    return build_services(store=store, capabilities=capabilities, settings=test_settings)
