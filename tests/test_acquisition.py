# FILE: tests/test_acquisition.py
"""End-to-end acquisition over fake capabilities"""
import asyncio

import pytest

from coverpages.models.books import BookMetadata, SourceInfo
from coverpages.providers.registry import (
    CONTENT_CLEANER,
    COVER_CLASSIFIER,
    PREVIEW_CAPTURE,
    SOURCE_SEARCH,
)

from conftest import COLORS, SECOND_PAGE, png_bytes

COVER = png_bytes((90, 60, 30), size=(120, 180))


async def _run(services, upload_id="upload-1"):
    job = services.acquisition.submit(upload_id, COVER)
    status = await services.acquisition.wait(job)
    await job.task
    return status


@pytest.mark.asyncio
async def test_happy_path(services, fakes):
    status = await _run(services)

    assert status.status == "complete"
    assert status.detail["resolvedFrom"] == "vol-hobbit"
    assert fakes[SOURCE_SEARCH].calls == [("The Hobbit", "J.R.R. Tolkien")]

    store = services.store
    assert len(store.get_page_assets("vol-hobbit")) == 2 * len(COLORS)
    assert store.get_page_assets("upload-1") == []
    assert services.identity.resolve("upload-1") == "vol-hobbit"
    assert store.exists("upload-1", "metadata.json")
    assert store.exists("vol-hobbit", "source_info.json")

    analysis = services.pipeline.best_analysis(services.identity.linked_ids("upload-1"))
    assert analysis.title == "The Hobbit"
    assert analysis.recommended_content() == SECOND_PAGE

    log = store.read_text("upload-1", "logs.txt")
    assert "REQUEST_RECEIVED" in log
    assert "PROCESSING_COMPLETE" in log


@pytest.mark.asyncio
async def test_no_pages_viewability(services, fakes):
    fakes[SOURCE_SEARCH].source = SourceInfo(source_id="vol-closed", viewability="NO_PAGES", title="The Hobbit")

    status = await _run(services)

    assert status.status == "error"
    assert status.detail["code"] == "NO_PAGES_AVAILABLE"
    # metadata snapshot alone never reads as complete
    assert services.store.exists("upload-1", "metadata.json")
    assert services.status.get_status("vol-closed").detail["code"] == "NO_PAGES_AVAILABLE"
    assert fakes[PREVIEW_CAPTURE].calls == 0


@pytest.mark.asyncio
async def test_not_a_book(services, fakes):
    fakes[COVER_CLASSIFIER].metadata = BookMetadata(is_book=False, reason="This is a photo of a cat")

    status = await _run(services)

    assert status.status == "error"
    assert status.detail["code"] == "NOT_A_BOOK"
    assert status.detail["message"] == "This is a photo of a cat"
    assert fakes[SOURCE_SEARCH].calls == []


@pytest.mark.asyncio
async def test_no_source_found(services, fakes):
    fakes[SOURCE_SEARCH].source = None

    status = await _run(services)

    assert status.status == "error"
    assert status.detail["code"] == "BOOK_NOT_FOUND"


@pytest.mark.asyncio
async def test_classifier_outage_is_transient(services, fakes):
    """Retryable error status without an error marker, so a resubmit can complete"""
    fakes[COVER_CLASSIFIER].error = RuntimeError("vision model down")

    status = await _run(services)

    assert status.status == "error"
    assert status.detail["code"] == "CAPABILITY_UNAVAILABLE"
    assert status.detail["retryable"] is True
    assert not services.store.exists("upload-1", "error.json")
    assert "CAPABILITY_UNAVAILABLE" in services.store.read_text("upload-1", "logs.txt")

    fakes[COVER_CLASSIFIER].error = None
    assert (await _run(services)).status == "complete"


@pytest.mark.asyncio
async def test_capture_returns_nothing(services, fakes):
    fakes[PREVIEW_CAPTURE].pages = []

    status = await _run(services)

    assert status.status == "error"
    assert status.detail["code"] == "NO_PAGES_AVAILABLE"


@pytest.mark.asyncio
async def test_corrupt_capture_is_stored_unsplit(services, fakes):
    fakes[PREVIEW_CAPTURE].pages = [png_bytes(COLORS[0]), b"not an image", png_bytes(COLORS[1])]

    status = await _run(services)

    assert status.status == "complete"
    assert "2.png" in services.store.get_page_images("vol-hobbit")
    assert [a.page_key for a in services.store.get_page_assets("vol-hobbit")] == ["1", "1", "3", "3"]


@pytest.mark.asyncio
async def test_unexpected_failure_records_processing_error(services, fakes):
    services.store.settings.max_duplicate_slots = 1
    fakes[PREVIEW_CAPTURE].pages = [png_bytes(COLORS[0])] * 3

    status = await _run(services)

    assert status.status == "error"
    assert status.detail["code"] == "PROCESSING_ERROR"
    assert "ERROR IN BOOK CONTENT PROCESSING" in services.store.read_text("upload-1", "logs.txt")
    assert not services.store.batch_open("vol-hobbit")


@pytest.mark.asyncio
async def test_provider_crash_is_transient(services, fakes):
    fakes[PREVIEW_CAPTURE].pages = None  # list(None) raises inside the provider

    status = await _run(services)

    assert status.status == "error"
    assert status.detail["code"] == "CAPABILITY_UNAVAILABLE"
    assert not services.store.exists("upload-1", "error.json")

    fakes[PREVIEW_CAPTURE].pages = [png_bytes(c) for c in COLORS]
    assert (await _run(services)).status == "complete"


@pytest.mark.asyncio
async def test_deadline_returns_current_status(services, fakes):
    """The request returns at the deadline; the job finishes in the background"""
    fakes[PREVIEW_CAPTURE].delay = 0.5

    job = services.acquisition.submit("upload-1", COVER)
    status = await services.acquisition.wait(job, deadline=0.05)

    assert status.status == "processing"
    assert not job.done

    await job.task
    assert "BOOK_CONTENT_TIMEOUT" in services.store.read_text("upload-1", "logs.txt")
    assert services.status.get_status("upload-1").status == "complete"


@pytest.mark.asyncio
async def test_repeated_submit_joins_running_job(services, fakes):
    fakes[PREVIEW_CAPTURE].delay = 0.2

    first = services.acquisition.submit("upload-1", COVER)
    second = services.acquisition.submit("upload-1", COVER)

    assert first is second
    await first.task
    assert fakes[COVER_CLASSIFIER].calls == 1


@pytest.mark.asyncio
async def test_second_upload_reuses_cached_pages(services, fakes):
    await _run(services, "upload-1")
    status = await _run(services, "upload-2")

    assert status.status == "complete"
    assert fakes[PREVIEW_CAPTURE].calls == 1
    assert fakes[CONTENT_CLEANER].primary_calls == 1
    assert services.identity.resolve("upload-2") == "vol-hobbit"


@pytest.mark.asyncio
async def test_concurrent_uploads_of_same_book(services, fakes):
    """Two uploads resolving to one source share a single page set"""
    await asyncio.gather(_run(services, "upload-1"), _run(services, "upload-2"))

    assets = services.store.get_page_assets("vol-hobbit")
    assert len(assets) == 2 * len(COLORS)
    for upload_id in ("upload-1", "upload-2"):
        assert services.status.get_status(upload_id).status == "complete"
