# FILE: tests/test_routes.py
"""HTTP surface over fake capabilities"""
import pytest
from fastapi.testclient import TestClient

from coverpages.app import app
from coverpages.services.container import set_services

from conftest import COLORS, SECOND_PAGE, png_bytes


@pytest.fixture
def client(services):
    set_services(services)
    with TestClient(app) as test_client:
        yield test_client
    set_services(None)


def _upload(client, upload_id="upload-1"):
    return client.post(
        "/process-book",
        files={"file": ("cover.png", png_bytes((90, 60, 30)), "image/png")},
        data={"uploadId": upload_id},
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert all(data["capabilities"].values())


def test_process_book(client):
    response = _upload(client)

    assert response.status_code == 200
    data = response.json()
    assert data["bookId"] == "upload-1"
    assert data["status"] == "complete"
    assert data["contentAnalysis"]["title"] == "The Hobbit"
    assert data["recommendedContent"] == SECOND_PAGE


def test_process_book_generates_upload_id(client):
    response = client.post("/process-book", files={"file": ("cover.png", png_bytes((1, 2, 3)), "image/png")})
    assert response.status_code == 200
    assert response.json()["bookId"]


def test_process_book_rejects_empty_upload(client):
    response = client.post("/process-book", files={"file": ("cover.png", b"", "image/png")})
    assert response.status_code == 400


def test_get_book_lists_canonical_images(client):
    _upload(client)

    response = client.get("/books/upload-1")

    assert response.status_code == 200
    data = response.json()
    assert data["canonicalSourceId"] == "vol-hobbit"
    assert data["title"] == "The Hobbit"
    assert data["status"] == "complete"
    assert len(data["images"]) == 2 * len(COLORS)
    assert data["images"][0] == "/book-images/vol-hobbit/1_left.png"

    image = client.get(data["images"][0])
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/png"


def test_get_unknown_book(client):
    assert client.get("/books/nobody").status_code == 404


def test_book_image_rejects_non_images(client):
    _upload(client)
    assert client.get("/book-images/vol-hobbit/ocr_results.json").status_code == 404
    assert client.get("/book-images/vol-hobbit/missing_left.png").status_code == 404


def test_content_analysis(client):
    _upload(client)

    response = client.get("/content-analysis/upload-1")

    assert response.status_code == 200
    data = response.json()
    assert data["bookId"] == "upload-1"
    assert data["recommendedContent"] == SECOND_PAGE
    assert data["fiction"] is True


def test_content_analysis_not_found(client):
    assert client.get("/content-analysis/nobody").status_code == 404


def test_ocr_text(client):
    _upload(client)

    response = client.get("/ocr-text/upload-1")

    assert response.status_code == 200
    data = response.json()
    assert data["requestedId"] == "upload-1"
    assert data["bookId"] == "vol-hobbit"
    assert [p["pageKey"] for p in data["pages"]] == ["1", "2", "3", "4"]
    assert data["pages"][0]["leftFilename"] == "1_left.png"
    assert data["averageConfidence"] == 0.9
    assert data["fullText"].startswith("Page 1:")


def test_ocr_text_not_found(client):
    assert client.get("/ocr-text/nobody").status_code == 404


def test_book_status_unknown_directory(client):
    response = client.get("/book-status/nobody")
    assert response.status_code == 404
    assert response.json()["status"] == "processing"


def test_record_error_then_status(client):
    response = client.post("/record-error", json={"bookId": "upload-9", "message": "camera failed"})
    assert response.status_code == 200
    assert response.json()["error"]["code"] == "PROCESSING_ERROR"

    status = client.get("/book-status/upload-9").json()
    assert status["status"] == "error"
    assert status["detail"]["message"] == "camera failed"


def test_cache_sweep(client, services):
    _upload(client)
    services.store.write_json("vol-hobbit", "error.json", {"message": "stale"})

    response = client.post("/cache/sweep/vol-hobbit")

    assert response.status_code == 200
    assert "error.json" in response.json()["removed"]
    assert not services.store.exists("vol-hobbit", "error.json")

    response = client.post("/cache/sweep")
    assert response.status_code == 200
    assert response.json()["swept"] == 2
