# FILE: coverpages/routes/books.py
"""
Book endpoints: process, query, status, errors and page images
"""
import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from coverpages.models.books import ProcessingStatus, RecordErrorRequest
from coverpages.services.container import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter()


def _resolve_book_id(services: Services, book_id: str) -> str:
    """book_id itself, or the id its mapping points at when it has no directory"""
    if services.store.exists(book_id):
        return book_id
    record = services.identity.locate(book_id)
    if record is not None:
        return record.canonical_source_id
    return book_id


@router.post("/process-book")
async def process_book(
    file: UploadFile = File(...),
    upload_id: Optional[str] = Form(None, alias="uploadId"),
):
    """
    Start (or join) processing for a cover photo.

    Waits up to the request deadline; after that the job keeps running and
    the response carries whatever status is current.
    """
    services = get_services()
    image_bytes = await file.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Empty upload")

    upload_id = upload_id or str(uuid4())
    logger.info(f"Process book request: upload_id={upload_id}, {len(image_bytes)} bytes")

    job = services.acquisition.submit(upload_id, image_bytes)
    status = await services.acquisition.wait(job)

    response = {"bookId": upload_id, "jobId": job.job_id, **status.to_json()}
    analysis = services.pipeline.best_analysis(services.identity.linked_ids(upload_id))
    if analysis is not None and analysis.has_content(services.settings.content_error_sentinel):
        response["contentAnalysis"] = analysis.to_json()
        response["recommendedContent"] = analysis.recommended_content()
    return response


@router.get("/books/{book_id}")
async def get_book(book_id: str):
    """Merged metadata and page images"""
    services = get_services()
    resolved_id = _resolve_book_id(services, book_id)
    if not services.store.exists(resolved_id):
        raise HTTPException(status_code=404, detail="Book not found")

    ids = services.identity.linked_ids(resolved_id)
    metadata = services.identity.effective_metadata(resolved_id)
    images = []
    for linked_id in ids:
        names = services.store.get_page_images(linked_id)
        if names:
            images = [f"/book-images/{linked_id}/{name}" for name in names]
            break

    record = services.identity.locate(book_id)
    return {
        "id": book_id,
        "canonicalSourceId": record.canonical_source_id if record else None,
        "title": metadata.title,
        "author": metadata.author,
        "isNonFiction": metadata.is_non_fiction,
        "images": images,
        "status": services.status.get_status(book_id).status,
    }


@router.get("/content-analysis/{book_id}")
async def get_content_analysis(book_id: str):
    """Reconciled content analysis plus the page to show first"""
    services = get_services()
    analysis = await services.pipeline.reconcile(_resolve_book_id(services, book_id))
    if analysis is None:
        raise HTTPException(status_code=404, detail="Content analysis not found")

    return {
        "bookId": book_id,
        **analysis.to_json(),
        "recommendedContent": analysis.recommended_content(),
    }


@router.get("/ocr-text/{book_id}")
async def get_ocr_text(book_id: str):
    """OCR text merged per page, with page and book confidences"""
    services = get_services()
    ids = services.identity.linked_ids(_resolve_book_id(services, book_id))
    document = services.pipeline.ocr_document(ids)
    if document is None:
        raise HTTPException(status_code=404, detail="OCR text not found")
    return {"requestedId": book_id, **document.to_json()}


@router.get("/book-status/{book_id}")
async def get_book_status(book_id: str):
    """Derived processing status"""
    services = get_services()
    status = services.status.get_status(book_id)
    if not services.store.exists(book_id) and status.status == ProcessingStatus.PROCESSING.value:
        return JSONResponse(status_code=404, content={"bookId": book_id, **status.to_json()})
    return {"bookId": book_id, **status.to_json()}


@router.post("/record-error")
async def record_error(request: RecordErrorRequest):
    """Record a client-side or out-of-band failure for a book"""
    services = get_services()
    error = await services.status.record_error(request.book_id, request.message, request.code)
    return {"success": True, "bookId": request.book_id, "error": error.to_json()}


@router.get("/book-images/{book_id}/{filename}")
async def get_book_image(book_id: str, filename: str):
    """Serve one stored page image"""
    services = get_services()
    path = services.store.image_path(book_id, filename)
    if path is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return FileResponse(path)
