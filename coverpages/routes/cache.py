# FILE: coverpages/routes/cache.py
"""
Cache janitor endpoints
"""
import logging
from fastapi import APIRouter

from coverpages.services.container import get_services

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/sweep/{book_id}")
async def sweep_book(book_id: str):
    """Strip one book directory to its canonical artifacts"""
    logger.info(f"Sweeping cache: {book_id}")
    report = await get_services().janitor.sweep(book_id)
    return {"status": "success", **report.to_json()}


@router.post("/sweep")
async def sweep_all():
    """Sweep every book directory"""
    reports = await get_services().janitor.sweep_all()
    return {
        "status": "success",
        "swept": len(reports),
        "removed": sum(len(r.removed) for r in reports),
        "reports": [r.to_json() for r in reports],
    }
