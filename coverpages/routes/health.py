# FILE: coverpages/routes/health.py
"""
Health check endpoint
"""
import logging
from fastapi import APIRouter

from coverpages import __version__
from coverpages.services.container import get_services

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """
    Health check endpoint
    Reports which external capabilities are configured and not tripped
    """
    services = get_services()
    capabilities = services.capabilities.available()

    return {
        "status": "healthy" if all(capabilities.values()) else "degraded",
        "version": __version__,
        "capabilities": capabilities,
        "cached_books": len(services.store.list_book_ids()),
    }
