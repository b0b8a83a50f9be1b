# FILE: coverpages/app.py
"""
FastAPI application entry point for the cover-pages service
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coverpages import __version__
from coverpages.config import get_settings
from coverpages.routes import books, cache, health
from coverpages.services.container import get_services
from coverpages.services.errors import CoverPagesError

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    logger.info(f"Starting cover-pages backend v{__version__}")

    services = get_services()
    unavailable = [name for name, ok in services.capabilities.available().items() if not ok]
    if unavailable:
        logger.warning(f"Capabilities unavailable at startup: {unavailable}")

    logger.info(f"Cache directory: {services.store.root}")

    yield

    # Shutdown
    logger.info("Shutting down cover-pages backend")


app = FastAPI(
    title="Cover Pages API",
    description="Identify a book from its cover and serve its first content pages",
    version=__version__,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(CoverPagesError)
async def cover_pages_exception_handler(request: Request, exc: CoverPagesError):
    logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "Internal server error", "code": "INTERNAL_ERROR", "detail": str(exc)}
    )


# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(books.router, tags=["books"])
app.include_router(cache.router, prefix="/cache", tags=["cache"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Cover Pages",
        "version": __version__,
        "status": "active"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "coverpages.app:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.environment == "development"
    )
