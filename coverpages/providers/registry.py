# FILE: coverpages/providers/registry.py
"""
Capability registry with circuit breaker and timeouts

Every external call goes through here so that a slow or failing
collaborator surfaces as CapabilityUnavailable instead of a raw error.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from coverpages.config import Settings, get_settings
from coverpages.models.books import BookMetadata, SourceInfo
from coverpages.services.errors import CapabilityUnavailable, CoverPagesError

logger = logging.getLogger(__name__)

COVER_CLASSIFIER = "cover_classifier"
SOURCE_SEARCH = "source_search"
PREVIEW_CAPTURE = "preview_capture"
OCR = "ocr"
CONTENT_CLEANER = "content_cleaner"


class CircuitBreaker:
    """Simple circuit breaker per capability"""

    def __init__(self, threshold: int = 3, timeout_seconds: int = 60):
        self.threshold = threshold
        self.timeout_seconds = timeout_seconds
        self.failures = {}
        self.open_until = {}

    def record_failure(self, capability: str):
        """Record a failure for capability"""
        self.failures[capability] = self.failures.get(capability, 0) + 1
        if self.failures[capability] >= self.threshold:
            self.open_until[capability] = datetime.utcnow() + timedelta(seconds=self.timeout_seconds)
            logger.warning(f"Circuit breaker opened for {capability}")

    def record_success(self, capability: str):
        """Record a success for capability"""
        self.failures[capability] = 0
        if capability in self.open_until:
            del self.open_until[capability]

    def is_open(self, capability: str) -> bool:
        """Check if circuit is open for capability"""
        if capability in self.open_until:
            if datetime.utcnow() < self.open_until[capability]:
                return True
            # Timeout expired, reset
            del self.open_until[capability]
            self.failures[capability] = 0
        return False


class CapabilityRegistry:
    """Named capability providers behind one guarded call path"""

    def __init__(self, providers: Optional[Dict[str, Any]] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.circuit_breaker = CircuitBreaker(
            threshold=self.settings.circuit_breaker_threshold,
            timeout_seconds=self.settings.circuit_breaker_timeout,
        )
        if providers is None:
            self.providers: Dict[str, Any] = {}
            self._initialize_providers()
        else:
            self.providers = dict(providers)

    def _initialize_providers(self):
        """Initialize providers from settings"""
        from coverpages.providers.google_books import GoogleBooksPreviewCapture, GoogleBooksSearch
        from coverpages.providers.openai import OpenAIProvider
        from coverpages.providers.tesseract import TesseractProvider

        settings = self.settings

        if settings.openai_api_key:
            try:
                openai_provider = OpenAIProvider(
                    api_key=settings.openai_api_key,
                    model=settings.openai_model,
                    vision_model=settings.openai_vision_model,
                )
                self.providers[COVER_CLASSIFIER] = openai_provider
                self.providers[CONTENT_CLEANER] = openai_provider
            except Exception as e:
                logger.warning(f"Failed to initialize OpenAI: {e}")
        else:
            logger.warning("OPENAI_API_KEY not set; classification and cleanup unavailable")

        self.providers[SOURCE_SEARCH] = GoogleBooksSearch(
            base_url=settings.google_books_base_url,
            api_key=settings.google_books_api_key,
            timeout=settings.capability_timeout,
        )
        self.providers[PREVIEW_CAPTURE] = GoogleBooksPreviewCapture(
            url_template=settings.preview_page_url_template,
            max_pages=settings.max_preview_pages,
            timeout=settings.capability_timeout,
        )
        self.providers[OCR] = TesseractProvider(
            lang=settings.ocr_language,
            psm_mode=settings.tesseract_psm,
            confidence_mode=settings.ocr_confidence_mode,
        )

        logger.info(f"Initialized capabilities: {list(self.providers.keys())}")

    def available(self) -> Dict[str, bool]:
        names = [COVER_CLASSIFIER, SOURCE_SEARCH, PREVIEW_CAPTURE, OCR, CONTENT_CLEANER]
        return {name: name in self.providers and not self.circuit_breaker.is_open(name) for name in names}

    async def call(self, capability: str, method: str, *args, **kwargs) -> Any:
        """Run provider.method in a worker thread under timeout and breaker"""
        provider = self.providers.get(capability)
        if provider is None:
            raise CapabilityUnavailable(capability, "not configured")
        if self.circuit_breaker.is_open(capability):
            raise CapabilityUnavailable(capability, "circuit open")

        timeout = self.settings.capability_timeout
        start = datetime.utcnow()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(getattr(provider, method), *args, **kwargs),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self.circuit_breaker.record_failure(capability)
            logger.warning(f"Capability {capability}.{method} timed out after {timeout}s")
            raise CapabilityUnavailable(capability, f"timed out after {timeout}s")
        except CoverPagesError:
            raise
        except Exception as e:
            self.circuit_breaker.record_failure(capability)
            logger.warning(f"Capability {capability}.{method} failed: {e}")
            raise CapabilityUnavailable(capability, str(e)) from e

        duration_ms = int((datetime.utcnow() - start).total_seconds() * 1000)
        self.circuit_breaker.record_success(capability)
        logger.info(f"Capability {capability}.{method} ok in {duration_ms}ms")
        return result

    async def classify_cover(self, image_bytes: bytes) -> BookMetadata:
        return await self.call(COVER_CLASSIFIER, "classify_cover", image_bytes)

    async def search_source(self, title: str, author: str) -> Optional[SourceInfo]:
        return await self.call(SOURCE_SEARCH, "search_source", title, author)

    async def capture_preview_pages(self, preview_handle: str) -> List[bytes]:
        return await self.call(PREVIEW_CAPTURE, "capture_preview_pages", preview_handle)

    async def run_ocr(self, image_bytes: bytes) -> Dict[str, Any]:
        return await self.call(OCR, "run_ocr", image_bytes)

    async def cleanup_and_classify(self, records, title=None, author=None, is_non_fiction=None) -> Dict[str, Any]:
        return await self.call(CONTENT_CLEANER, "cleanup_and_classify", records, title, author, is_non_fiction)

    async def extract_pages_direct(self, records, title=None, author=None) -> Dict[str, Any]:
        return await self.call(CONTENT_CLEANER, "extract_pages_direct", records, title, author)


_registry: Optional[CapabilityRegistry] = None


def get_capability_registry() -> CapabilityRegistry:
    """Get or create global capability registry"""
    global _registry
    if _registry is None:
        _registry = CapabilityRegistry()
    return _registry
