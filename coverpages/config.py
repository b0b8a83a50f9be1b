# FILE: coverpages/config.py
"""
Configuration management for the cover-pages service
Loads from environment variables with validation
"""
import os
from typing import List, Optional
from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Backend server
    backend_host: str = Field(default="0.0.0.0", alias="BACKEND_HOST")
    backend_port: int = Field(default=8000, alias="BACKEND_PORT")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Data paths
    cache_dir: str = Field(default="./cache/book-images", alias="CACHE_DIR")
    logs_dir: str = Field(default="./logs", alias="LOGS_DIR")

    # OpenAI (cover classification, cleanup, direct extraction)
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o", alias="OPENAI_MODEL")
    openai_vision_model: str = Field(default="gpt-4o", alias="OPENAI_VISION_MODEL")

    # Google Books (source search and preview capture)
    google_books_api_key: Optional[str] = Field(default=None, alias="GOOGLE_BOOKS_API_KEY")
    google_books_base_url: str = Field(
        default="https://www.googleapis.com/books/v1",
        alias="GOOGLE_BOOKS_BASE_URL"
    )
    preview_page_url_template: str = Field(
        default="https://books.google.com/books/content?id={source_id}&pg=PP{page}&img=1&zoom=3",
        alias="PREVIEW_PAGE_URL_TEMPLATE",
        description="Format string for one preview page image; receives source_id and page"
    )
    max_preview_pages: int = Field(default=15, alias="MAX_PREVIEW_PAGES")

    # Capability calls
    capability_timeout: int = Field(default=30, alias="CAPABILITY_TIMEOUT")
    circuit_breaker_threshold: int = Field(default=3, alias="CIRCUIT_BREAKER_THRESHOLD")
    circuit_breaker_timeout: int = Field(default=60, alias="CIRCUIT_BREAKER_TIMEOUT")
    request_deadline_seconds: float = Field(
        default=60.0,
        alias="REQUEST_DEADLINE_SECONDS",
        description="How long a foreground request waits before returning the current status"
    )

    # Content validation
    min_content_length: int = Field(
        default=50,
        alias="MIN_CONTENT_LENGTH",
        description="Pages shorter than this (chars) are treated as failed extraction"
    )
    analysis_page_char_limit: int = Field(
        default=1000,
        alias="ANALYSIS_PAGE_CHAR_LIMIT",
        description="Per-page OCR text sent to the cleanup model"
    )
    content_error_sentinel: str = Field(default="Error extracting content", alias="CONTENT_ERROR_SENTINEL")

    # Content store
    max_duplicate_slots: int = Field(default=99, alias="MAX_DUPLICATE_SLOTS")

    # OCR
    ocr_language: str = Field(default="eng", alias="OCR_LANGUAGE")
    tesseract_psm: int = Field(default=3, alias="TESSERACT_PSM")
    ocr_confidence_mode: str = Field(
        default="mean",
        alias="OCR_CONFIDENCE_MODE",
        description="How word confidences collapse into a page confidence: 'mean' or 'min'"
    )
    page_confidence_mode: str = Field(
        default="mean",
        alias="PAGE_CONFIDENCE_MODE",
        description="How the two half confidences combine into one page confidence: 'mean' or 'min'"
    )

    # CORS
    cors_origins: List[str] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS")

    # Validators
    @validator("ocr_confidence_mode", "page_confidence_mode")
    def validate_confidence_mode(cls, v):
        if v not in ["mean", "min"]:
            raise ValueError("confidence mode must be 'mean' or 'min'")
        return v

    @validator("max_duplicate_slots")
    def validate_max_duplicate_slots(cls, v):
        if v < 1:
            raise ValueError("max_duplicate_slots must be at least 1")
        if v > 10000:
            raise ValueError("max_duplicate_slots should not exceed 10000")
        return v

    @validator("min_content_length", "analysis_page_char_limit", "max_preview_pages")
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Ensure directories exist
        for dir_path in [self.cache_dir, self.logs_dir]:
            os.makedirs(dir_path, exist_ok=True)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create singleton settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings (useful for testing)"""
    global _settings
    _settings = None
    return get_settings()
