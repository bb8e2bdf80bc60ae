"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

import logging
import sys
from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://127.0.0.1:6379/0"

    # Claude API (the analysis worker refuses to start without it)
    ANTHROPIC_API_KEY: Optional[str] = None
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"

    # Firecrawl (optional - direct fetch is used without it)
    FIRECRAWL_API_KEY: Optional[str] = None
    FIRECRAWL_ENABLED: bool = True

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Resolution
    SAFETY_WARNING_THRESHOLD: int = 3
    LINK_CACHE_TTL_SECONDS: int = 3600
    SHORT_CODE_LENGTH: int = 5

    # Content fetching
    FETCH_TIMEOUT_SECONDS: float = 35.0
    FETCH_MAX_CHARS: int = 8000  # 0 disables truncation
    MIN_CONTENT_CHARS: int = 100

    # Analysis
    CHUNK_THRESHOLD_CHARS: int = 4000
    CHUNK_SIZE_CHARS: int = 4000
    CHUNK_PACING_SECONDS: float = 1.0
    RATE_LIMIT_MAX_ATTEMPTS: int = 3
    RATE_LIMIT_DEFAULT_DELAY_SECONDS: float = 30.0

    # Job queue
    JOB_ATTEMPTS: int = 3
    JOB_BACKOFF_SECONDS: float = 5.0
    WORKER_CONCURRENCY: int = 2
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    JOB_STALL_TIMEOUT_SECONDS: int = 300

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for worker processes and scripts."""
    # stdout, since the hosting platform treats stderr as errors
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )

    # Quiet down chatty loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
