"""
External API Configuration

Configuration and factory for the third-party clients the pipeline uses.
Loads credentials from environment variables.

Environment variables:
- ANTHROPIC_API_KEY: text-analysis provider key
- CLAUDE_MODEL: model to use (default: claude-sonnet-4-20250514)
- FIRECRAWL_API_KEY: Firecrawl API key
- FIRECRAWL_ENABLED: enable Firecrawl rendering (default: true)
"""

import os
import logging
from typing import Optional

from linkly.analyzer.client import ClaudeClient, DEFAULT_MODEL
from .firecrawl import FirecrawlClient

logger = logging.getLogger(__name__)


def get_env_bool(key: str, default: bool = True) -> bool:
    """Get boolean from environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("false", "0", "no", "off"):
        return False
    if val in ("true", "1", "yes", "on"):
        return True
    return default


class ExternalAPIConfig:
    """Configuration for external APIs."""

    def __init__(
        self,
        anthropic_api_key: Optional[str] = None,
        firecrawl_api_key: Optional[str] = None,
        claude_model: Optional[str] = None,
        firecrawl_enabled: bool = True,
        fetch_timeout: float = 35.0,
    ):
        self.anthropic_api_key = anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.firecrawl_api_key = firecrawl_api_key or os.environ.get("FIRECRAWL_API_KEY")
        self.claude_model = claude_model or os.environ.get("CLAUDE_MODEL", DEFAULT_MODEL)
        self.firecrawl_enabled = firecrawl_enabled and get_env_bool("FIRECRAWL_ENABLED", True)
        self.fetch_timeout = fetch_timeout

    @classmethod
    def from_settings(cls, settings) -> "ExternalAPIConfig":
        return cls(
            anthropic_api_key=settings.ANTHROPIC_API_KEY,
            firecrawl_api_key=settings.FIRECRAWL_API_KEY,
            claude_model=settings.CLAUDE_MODEL,
            firecrawl_enabled=settings.FIRECRAWL_ENABLED,
            fetch_timeout=settings.FETCH_TIMEOUT_SECONDS,
        )

    @property
    def has_anthropic(self) -> bool:
        return bool(self.anthropic_api_key)

    @property
    def has_firecrawl(self) -> bool:
        """Check if Firecrawl is configured and enabled."""
        return self.firecrawl_enabled and bool(self.firecrawl_api_key)

    def log_status(self):
        """Log configuration status."""
        logger.info(
            f"External API status: "
            f"Claude={'enabled' if self.has_anthropic else 'disabled'} ({self.claude_model}), "
            f"Firecrawl={'enabled' if self.has_firecrawl else 'disabled'}"
        )


class ExternalAPIClients:
    """
    Factory and manager for external API clients.

    Usage:
        clients = ExternalAPIClients(ExternalAPIConfig())
        if clients.firecrawl:
            text = await clients.firecrawl.scrape_text(url)
        await clients.close()
    """

    def __init__(self, config: Optional[ExternalAPIConfig] = None):
        self.config = config or ExternalAPIConfig()
        self._claude: Optional[ClaudeClient] = None
        self._firecrawl: Optional[FirecrawlClient] = None

    @property
    def claude(self) -> Optional[ClaudeClient]:
        """Get or create the text-analysis client."""
        if not self.config.has_anthropic:
            return None

        if self._claude is None:
            self._claude = ClaudeClient(
                api_key=self.config.anthropic_api_key,
                model=self.config.claude_model,
            )
            logger.info("Initialized Claude client")

        return self._claude

    @property
    def firecrawl(self) -> Optional[FirecrawlClient]:
        """Get or create Firecrawl client."""
        if not self.config.has_firecrawl:
            return None

        if self._firecrawl is None:
            self._firecrawl = FirecrawlClient(
                api_key=self.config.firecrawl_api_key,
                timeout=self.config.fetch_timeout,
            )
            logger.info("Initialized Firecrawl client")

        return self._firecrawl

    async def close(self):
        """Close all clients."""
        if self._firecrawl:
            await self._firecrawl.close()
            self._firecrawl = None

        if self._claude:
            await self._claude.close()
            self._claude = None

        logger.info("Closed external API clients")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
