"""
External API Integrations

Clients for third-party APIs used by the analysis pipeline:
- Firecrawl: JavaScript rendering for content fetching
- Config: Unified configuration and client management
"""

from .firecrawl import FirecrawlClient, FirecrawlError, RetryConfig
from .config import ExternalAPIConfig, ExternalAPIClients, get_env_bool

__all__ = [
    # Firecrawl
    "FirecrawlClient",
    "FirecrawlError",
    "RetryConfig",
    # Config
    "ExternalAPIConfig",
    "ExternalAPIClients",
    "get_env_bool",
]
