"""
Firecrawl API Client

Rendering service used by the content fetcher when a key is configured.

Firecrawl handles:
- JavaScript rendering (client-side generated pages)
- Anti-bot bypass
- Clean markdown output with navigation and footers removed

API: https://firecrawl.dev
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class FirecrawlError(Exception):
    """Firecrawl API error, with the HTTP status when there was one."""

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    initial_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


class FirecrawlClient:
    """
    Async client for the Firecrawl scrape endpoint.

    Usage:
        async with FirecrawlClient(api_key="fc-...") as client:
            text = await client.scrape_text("https://example.com")
    """

    BASE_URL = "https://api.firecrawl.dev/v1"

    def __init__(
        self,
        api_key: str,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 35.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Firecrawl API key
            retry_config: Retry configuration (optional)
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.api_key = api_key
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout

        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._closed = False

    async def scrape_url(
        self,
        url: str,
        formats: List[str] = None,
        only_main_content: bool = True,
        wait_for: int = None,
    ) -> Dict[str, Any]:
        """
        Render a single URL.

        Args:
            url: URL to scrape
            formats: Output formats (markdown, html, rawHtml)
            only_main_content: Drop nav/footer boilerplate
            wait_for: Extra wait in ms for client-side rendering

        Returns:
            {"success": bool, "data": {"markdown": "...", "metadata": {...}}}
        """
        if self._closed:
            raise FirecrawlError("Client has been closed")

        payload = {
            "url": url,
            "formats": formats or ["markdown"],
            "onlyMainContent": only_main_content,
            # Firecrawl takes its own page budget in milliseconds
            "timeout": int(self.timeout * 1000),
        }
        if wait_for:
            payload["waitFor"] = wait_for

        return await self._request_with_retry("/scrape", payload)

    async def scrape_text(self, url: str, wait_for: int = None) -> str:
        """Rendered page as markdown text; empty string when nothing came back."""
        result = await self.scrape_url(url, wait_for=wait_for)
        if not result.get("success"):
            raise FirecrawlError(
                f"Scrape unsuccessful: {result.get('error', 'unknown error')}",
                response=result,
            )
        return (result.get("data") or {}).get("markdown") or ""

    async def _request_with_retry(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST with retry on throttling, server errors and transport failures."""
        config = self.retry_config
        last_exception: Optional[FirecrawlError] = None

        for attempt in range(config.max_retries + 1):
            try:
                response = await self._client.post(endpoint, json=payload)

                if response.status_code < 400:
                    return response.json()

                try:
                    error_data = response.json() if response.content else {}
                except ValueError:
                    error_data = {"error": response.text[:200]}

                if response.status_code not in config.retryable_status_codes:
                    raise FirecrawlError(
                        f"API error: {error_data.get('error', response.status_code)}",
                        status_code=response.status_code,
                        response=error_data,
                    )

                last_exception = FirecrawlError(
                    f"API error: {response.status_code}",
                    status_code=response.status_code,
                    response=error_data,
                )

            except httpx.TimeoutException as e:
                last_exception = FirecrawlError(f"Request timed out: {e}")
            except httpx.RequestError as e:
                last_exception = FirecrawlError(f"Request failed: {e}")

            if attempt < config.max_retries:
                delay = min(
                    config.initial_delay * (config.exponential_base ** attempt),
                    config.max_delay,
                )
                logger.warning(
                    f"Firecrawl request failed, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{config.max_retries + 1})"
                )
                await asyncio.sleep(delay)

        raise last_exception

    async def close(self):
        """Close the HTTP client."""
        if not self._closed:
            await self._client.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
