"""
Content Fetcher

Retrieves a textual representation of a destination address.

Rendering path:
1. Firecrawl (JavaScript rendering) when configured
2. Direct httpx GET with HTML to text extraction otherwise, or when
   Firecrawl fails or uses up its half of the timeout

The result is whitespace-collapsed and truncated. Unreachable pages and
near-empty text come back as None: that is an expected outcome which the
analysis engine turns into its fallback result, not a failure to retry.
"""

import asyncio
import html as html_lib
import logging
import re
from typing import Optional

import httpx

from linkly.errors import FetchUnavailable
from linkly.integrations.firecrawl import FirecrawlClient, FirecrawlError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 35.0
DEFAULT_MAX_CHARS = 8000
DEFAULT_MIN_CHARS = 100
# Firecrawl may use at most this share of the fetch timeout
FIRECRAWL_BUDGET_SHARE = 0.5

TEXT_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")

_SCRIPT_RE = re.compile(r'<script[^>]*>.*?</script>', re.DOTALL | re.IGNORECASE)
_STYLE_RE = re.compile(r'<style[^>]*>.*?</style>', re.DOTALL | re.IGNORECASE)
_NOSCRIPT_RE = re.compile(r'<noscript[^>]*>.*?</noscript>', re.DOTALL | re.IGNORECASE)
_COMMENT_RE = re.compile(r'<!--.*?-->', re.DOTALL)
_TAG_RE = re.compile(r'<[^>]+>')
_WHITESPACE_RE = re.compile(r'\s+')


def extract_text(html: str) -> str:
    """Extract readable text from HTML."""
    html = _SCRIPT_RE.sub('', html)
    html = _STYLE_RE.sub('', html)
    html = _NOSCRIPT_RE.sub('', html)
    html = _COMMENT_RE.sub('', html)

    text = _TAG_RE.sub(' ', html)
    return html_lib.unescape(text)


def normalize_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Collapse whitespace and truncate. max_chars <= 0 means unbounded."""
    text = _WHITESPACE_RE.sub(' ', text or '').strip()
    if max_chars and max_chars > 0:
        text = text[:max_chars]
    return text


class ContentFetcher:
    """Fetches and normalizes destination content."""

    def __init__(
        self,
        firecrawl: Optional[FirecrawlClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_chars: int = DEFAULT_MAX_CHARS,
        min_chars: int = DEFAULT_MIN_CHARS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.firecrawl = firecrawl
        self.timeout = timeout
        self.max_chars = max_chars
        self.min_chars = min_chars
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={
                "User-Agent": (
                    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
                ),
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings, firecrawl: Optional[FirecrawlClient] = None) -> "ContentFetcher":
        return cls(
            firecrawl=firecrawl,
            timeout=settings.FETCH_TIMEOUT_SECONDS,
            max_chars=settings.FETCH_MAX_CHARS,
            min_chars=settings.MIN_CONTENT_CHARS,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def fetch(self, url: str, max_chars: Optional[int] = None) -> Optional[str]:
        """
        Fetch normalized text for a destination.

        Args:
            url: Destination address
            max_chars: Override the truncation bound (0 = unbounded, for
                the chunked analysis path)

        Returns:
            Normalized text, or None when the page could not be rendered
            or yielded fewer than `min_chars` characters.
        """
        limit = self.max_chars if max_chars is None else max_chars

        try:
            raw = await self._render(url)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out fetching {url} within {self.timeout}s")
            return None
        except FetchUnavailable as e:
            logger.warning(f"Content unavailable for {url}: {e}")
            return None

        text = normalize_text(raw, limit)
        if len(text) < self.min_chars:
            logger.info(f"Near-empty content for {url} ({len(text)} chars)")
            return None

        logger.info(f"Fetched {len(text)} chars from {url}")
        return text

    async def _render(self, url: str) -> str:
        """Firecrawl within its share of the budget, then direct fetch with what is left."""
        loop = asyncio.get_running_loop()
        started = loop.time()

        if self.firecrawl is not None:
            budget = self.timeout * FIRECRAWL_BUDGET_SHARE
            try:
                return await asyncio.wait_for(self.firecrawl.scrape_text(url), timeout=budget)
            except asyncio.TimeoutError:
                logger.warning(f"Firecrawl timed out for {url} after {budget:.1f}s, falling back to direct fetch")
            except FirecrawlError as e:
                logger.warning(f"Firecrawl failed for {url}, falling back to direct fetch: {e}")

        remaining = self.timeout - (loop.time() - started)
        return await asyncio.wait_for(self._fetch_direct(url), timeout=remaining)

    async def _fetch_direct(self, url: str) -> str:
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchUnavailable(f"HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise FetchUnavailable(f"Request error: {e}") from e

        content_type = response.headers.get("content-type", "text/html").lower()
        if not any(t in content_type for t in TEXT_CONTENT_TYPES):
            raise FetchUnavailable(f"Unsupported content type: {content_type}")

        if "text/plain" in content_type:
            return response.text
        return extract_text(response.text)
