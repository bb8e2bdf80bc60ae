"""
Claude API Client for the Analysis Engine

Thin async wrapper around the Anthropic messages API exposing the single
call type the engine needs: generate(prompt, system) -> text.

Vendor exceptions are translated at this boundary:
- anthropic.RateLimitError -> AnalysisProviderTransient (with retry-after)
- any other anthropic.APIError -> AnalysisProviderFatal
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import anthropic

from linkly.errors import AnalysisProviderFatal, AnalysisProviderTransient

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class TextGenerator(Protocol):
    """The external text-analysis capability."""

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        ...


@dataclass
class TokenUsage:
    """Track token usage for cost calculation."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def estimated_cost(self) -> float:
        """Estimate cost based on Claude Sonnet 4 pricing."""
        # Sonnet 4 pricing: $3/1M input, $15/1M output
        input_cost = (self.input_tokens / 1_000_000) * 3.0
        output_cost = (self.output_tokens / 1_000_000) * 15.0
        return input_cost + output_cost


def parse_retry_after(error: anthropic.APIStatusError) -> Optional[float]:
    """Seconds from the retry-after header, if the provider sent one."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ClaudeClient:
    """
    Async client for Claude API.

    Features:
    - Token usage and cost tracking
    - Rate limits surfaced with the provider's suggested delay

    The SDK's own retries are disabled; throttling is retried by the
    analysis engine so the bound is explicit.
    """

    MAX_TOKENS = 2000
    TEMPERATURE = 0.2

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 60.0,
    ):
        """
        Args:
            api_key: Anthropic API key (defaults to env var)
            model: Model to use (defaults to Sonnet 4)
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY not provided")

        self.model = model or DEFAULT_MODEL
        self.async_client = anthropic.AsyncAnthropic(
            api_key=self.api_key,
            max_retries=0,
            timeout=timeout,
        )

        # Track cumulative usage
        self.total_usage = TokenUsage()
        self.call_count = 0

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = MAX_TOKENS,
        temperature: float = TEMPERATURE,
    ) -> str:
        """
        Send a prompt and return the concatenated text of the reply.

        Raises:
            AnalysisProviderTransient: provider rate limited the call
            AnalysisProviderFatal: any other provider failure
        """
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self.async_client.messages.create(**kwargs)
        except anthropic.RateLimitError as e:
            retry_after = parse_retry_after(e)
            logger.warning(f"Claude rate limited (retry after {retry_after}s)")
            raise AnalysisProviderTransient(str(e), retry_after=retry_after) from e
        except anthropic.APIError as e:
            logger.error(f"Claude API error: {e}")
            raise AnalysisProviderFatal(f"Claude API error: {e}") from e

        content = ""
        for block in response.content:
            if hasattr(block, "text"):
                content += block.text

        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        self.total_usage.input_tokens += usage.input_tokens
        self.total_usage.output_tokens += usage.output_tokens
        self.call_count += 1

        logger.info(
            f"Claude call: {usage.input_tokens} in, {usage.output_tokens} out, "
            f"${usage.estimated_cost:.4f}"
        )

        return content

    async def close(self):
        await self.async_client.close()

    def get_total_cost(self) -> float:
        """Get total cost for all calls in this session."""
        return self.total_usage.estimated_cost

    def get_usage_summary(self) -> Dict[str, Any]:
        """Get summary of all API usage."""
        return {
            "total_calls": self.call_count,
            "input_tokens": self.total_usage.input_tokens,
            "output_tokens": self.total_usage.output_tokens,
            "total_tokens": self.total_usage.total_tokens,
            "estimated_cost": self.total_usage.estimated_cost,
        }
