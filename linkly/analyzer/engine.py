"""
Analysis Engine - summary, tags, safety rating and classification.

Three paths, chosen by content length:
1. Absent or near-empty text: deterministic fallback, no provider call
2. Short text: one combined request for all outputs
3. Long text: map-reduce
   - summarize fixed-size chunks one at a time, pacing between calls
   - one reduce call over the concatenated partial summaries
   - one assessment call (safety + classification) on the first chunk

Provider rate limits are retried here, bounded; every other provider
failure propagates to the worker as fatal for this call.
"""

import asyncio
import logging
from typing import List, Optional

from linkly.errors import AnalysisProviderTransient
from . import prompts
from .client import TextGenerator
from .parser import parse_output
from .schemas import (
    AnalysisResult,
    AssessmentOutput,
    CombinedOutput,
    SummaryOutput,
    fallback_result,
)

logger = logging.getLogger(__name__)


def split_into_chunks(text: str, chunk_size: int) -> List[str]:
    """Fixed-size, order-preserving chunks."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)]


class AnalysisEngine:
    """
    Runs the analysis protocol against a text-analysis capability.

    Usage:
        engine = AnalysisEngine(ClaudeClient())
        result = await engine.analyze(text)
    """

    def __init__(
        self,
        generator: TextGenerator,
        min_chars: int = 100,
        chunk_threshold: int = 4000,
        chunk_size: int = 4000,
        pacing_seconds: float = 1.0,
        rate_limit_attempts: int = 3,
        rate_limit_default_delay: float = 30.0,
    ):
        """
        Args:
            generator: Anything with `async generate(prompt, system) -> str`
            min_chars: Below this, return the fallback without calling out
            chunk_threshold: Above this, use the map-reduce path
            chunk_size: Characters per chunk on the map-reduce path
            pacing_seconds: Delay between consecutive chunk calls
            rate_limit_attempts: Total attempts per call when throttled
            rate_limit_default_delay: Wait when the provider gives no delay
        """
        self.generator = generator
        self.min_chars = min_chars
        self.chunk_threshold = chunk_threshold
        self.chunk_size = chunk_size
        self.pacing_seconds = pacing_seconds
        self.rate_limit_attempts = max(1, rate_limit_attempts)
        self.rate_limit_default_delay = rate_limit_default_delay

    @classmethod
    def from_settings(cls, settings, generator: TextGenerator) -> "AnalysisEngine":
        return cls(
            generator,
            min_chars=settings.MIN_CONTENT_CHARS,
            chunk_threshold=settings.CHUNK_THRESHOLD_CHARS,
            chunk_size=settings.CHUNK_SIZE_CHARS,
            pacing_seconds=settings.CHUNK_PACING_SECONDS,
            rate_limit_attempts=settings.RATE_LIMIT_MAX_ATTEMPTS,
            rate_limit_default_delay=settings.RATE_LIMIT_DEFAULT_DELAY_SECONDS,
        )

    async def analyze(self, text: Optional[str]) -> AnalysisResult:
        """
        Analyze destination text.

        Raises:
            AnalysisProviderTransient: still throttled after the retry bound
            AnalysisProviderFatal: provider failure or malformed output
        """
        text = (text or "").strip()

        if len(text) < self.min_chars:
            logger.info(f"Content too short to analyze ({len(text)} chars), using fallback")
            return fallback_result()

        if len(text) <= self.chunk_threshold:
            return await self._analyze_single(text)

        return await self._analyze_chunked(text)

    async def _analyze_single(self, text: str) -> AnalysisResult:
        system, prompt = prompts.combined_prompt(text)
        output = parse_output(await self._call(prompt, system), CombinedOutput)

        logger.info(
            f"Analysis complete: rating {output.safety.rating}, "
            f"category {output.classification.category}"
        )
        return AnalysisResult.from_outputs(output, output.safety, output.classification)

    async def _analyze_chunked(self, text: str) -> AnalysisResult:
        chunks = split_into_chunks(text, self.chunk_size)
        logger.info(f"Long content ({len(text)} chars), summarizing {len(chunks)} chunks")

        # Map: strictly sequential
        partials = []
        for index, chunk in enumerate(chunks, start=1):
            if index > 1 and self.pacing_seconds > 0:
                await asyncio.sleep(self.pacing_seconds)
            system, prompt = prompts.chunk_summary_prompt(chunk, index, len(chunks))
            partial = (await self._call(prompt, system)).strip()
            logger.debug(f"Chunk {index}/{len(chunks)} summarized: {len(partial)} chars")
            partials.append(partial)

        # Reduce
        system, prompt = prompts.reduce_prompt("\n\n".join(partials))
        summary = parse_output(await self._call(prompt, system), SummaryOutput)

        # Safety and classification from the first chunk only
        system, prompt = prompts.assessment_prompt(chunks[0])
        assessment = parse_output(await self._call(prompt, system), AssessmentOutput)

        logger.info(
            f"Chunked analysis complete: {len(chunks)} chunks, "
            f"rating {assessment.safety.rating}, category {assessment.classification.category}"
        )
        return AnalysisResult.from_outputs(
            summary, assessment.safety, assessment.classification, chunk_count=len(chunks)
        )

    async def _call(self, prompt: str, system: Optional[str] = None) -> str:
        """One provider call, retried only while rate limited."""
        for attempt in range(1, self.rate_limit_attempts + 1):
            try:
                return await self.generator.generate(prompt, system=system)
            except AnalysisProviderTransient as e:
                if attempt >= self.rate_limit_attempts:
                    logger.error(
                        f"Still rate limited after {attempt} attempts, giving up"
                    )
                    raise
                delay = e.retry_after if e.retry_after is not None else self.rate_limit_default_delay
                logger.warning(
                    f"Rate limited (attempt {attempt}/{self.rate_limit_attempts}), "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")
