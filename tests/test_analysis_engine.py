"""
Tests for the analysis engine.

These tests verify:
- Deterministic fallback without provider calls
- Single combined request for short content
- Sequential map-reduce for long content
- Bounded rate-limit retries; immediate propagation of fatal errors
- Strict structured output validation
- Provider error translation in the Claude client
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from conftest import ScriptedGenerator, assessment_reply, combined_reply, summary_reply
from linkly.analyzer.client import ClaudeClient
from linkly.analyzer.engine import AnalysisEngine, split_into_chunks
from linkly.analyzer.parser import extract_json_object, parse_output
from linkly.analyzer.schemas import AnalysisResult, ClassificationOutput, CombinedOutput
from linkly.errors import (
    AnalysisOutputError,
    AnalysisProviderFatal,
    AnalysisProviderTransient,
)

SLEEP = "linkly.analyzer.engine.asyncio.sleep"


def _engine(generator, **kwargs):
    options = dict(min_chars=100, chunk_threshold=4000, chunk_size=4000, pacing_seconds=0)
    options.update(kwargs)
    return AnalysisEngine(generator, **options)


# =============================================================================
# FALLBACK
# =============================================================================

class TestFallback:
    """Absent or near-empty content never reaches the provider."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [None, "", "   ", "Loading..." * 5])
    async def test_short_text_returns_fallback(self, text):
        generator = ScriptedGenerator()

        result = await _engine(generator).analyze(text)

        assert generator.calls == []
        assert result.is_fallback
        assert result.safety_rating == 3
        assert result.category == "Other"
        assert result.tags == []
        assert result.summary == "Could not extract sufficient text content from this URL."

    @pytest.mark.asyncio
    async def test_fallback_is_deterministic(self):
        engine = _engine(ScriptedGenerator())
        first, second = await engine.analyze(None), await engine.analyze("tiny")
        assert first.to_link_patch().keys() == second.to_link_patch().keys()
        assert (first.summary, first.safety_justification) == (second.summary, second.safety_justification)


# =============================================================================
# SHORT PATH
# =============================================================================

class TestSinglePass:
    """Content at or below the chunk threshold uses one combined request."""

    @pytest.mark.asyncio
    async def test_one_call_for_all_outputs(self, page_text):
        generator = ScriptedGenerator([combined_reply(rating=2, category="Scam/Phishing/Unsafe")])

        result = await _engine(generator).analyze(page_text)

        assert len(generator.calls) == 1
        assert page_text.strip() in generator.prompts[0]
        assert result.safety_rating == 2
        assert result.category == "Scam/Phishing/Unsafe"
        assert result.tags == ["python", "packaging"]
        assert result.chunk_count == 1
        assert not result.is_fallback

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self):
        generator = ScriptedGenerator([combined_reply()])
        await _engine(generator, chunk_threshold=500).analyze("x" * 500)
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_link_patch_marks_completed(self, page_text):
        result = await _engine(ScriptedGenerator([combined_reply()])).analyze(page_text)
        patch_ = result.to_link_patch()

        assert patch_["analysis_status"] == "COMPLETED"
        assert patch_["analysis_error"] is None
        assert patch_["category"] == "Programming/Tech Blog"


# =============================================================================
# MAP-REDUCE PATH
# =============================================================================

class TestMapReduce:
    """Content above the threshold is chunked, summarized in order, then reduced."""

    LONG_TEXT = "A" * 4000 + "B" * 4000 + "C" * 2000

    def _generator(self, delay=0.0):
        return ScriptedGenerator(
            ["Part one.", "Part two.", "Part three.", summary_reply("Whole page."), assessment_reply(rating=5)],
            delay=delay,
        )

    def test_split_into_chunks(self):
        chunks = split_into_chunks(self.LONG_TEXT, 4000)
        assert [len(c) for c in chunks] == [4000, 4000, 2000]
        assert "".join(chunks) == self.LONG_TEXT

    @pytest.mark.asyncio
    async def test_chunks_are_summarized_sequentially(self):
        generator = self._generator(delay=0.01)

        result = await _engine(generator).analyze(self.LONG_TEXT)

        assert generator.max_in_flight == 1
        for previous, current in zip(generator.calls, generator.calls[1:]):
            assert current["started"] >= previous["finished"]
        assert "part 1 of 3" in generator.prompts[0]
        assert "part 3 of 3" in generator.prompts[2]
        assert result.chunk_count == 3

    @pytest.mark.asyncio
    async def test_single_reduce_over_partials(self):
        generator = self._generator()

        result = await _engine(generator).analyze(self.LONG_TEXT)

        assert len(generator.calls) == 5
        reduce_prompt = generator.prompts[3]
        assert "Part one.\n\nPart two.\n\nPart three." in reduce_prompt
        assert result.summary == "Whole page."
        assert result.tags == ["docs"]

    @pytest.mark.asyncio
    async def test_assessment_uses_first_chunk_only(self):
        generator = self._generator()

        result = await _engine(generator).analyze(self.LONG_TEXT)

        assessment_prompt = generator.prompts[4]
        assert "A" * 4000 in assessment_prompt
        assert "B" * 10 not in assessment_prompt
        assert result.safety_rating == 5
        assert result.category == "Documentation/Reference"

    @pytest.mark.asyncio
    async def test_pacing_between_chunk_calls(self):
        generator = self._generator()

        with patch(SLEEP, new_callable=AsyncMock) as sleep:
            await _engine(generator, pacing_seconds=1.5).analyze(self.LONG_TEXT)

        assert [c.args[0] for c in sleep.await_args_list] == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_malformed_reduce_output_is_fatal(self):
        generator = ScriptedGenerator(["one", "two", "three", "not json at all"])

        with pytest.raises(AnalysisOutputError):
            await _engine(generator).analyze(self.LONG_TEXT)


# =============================================================================
# PROVIDER FAILURES
# =============================================================================

class TestProviderFailures:
    """Rate limits retry with the provider's delay; everything else propagates."""

    @pytest.mark.asyncio
    async def test_rate_limit_waits_then_succeeds(self, page_text):
        generator = ScriptedGenerator([
            AnalysisProviderTransient("429", retry_after=7),
            AnalysisProviderTransient("429"),
            combined_reply(),
        ])

        with patch(SLEEP, new_callable=AsyncMock) as sleep:
            result = await _engine(generator, rate_limit_default_delay=30.0).analyze(page_text)

        assert [c.args[0] for c in sleep.await_args_list] == [7, 30.0]
        assert len(generator.calls) == 3
        assert result.safety_rating == 4

    @pytest.mark.asyncio
    async def test_rate_limit_escalates_after_bound(self, page_text):
        generator = ScriptedGenerator(default=AnalysisProviderTransient("429", retry_after=1))

        with patch(SLEEP, new_callable=AsyncMock):
            with pytest.raises(AnalysisProviderTransient):
                await _engine(generator, rate_limit_attempts=3).analyze(page_text)

        assert len(generator.calls) == 3

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, page_text):
        generator = ScriptedGenerator([AnalysisProviderFatal("invalid api key")])

        with patch(SLEEP, new_callable=AsyncMock) as sleep:
            with pytest.raises(AnalysisProviderFatal):
                await _engine(generator).analyze(page_text)

        assert len(generator.calls) == 1
        sleep.assert_not_awaited()


# =============================================================================
# OUTPUT PARSING
# =============================================================================

class TestOutputParsing:
    """Test structured output extraction and validation."""

    def test_fenced_json(self):
        raw = 'Here you go:\n```json\n{"summary": "s", "tags": []}\n```'
        assert extract_json_object(raw) == {"summary": "s", "tags": []}

    def test_json_inside_prose(self):
        raw = 'Sure! {"summary": "s", "tags": ["a"]} Hope this helps.'
        assert extract_json_object(raw)["tags"] == ["a"]

    @pytest.mark.parametrize("raw", ["", "I cannot analyze this page.", "[1, 2, 3]"])
    def test_non_object_output_is_error(self, raw):
        with pytest.raises(AnalysisOutputError):
            extract_json_object(raw)

    @pytest.mark.parametrize("rating", [0, 6, 2.5, "high", None])
    def test_out_of_range_rating_is_error(self, rating):
        raw = json.loads(combined_reply())
        raw["safety"]["rating"] = rating
        with pytest.raises(AnalysisOutputError):
            parse_output(json.dumps(raw), CombinedOutput)

    def test_legacy_safety_keys_accepted(self):
        raw = json.loads(combined_reply())
        raw["safety"] = {"safety_rating": 2, "explanation": "Asks for passwords."}
        output = parse_output(json.dumps(raw), CombinedOutput)
        assert output.safety.rating == 2
        assert output.safety.justification == "Asks for passwords."

    def test_unknown_category_files_as_other(self):
        output = ClassificationOutput.model_validate({"category": "Cooking", "confidence": 0.4})
        assert output.category == "Other"

    def test_category_match_is_case_insensitive(self):
        output = ClassificationOutput.model_validate({"category": "news/current affairs"})
        assert output.category == "News/Current Affairs"

    def test_confidence_is_clamped(self):
        assert ClassificationOutput.model_validate({"confidence": 1.7}).confidence == 1.0
        assert ClassificationOutput.model_validate({"confidence": "-0.2"}).confidence == 0.0

    def test_tags_are_deduplicated_and_capped(self):
        raw = combined_reply(tags=["AI", "ai", " ml ", "", "a", "b", "c", "d"])
        output = parse_output(raw, CombinedOutput)
        assert output.tags == ["AI", "ml", "a", "b", "c"]

    def test_result_from_outputs(self):
        output = parse_output(combined_reply(), CombinedOutput)
        result = AnalysisResult.from_outputs(output, output.safety, output.classification)
        assert result.classification == {
            "category": "Programming/Tech Blog",
            "confidence": 0.9,
            "reason": "Discusses code.",
        }


# =============================================================================
# CLAUDE CLIENT
# =============================================================================

class TestClaudeClient:
    """Test vendor error translation and usage tracking."""

    REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")

    def _client(self, create):
        client = ClaudeClient(api_key="test-key")
        client.async_client = MagicMock()
        client.async_client.messages.create = create
        return client

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ValueError):
            ClaudeClient()

    @pytest.mark.asyncio
    async def test_generate_concatenates_text_blocks(self):
        response = SimpleNamespace(
            content=[SimpleNamespace(text='{"a": '), SimpleNamespace(type="other"), SimpleNamespace(text="1}")],
            usage=SimpleNamespace(input_tokens=1000, output_tokens=200),
        )
        client = self._client(AsyncMock(return_value=response))

        text = await client.generate("prompt", system="system")

        assert text == '{"a": 1}'
        kwargs = client.async_client.messages.create.await_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]
        assert client.get_usage_summary()["total_tokens"] == 1200
        assert client.get_total_cost() == pytest.approx(0.006)

    @pytest.mark.asyncio
    async def test_rate_limit_becomes_transient_with_retry_after(self):
        error = anthropic.RateLimitError(
            "rate limited",
            response=httpx.Response(429, headers={"retry-after": "12"}, request=self.REQUEST),
            body=None,
        )
        client = self._client(AsyncMock(side_effect=error))

        with pytest.raises(AnalysisProviderTransient) as exc_info:
            await client.generate("prompt")

        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_rate_limit_without_header(self):
        error = anthropic.RateLimitError(
            "rate limited", response=httpx.Response(429, request=self.REQUEST), body=None
        )
        client = self._client(AsyncMock(side_effect=error))

        with pytest.raises(AnalysisProviderTransient) as exc_info:
            await client.generate("prompt")

        assert exc_info.value.retry_after is None

    @pytest.mark.asyncio
    async def test_other_api_errors_are_fatal(self):
        error = anthropic.AuthenticationError(
            "invalid x-api-key", response=httpx.Response(401, request=self.REQUEST), body=None
        )
        client = self._client(AsyncMock(side_effect=error))

        with pytest.raises(AnalysisProviderFatal):
            await client.generate("prompt")
