"""
Prompt builders for the analysis engine.

Each builder returns (system, prompt). Replies are requested as a single
JSON object so they can be validated by linkly.analyzer.parser.
"""

from typing import Tuple

from .schemas import CATEGORIES, MAX_TAGS

SYSTEM_PROMPT = (
    "You analyze the scraped text of webpages for a link shortener. "
    "Base every answer only on the provided content. "
    "When asked for JSON, reply with a single valid JSON object and nothing else."
)

_CATEGORY_LIST = "\n".join(f"- {c}" for c in CATEGORIES)

_SAFETY_RUBRIC = """Rate safety on a 1-5 scale:
- 1 = Very unsafe (likely phishing, malware or scam)
- 2 = Unsafe (clear red flags)
- 3 = Neutral (unclear, needs caution)
- 4 = Mostly safe (no obvious risks)
- 5 = Safe (legitimate, no red flags)
Mentions of malware, exploits or suspicious downloads, and requests for
credentials or personal information, lower the rating to 2 or below."""

_SAFETY_SCHEMA = '{"rating": 1-5, "justification": "at most 3 sentences"}'
_CLASSIFICATION_SCHEMA = (
    '{"category": "one of the categories", "confidence": 0.0-1.0, '
    '"reason": "one sentence"}'
)


def combined_prompt(text: str) -> Tuple[str, str]:
    """Summary, tags, safety and classification in one request."""
    prompt = f"""Analyze this webpage content.

1. Summarize its purpose and key information in at most 150 words.
2. Extract up to {MAX_TAGS} keywords as tags.
3. {_SAFETY_RUBRIC}
4. Classify it into exactly one of these categories:
{_CATEGORY_LIST}

Reply with this JSON object:
{{
  "summary": "string",
  "tags": ["string", ...],
  "safety": {_SAFETY_SCHEMA},
  "classification": {_CLASSIFICATION_SCHEMA}
}}

Content:
\"\"\"{text}\"\"\""""
    return SYSTEM_PROMPT, prompt


def chunk_summary_prompt(chunk: str, index: int, total: int) -> Tuple[str, str]:
    """Plain-text summary of one chunk of a long document."""
    prompt = f"""This is part {index} of {total} of a long webpage.
Summarize the key information in this part in at most 100 words.
Reply with the summary text only.

Content:
\"\"\"{chunk}\"\"\""""
    return SYSTEM_PROMPT, prompt


def reduce_prompt(partial_summaries: str) -> Tuple[str, str]:
    """Merge partial summaries into the final summary and tags."""
    prompt = f"""Below are summaries of consecutive parts of one webpage.
Combine them into a single summary of at most 150 words and extract up to
{MAX_TAGS} keywords as tags.

Reply with this JSON object:
{{"summary": "string", "tags": ["string", ...]}}

Partial summaries:
\"\"\"{partial_summaries}\"\"\""""
    return SYSTEM_PROMPT, prompt


def assessment_prompt(text: str) -> Tuple[str, str]:
    """Safety and classification only."""
    prompt = f"""Assess this webpage content.

1. {_SAFETY_RUBRIC}
2. Classify it into exactly one of these categories:
{_CATEGORY_LIST}

Reply with this JSON object:
{{
  "safety": {_SAFETY_SCHEMA},
  "classification": {_CLASSIFICATION_SCHEMA}
}}

Content:
\"\"\"{text}\"\"\""""
    return SYSTEM_PROMPT, prompt
