"""
Structured Output Parsing

Pulls the JSON object out of a model reply (fenced or bare) and validates
it against a schema. Anything unparseable is an AnalysisOutputError: the
job fails rather than persisting a silently defaulted result.
"""

import json
import logging
import re
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel, ValidationError

from linkly.errors import AnalysisOutputError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCED_JSON_RE = re.compile(r'```(?:json)?\s*(\{.*?\})\s*```', re.DOTALL | re.IGNORECASE)


def extract_json_object(raw_output: str) -> Dict[str, Any]:
    """
    Find and decode the JSON object in a model reply.

    Tries, in order: fenced ```json blocks, the whole reply, then the span
    from the first '{' to the last '}'.
    """
    text = (raw_output or "").strip()
    if not text:
        raise AnalysisOutputError("Empty response from analysis provider", raw_output or "")

    candidates = _FENCED_JSON_RE.findall(text)
    candidates.append(text)
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise AnalysisOutputError("No JSON object in analysis response", raw_output)


def parse_output(raw_output: str, schema: Type[T]) -> T:
    """Decode and validate a model reply against `schema`."""
    data = extract_json_object(raw_output)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        logger.error(f"Analysis output failed {schema.__name__} validation: {e.error_count()} errors")
        raise AnalysisOutputError(
            f"Malformed {schema.__name__}: {e.errors()[0].get('msg', 'invalid')}",
            raw_output,
        ) from e
