"""
Content analysis: summary, tags, safety rating and classification.
"""

from .client import ClaudeClient, TextGenerator, TokenUsage
from .engine import AnalysisEngine, split_into_chunks
from .parser import extract_json_object, parse_output
from .schemas import (
    CATEGORIES,
    FALLBACK_CATEGORY,
    NEUTRAL_SAFETY_RATING,
    AnalysisResult,
    fallback_result,
    normalize_category,
)

__all__ = [
    "ClaudeClient",
    "TextGenerator",
    "TokenUsage",
    "AnalysisEngine",
    "split_into_chunks",
    "extract_json_object",
    "parse_output",
    "CATEGORIES",
    "FALLBACK_CATEGORY",
    "NEUTRAL_SAFETY_RATING",
    "AnalysisResult",
    "fallback_result",
    "normalize_category",
]
