"""
Analysis Output Schemas

Pydantic models validating the structured replies of the text-analysis
capability, and the AnalysisResult the engine hands to the worker.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# Classification categories, one system collection each
CATEGORIES = (
    "Programming/Tech Blog",
    "Documentation/Reference",
    "Research/Academic",
    "News/Current Affairs",
    "Learning/Education",
    "Product/Service Page",
    "E-commerce/Marketplace",
    "Social Media/Forum",
    "Entertainment/Media",
    "Scam/Phishing/Unsafe",
    "Other",
)
FALLBACK_CATEGORY = "Other"
NEUTRAL_SAFETY_RATING = 3
MAX_TAGS = 5

_CATEGORY_LOOKUP = {c.lower(): c for c in CATEGORIES}


def normalize_category(value: Any) -> str:
    """Map a category name onto the fixed list; unknown names become Other."""
    name = str(value or "").strip()
    known = _CATEGORY_LOOKUP.get(name.lower())
    if known is None:
        if name:
            logger.warning(f"Unknown category '{name}', filing as {FALLBACK_CATEGORY}")
        return FALLBACK_CATEGORY
    return known


def normalize_tags(tags: List[str]) -> List[str]:
    seen = set()
    cleaned = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            cleaned.append(tag)
    return cleaned[:MAX_TAGS]


class SummaryOutput(BaseModel):
    summary: str = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags", mode="after")
    @classmethod
    def clean_tags(cls, v: List[str]) -> List[str]:
        return normalize_tags(v)


class SafetyOutput(BaseModel):
    rating: int = Field(
        ge=1, le=5, validation_alias=AliasChoices("rating", "safety_rating")
    )
    justification: str = Field(
        default="", validation_alias=AliasChoices("justification", "explanation")
    )


class ClassificationOutput(BaseModel):
    category: str = FALLBACK_CATEGORY
    confidence: float = 0.0
    reason: str = ""

    @field_validator("category", mode="before")
    @classmethod
    def known_category(cls, v: Any) -> str:
        return normalize_category(v)

    @field_validator("confidence", mode="after")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return min(1.0, max(0.0, v))


class AssessmentOutput(BaseModel):
    """Safety plus classification, without the summary."""
    safety: SafetyOutput
    classification: ClassificationOutput


class CombinedOutput(SummaryOutput):
    """All three outputs from a single request."""
    safety: SafetyOutput
    classification: ClassificationOutput


@dataclass
class AnalysisResult:
    """Final analysis of one destination."""
    summary: str
    tags: List[str]
    safety_rating: int
    safety_justification: str
    category: str = FALLBACK_CATEGORY
    category_confidence: float = 0.0
    category_reason: str = ""
    is_fallback: bool = False
    chunk_count: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def classification(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "confidence": self.category_confidence,
            "reason": self.category_reason,
        }

    def to_link_patch(self) -> Dict[str, Any]:
        """Field patch for LinkRepository.update_fields, marking the link COMPLETED."""
        return {
            "analysis_status": "COMPLETED",
            "summary": self.summary,
            "tags": list(self.tags),
            "safety_rating": self.safety_rating,
            "safety_justification": self.safety_justification,
            "category": self.category,
            "category_confidence": self.category_confidence,
            "category_reason": self.category_reason,
            "analysis_error": None,
            "analyzed_at": self.created_at,
        }

    @classmethod
    def from_outputs(
        cls,
        summary: SummaryOutput,
        safety: SafetyOutput,
        classification: ClassificationOutput,
        chunk_count: int = 1,
    ) -> "AnalysisResult":
        return cls(
            summary=summary.summary.strip(),
            tags=list(summary.tags),
            safety_rating=safety.rating,
            safety_justification=safety.justification.strip(),
            category=classification.category,
            category_confidence=classification.confidence,
            category_reason=classification.reason.strip(),
            chunk_count=chunk_count,
        )


def fallback_result(reason: Optional[str] = None) -> AnalysisResult:
    """Deterministic result for absent or near-empty content."""
    return AnalysisResult(
        summary="Could not extract sufficient text content from this URL.",
        tags=[],
        safety_rating=NEUTRAL_SAFETY_RATING,
        safety_justification=reason or (
            "Unable to analyze the content. The page may be an image, "
            "a login wall, or a complex application."
        ),
        category=FALLBACK_CATEGORY,
        category_confidence=0.0,
        category_reason="Not enough content to classify.",
        is_fallback=True,
        chunk_count=0,
    )
