"""Contracts for AI feedback batch classification."""

from __future__ import annotations

from dataclasses import dataclass, field

from app.services.ai.common.providers.base import ProviderResult

VALID_SENTIMENTS = ("Positive", "Neutral", "Negative")
DEFAULT_SENTIMENT = "Neutral"


class ClassificationError(RuntimeError):
    """The whole batch failed: transport error, non-2xx reply or unusable output."""


@dataclass(frozen=True)
class FeedbackItem:
    id: int
    text: str


@dataclass(frozen=True)
class TaxonomyEntry:
    name: str
    description: str = ""


@dataclass
class ClassificationRequest:
    items: list[FeedbackItem]
    categories: list[TaxonomyEntry]
    unit_names: list[str] = field(default_factory=list)
    unit_name: str = ""
    instructions: list[str] = field(default_factory=list)


@dataclass
class SegmentResult:
    text: str
    sentiment: str  # Positive | Neutral | Negative
    category_name: str | None = None
    related_unit_name: str | None = None
    is_suggestion: bool = False


@dataclass
class ItemAnalysis:
    raw_input_id: int
    segments: list[SegmentResult] = field(default_factory=list)


@dataclass
class ClassificationOutcome:
    analyses: list[ItemAnalysis]
    provider_result: ProviderResult
    prompt: str
