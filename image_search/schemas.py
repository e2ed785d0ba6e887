"""Typed containers shared across pipeline modules and the API."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import MAX_REASONS, MAX_SIGNAL_KEYWORDS


class _Model(BaseModel):
    """snake_case in Python, camelCase on the wire (model JSON and API)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------
# Vision signals
# ---------------------------

class Guess(_Model):
    value: str
    confidence: float = Field(ge=0, le=1)


class Attributes(_Model):
    style: List[str] = Field(default_factory=list)
    material: List[str] = Field(default_factory=list)
    color: List[str] = Field(default_factory=list)
    shape: List[str] = Field(default_factory=list)


class QualityFlags(_Model):
    is_furniture_likely: bool = True
    multiple_objects: bool = False
    low_image_quality: bool = False
    occluded_or_partial: bool = False
    low_confidence: bool = False


class Intent(_Model):
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    preferred_width: Optional[float] = None
    preferred_height: Optional[float] = None
    preferred_depth: Optional[float] = None

    @property
    def has_price(self) -> bool:
        return bool(self.price_min) or bool(self.price_max)

    @property
    def has_dimensions(self) -> bool:
        return bool(self.preferred_width) or bool(self.preferred_height) or bool(self.preferred_depth)


class ImageSignals(_Model):
    category_guess: Guess
    type_guess: Guess
    attributes: Attributes = Field(default_factory=Attributes)
    keywords: List[str] = Field(default_factory=list)
    quality_flags: QualityFlags = Field(default_factory=QualityFlags)
    intent: Optional[Intent] = None

    @field_validator("keywords", mode="before")
    @classmethod
    def _cap_keywords(cls, value):
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        cleaned = [str(k).strip() for k in value if str(k).strip()]
        return cleaned[:MAX_SIGNAL_KEYWORDS]


# ---------------------------
# Catalog candidates
# ---------------------------

class MatchBand(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class CandidateSummary(_Model):
    id: str
    title: str
    category: str = ""
    type: str = ""
    price: float = 0.0
    width: Optional[float] = None
    height: Optional[float] = None
    depth: Optional[float] = None
    description: str = ""


class ScoredCandidate(CandidateSummary):
    score: float
    match_band: MatchBand
    reasons: List[str] = Field(default_factory=list, max_length=MAX_REASONS)


RetrievalPlan = Literal["A", "B", "C", "D", "TEXT"]


class SearchCriteria(_Model):
    category: Optional[str] = None
    type: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    width_min: Optional[float] = None
    width_max: Optional[float] = None
    height_min: Optional[float] = None
    height_max: Optional[float] = None
    depth_min: Optional[float] = None
    depth_max: Optional[float] = None
    limit: int = Field(default=60, ge=1)
    min_candidates: int = Field(default=10, ge=1)
    max_description_chars: int = Field(default=240, ge=1)


class RetrievalResult(_Model):
    products: List[CandidateSummary] = Field(default_factory=list)
    plan: RetrievalPlan = "TEXT"
    attempted: List[RetrievalPlan] = Field(default_factory=list)


# ---------------------------
# Reranking
# ---------------------------

class RerankResult(_Model):
    ranked_ids: List[str] = Field(default_factory=list)
    reasons: Dict[str, List[str]] = Field(default_factory=dict)
    match_bands: Optional[Dict[str, MatchBand]] = None


class AiCallConfig(_Model):
    """Per-call knobs forwarded to a model port."""

    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    timeout_ms: Optional[int] = None
    repair_timeout_ms: Optional[int] = None
    # absolute time.monotonic() timestamp; no call or retry wait may start past it
    deadline: Optional[float] = None


# ---------------------------
# Response
# ---------------------------

class SearchTimings(_Model):
    total_ms: float = 0.0
    stage1_ms: float = 0.0
    retrieval_ms: float = 0.0
    stage2_ms: float = 0.0


class SearchNotice(_Model):
    code: str
    message: str


class SearchQuery(_Model):
    prompt: Optional[str] = None
    signals: ImageSignals


class SearchMeta(_Model):
    request_id: str
    timings: SearchTimings
    notices: List[SearchNotice] = Field(default_factory=list)
    retrieval_plan: Optional[RetrievalPlan] = None


class SearchResponse(_Model):
    query: SearchQuery
    results: List[ScoredCandidate] = Field(default_factory=list)
    meta: SearchMeta


# ---------------------------
# Telemetry
# ---------------------------

FeedbackVote = Literal["thumbs_up", "thumbs_down"]


class Feedback(_Model):
    items: Dict[str, FeedbackVote] = Field(default_factory=dict)
    notes: Optional[str] = None


class TelemetryCounts(_Model):
    retrieved: int = 0
    reranked: int = 0
    returned: int = 0


class TelemetryFallbacks(_Model):
    vision_fallback: bool = False
    rerank_fallback: bool = False
    broad_retrieval: bool = False


class TelemetryEvent(_Model):
    request_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    timings: SearchTimings = Field(default_factory=SearchTimings)
    counts: TelemetryCounts = Field(default_factory=TelemetryCounts)
    fallbacks: TelemetryFallbacks = Field(default_factory=TelemetryFallbacks)
    retrieval_plan: Optional[RetrievalPlan] = None
    error: Optional[str] = None
    feedback: Optional[Feedback] = None
