from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DATA_DIR = PROJECT_ROOT / "data"
CATALOG_RAW_DIR = DATA_DIR / "catalog_raw"
CATALOG_SNAPSHOT_PATH = Path(
    os.getenv("CATALOG_SNAPSHOT_PATH", str(DATA_DIR / "catalog_snapshot.parquet"))
)


# ---------------------------
# Model provider (pinned)
# ---------------------------

GEMINI_API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta")

# Vision model also serves JSON repair calls
GEMINI_MODEL_VISION = os.getenv("GEMINI_MODEL_VISION", "gemini-2.5-flash")
GEMINI_MODEL_RERANK = os.getenv("GEMINI_MODEL_RERANK", "gemini-2.5-pro")

VISION_TEMPERATURE = 0.1
VISION_MAX_OUTPUT_TOKENS = 1000
RERANK_TEMPERATURE = 0.1
RERANK_MAX_OUTPUT_TOKENS = 30000
REPAIR_TEMPERATURE = 0.0


# ---------------------------
# Retry settings & env toggles
# ---------------------------

DEFAULT_AI_RETRY_MAX = 3
AI_RETRY_MAX = int(os.getenv("AI_RETRY_MAX", str(DEFAULT_AI_RETRY_MAX)))

RERANK_BACKOFF_BASE_S = 1.0
RERANK_BACKOFF_CAP_S = 5.0

# extra attempts after an unparsable vision response
VISION_INVALID_RETRIES = int(os.getenv("VISION_INVALID_RETRIES", "2"))
VISION_RETRY_DELAY_S = 0.5


# ---------------------------
# HTTP hardening
# ---------------------------

HTTP_CONNECT_TIMEOUT = 5.0
HTTP_READ_TIMEOUT = 30.0

HTTP_USER_AGENT = "image-search-core/1.0"


# ---------------------------
# API surface limits
# ---------------------------

ALLOWED_IMAGE_MIME_TYPES: List[str] = ["image/jpeg", "image/png", "image/webp"]
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_PROMPT_CHARS = 1000
MAX_API_KEY_CHARS = 200

CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "4000"))

TELEMETRY_CAPACITY = int(os.getenv("TELEMETRY_CAPACITY", "50"))


# ---------------------------
# Retrieval / ranking constants
# ---------------------------

RERANK_DESCRIPTION_CHARS = 200
MAX_REASONS = 3
MAX_SIGNAL_KEYWORDS = 10


# ---------------------------
# Admin-tunable parameters
# ---------------------------

class _Frozen(BaseModel):
    # camelCase on the wire like the search responses; snake_case names still accepted
    model_config = ConfigDict(frozen=True, extra="forbid", alias_generator=to_camel, populate_by_name=True)


class RankingWeights(_Frozen):
    """
    Per-factor weights for the heuristic scorer.

    Also sent to the reranker as a hint, so the field set is part of the
    rerank payload schema.
    """

    text: float = Field(default=0.40, ge=0, le=1)
    category: float = Field(default=0.15, ge=0, le=1)
    type: float = Field(default=0.15, ge=0, le=1)
    attributes: float = Field(default=0.10, ge=0, le=1)
    dimensions: float = Field(default=0.10, ge=0, le=1)
    price: float = Field(default=0.10, ge=0, le=1)


class MatchBandThresholds(_Frozen):
    high: float = Field(default=0.40, ge=0, le=1)
    medium: float = Field(default=0.20, ge=0, le=1)

    @model_validator(mode="after")
    def _high_not_below_medium(self) -> "MatchBandThresholds":
        if self.high < self.medium:
            raise ValueError("match_bands.high must be >= match_bands.medium")
        return self


class StageTimeouts(_Frozen):
    """Per-stage budgets in milliseconds."""

    stage1: int = Field(default=30000, ge=100, le=30000)
    retrieval: int = Field(default=2000, ge=100, le=10000)
    repair: int = Field(default=30000, ge=100, le=30000)
    stage2: int = Field(default=30000, ge=100, le=60000)
    total: int = Field(default=120000, ge=100, le=120000)


class AdminConfig(_Frozen):
    """
    Snapshot of every tunable used by one search request.

    Instances are immutable; ConfigProvider swaps whole snapshots.
    """

    candidate_top_n: int = Field(default=60, ge=1, le=200)
    min_candidates: int = Field(default=10, ge=1, le=100)
    use_category_filter: bool = True
    use_type_filter: bool = False
    min_category_confidence: float = Field(default=0.35, ge=0, le=1)
    min_type_confidence: float = Field(default=0.35, ge=0, le=1)
    max_keywords_for_retrieval: int = Field(default=8, ge=1, le=20)
    weights: RankingWeights = Field(default_factory=RankingWeights)
    match_bands: MatchBandThresholds = Field(default_factory=MatchBandThresholds)
    enable_llm_rerank: bool = True
    llm_rerank_top_m: int = Field(default=30, ge=1, le=60)
    max_description_chars: int = Field(default=240, ge=1, le=500)
    rerank_output_k: int = Field(default=10, ge=1, le=25)
    timeouts_ms: StageTimeouts = Field(default_factory=StageTimeouts)

    def merged(self, partial: Dict[str, Any]) -> "AdminConfig":
        """Return a validated copy with ``partial`` deep-merged on top."""
        base = self.model_dump()
        return AdminConfig.model_validate(_deep_merge(base, _field_names(AdminConfig, partial)))


def _field_names(model: Type[BaseModel], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite camelCase keys of ``patch`` to field names, recursing into nested models."""
    by_alias = {f.alias: name for name, f in model.model_fields.items() if f.alias}
    out: Dict[str, Any] = {}
    for key, value in patch.items():
        name = by_alias.get(key, key)
        field = model.model_fields.get(name)
        nested = field.annotation if field is not None else None
        if isinstance(value, dict) and isinstance(nested, type) and issubclass(nested, BaseModel):
            value = _field_names(nested, value)
        out[name] = value
    return out


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


DEFAULT_ADMIN_CONFIG = AdminConfig()
