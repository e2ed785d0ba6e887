from __future__ import annotations

"""
Prompts and the payload schema sent across the model port boundary.

RerankPayload is a closed, versioned schema: bump RERANK_PAYLOAD_VERSION when
a field is added or its meaning changes so both sides can evolve separately.
"""

import json
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from .config import RERANK_DESCRIPTION_CHARS, RankingWeights
from .normalize import clamp_text_length
from .schemas import CandidateSummary, ImageSignals

RERANK_PAYLOAD_VERSION = "rerank.v1"


# ---------------------------
# Vision
# ---------------------------

VISION_SYSTEM_PROMPT = """
You are a furniture and interior design specialist.
Your task is to analyze the provided image and extract structured data to assist in a search for similar products in a furniture catalog.

Instructions:
1. Identify the single most dominant furniture or decor item in the image.
2. Provide a category guess (e.g., Chair, Table, Lighting, Sofa).
3. Provide a more specific type guess (e.g., Dining Chair, Coffee Table, Pendant Lamp).
4. Extract visual attributes: style (e.g., Scandinavian, Industrial), materials (e.g., Oak, Metal), colors (e.g., Light Wood, Matte Black), and shape (e.g., Round, Curved).
5. Generate up to 10 descriptive keyword phrases that would be effective for a text-based search.
6. Assess image quality and object detection confidence.
7. If the user states a budget or size, fill in the intent fields; otherwise omit intent.

Return ONLY a valid JSON object matching the following schema:
{
  "categoryGuess": { "value": "string", "confidence": number [0-1] },
  "typeGuess": { "value": "string", "confidence": number [0-1] },
  "attributes": {
    "style": ["string"],
    "material": ["string"],
    "color": ["string"],
    "shape": ["string"]
  },
  "keywords": ["string"],
  "qualityFlags": {
    "isFurnitureLikely": boolean,
    "multipleObjects": boolean,
    "lowImageQuality": boolean,
    "occludedOrPartial": boolean,
    "lowConfidence": boolean
  },
  "intent": {
    "priceMax": number (optional),
    "priceMin": number (optional),
    "preferredWidth": number (optional),
    "preferredHeight": number (optional),
    "preferredDepth": number (optional)
  }
}

Constraint: Return ONLY the JSON object. Do not include markdown formatting or prose.
""".strip()

VISION_USER_PROMPT_PREFIX = "Analyze this image."


def build_vision_user_prompt(prompt: Optional[str]) -> str:
    if prompt and prompt.strip():
        return f"{VISION_USER_PROMPT_PREFIX}\nUser intent: {prompt.strip()}"
    return VISION_USER_PROMPT_PREFIX


# ---------------------------
# Rerank
# ---------------------------

RERANK_SYSTEM_PROMPT = """
You are an expert personal shopper and interior design consultant.
Your goal is to rank a list of candidate furniture products based on their relevance to a set of visual signals and user intent.

Inputs (one JSON document, schemaVersion "rerank.v1"):
- signals: structured data extracted from an image the user is interested in.
- prompt: optional additional context or specific requests from the user.
- weights: optional importance of each criterion (0 to 1).
- candidates: products from our catalog, each with an id, title, category, type, price, dimensions and description.

Task:
1. Compare each candidate against the signals (category, style, material, color, keywords).
2. Prioritize according to the weights. If 'price' is high and 'text' is low, prefer price proximity over keyword matches.
3. Rank the candidates from most relevant to least relevant.
4. Give brief reasons for the top matches (e.g., "Perfect style match").
5. Assign a matchBand to each candidate:
   - HIGH: strong match in category, style, AND price/dimensions (if specified).
   - MEDIUM: partial match.
   - LOW: weak or irrelevant match.

Constraints:
- You MUST only use the product ids provided in the candidate list.
- Return ONLY a valid JSON object matching this schema:
{
  "results": [
    { "id": "id1", "reasons": ["Reason 1", "Reason 2"], "matchBand": "HIGH" },
    { "id": "id2", "reasons": ["Reason A"], "matchBand": "MEDIUM" }
  ]
}
- Do not invent products. No prose or markdown.
""".strip()

REPAIR_SYSTEM_PROMPT = (
    "You are a JSON repair expert. Fix the malformed JSON to match the required schema exactly."
)

# Structured-output schema for generateContent (OpenAPI subset)
RERANK_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "results": {
            "type": "ARRAY",
            "description": "List of candidates, ordered by relevance",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "id": {"type": "STRING"},
                    "reasons": {"type": "ARRAY", "items": {"type": "STRING"}},
                    "matchBand": {"type": "STRING", "enum": ["HIGH", "MEDIUM", "LOW"]},
                },
                "required": ["id", "reasons"],
            },
        }
    },
    "required": ["results"],
}


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class RerankCandidateView(_Payload):
    id: str
    title: str
    category: str
    type: str
    price: float
    width: Optional[float] = None
    height: Optional[float] = None
    depth: Optional[float] = None
    desc: str

    @classmethod
    def from_candidate(cls, c: CandidateSummary) -> "RerankCandidateView":
        return cls(
            id=c.id,
            title=c.title,
            category=c.category,
            type=c.type,
            price=c.price,
            width=c.width,
            height=c.height,
            depth=c.depth,
            desc=clamp_text_length(c.description, RERANK_DESCRIPTION_CHARS),
        )


class RerankPayload(_Payload):
    schemaVersion: Literal["rerank.v1"] = RERANK_PAYLOAD_VERSION
    signals: dict
    prompt: str
    weights: Optional[RankingWeights] = None
    candidates: List[RerankCandidateView]


def build_rerank_payload(
    signals: ImageSignals,
    candidates: List[CandidateSummary],
    prompt: Optional[str] = None,
    weights: Optional[RankingWeights] = None,
) -> RerankPayload:
    return RerankPayload(
        signals=signals.model_dump(by_alias=True, exclude_none=True),
        prompt=(prompt or "").strip() or "Find products similar to the image.",
        weights=weights,
        candidates=[RerankCandidateView.from_candidate(c) for c in candidates],
    )


def build_rerank_user_prompt(payload: RerankPayload) -> str:
    return json.dumps(payload.model_dump(exclude_none=True), indent=2)


def build_repair_user_prompt(malformed: str) -> str:
    return f"Repair this malformed JSON: {malformed}\nReturn ONLY the valid JSON."
