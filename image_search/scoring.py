from __future__ import annotations

"""
Heuristic pre-ranking.

Each candidate gets an explainable weighted sum of factor scores in [0, 1]:

    score = Σ factor_score × weight

The sum is rounded but never renormalized, so the band thresholds in
AdminConfig.match_bands apply to the raw weighted sum.
"""

from dataclasses import dataclass
from typing import List, Optional

from .config import MAX_REASONS, AdminConfig
from .normalize import count_terms_found, fold
from .schemas import CandidateSummary, ImageSignals, Intent, MatchBand, ScoredCandidate

# a reason is emitted when its factor exceeds the threshold
TEXT_REASON_THRESHOLD = 0.6
ATTRIBUTE_REASON_THRESHOLD = 0.5
PRICE_REASON_THRESHOLD = 0.8
DIMENSION_REASON_THRESHOLD = 0.8

# Dimension deviation is penalised twice as hard as price deviation.
DIMENSION_STRICTNESS = 2.0
NEUTRAL_DIMENSION_SCORE = 0.5


@dataclass(frozen=True)
class FactorScores:
    text: float
    category: float
    type: float
    attributes: float
    price: Optional[float]
    dimensions: Optional[float]


def text_similarity(content: str, keywords: List[str]) -> float:
    if not keywords:
        return 0.0
    return count_terms_found(content, keywords) / len(keywords)


def exact_match(candidate_value: str, signal_value: str) -> float:
    wanted = fold(signal_value)
    return 1.0 if wanted and fold(candidate_value) == wanted else 0.0


def attribute_match(content: str, signals: ImageSignals) -> float:
    attrs = signals.attributes
    terms = [*attrs.style, *attrs.material, *attrs.color]
    if not terms:
        return 0.0
    return count_terms_found(content, terms) / len(terms)


def price_proximity(price: float, price_max: Optional[float], price_min: Optional[float]) -> float:
    """1 inside the range, decaying linearly with relative overshoot/undershoot."""
    if price_max and price > price_max:
        overshoot = (price - price_max) / price_max
        return max(0.0, 1.0 - overshoot)
    if price_min and price < price_min:
        undershoot = (price_min - price) / price_min
        return max(0.0, 1.0 - undershoot)
    return 1.0


def dimension_proximity(candidate: CandidateSummary, intent: Intent) -> float:
    pairs = (
        (candidate.width, intent.preferred_width),
        (candidate.height, intent.preferred_height),
        (candidate.depth, intent.preferred_depth),
    )
    scores = []
    for actual, preferred in pairs:
        if not preferred or not actual:
            continue
        diff = abs(actual - preferred) / preferred
        scores.append(max(0.0, 1.0 - diff * DIMENSION_STRICTNESS))
    if not scores:
        return NEUTRAL_DIMENSION_SCORE
    return sum(scores) / len(scores)


def match_band_for(score: float, config: AdminConfig) -> MatchBand:
    if score >= config.match_bands.high:
        return MatchBand.HIGH
    if score >= config.match_bands.medium:
        return MatchBand.MEDIUM
    return MatchBand.LOW


class HeuristicScorer:
    """Stateless scorer; one instance can be shared by concurrent requests."""

    def factors(self, candidate: CandidateSummary, signals: ImageSignals) -> FactorScores:
        content = f"{candidate.title} {candidate.description}"
        intent = signals.intent

        price = None
        if intent is not None and intent.has_price:
            price = price_proximity(candidate.price, intent.price_max, intent.price_min)

        dimensions = None
        if intent is not None and intent.has_dimensions:
            dimensions = dimension_proximity(candidate, intent)

        return FactorScores(
            text=text_similarity(content, signals.keywords),
            category=exact_match(candidate.category, signals.category_guess.value),
            type=exact_match(candidate.type, signals.type_guess.value),
            attributes=attribute_match(content, signals),
            price=price,
            dimensions=dimensions,
        )

    def score(self, candidate: CandidateSummary, signals: ImageSignals, config: AdminConfig) -> ScoredCandidate:
        f = self.factors(candidate, signals)
        w = config.weights

        total = (
            f.text * w.text
            + f.category * w.category
            + f.type * w.type
            + f.attributes * w.attributes
        )
        reasons: List[str] = []
        if f.text > TEXT_REASON_THRESHOLD:
            reasons.append("Keyword match")
        if f.category:
            reasons.append("Category match")
        if f.type:
            reasons.append("Type match")
        if f.attributes > ATTRIBUTE_REASON_THRESHOLD:
            reasons.append("Visual attributes match")

        if f.price is not None:
            total += f.price * w.price
            if f.price > PRICE_REASON_THRESHOLD:
                reasons.append("Price matches preference")

        if f.dimensions is not None:
            total += f.dimensions * w.dimensions
            if f.dimensions > DIMENSION_REASON_THRESHOLD:
                reasons.append("Dimensions match preference")

        total = round(total, 4)
        return ScoredCandidate(
            **candidate.model_dump(),
            score=total,
            match_band=match_band_for(total, config),
            reasons=reasons[:MAX_REASONS],
        )

    def score_all(
        self,
        candidates: List[CandidateSummary],
        signals: ImageSignals,
        config: AdminConfig,
    ) -> List[ScoredCandidate]:
        """Score and sort descending; ties keep retrieval order (stable sort)."""
        scored = [self.score(c, signals, config) for c in candidates]
        return sorted(scored, key=lambda c: -c.score)
