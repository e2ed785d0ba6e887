from __future__ import annotations

"""Seams between the orchestrator and its collaborators."""

from typing import List, Optional, Protocol

from .config import RankingWeights
from .schemas import (
    AiCallConfig,
    CandidateSummary,
    ImageSignals,
    RerankResult,
    RetrievalResult,
    SearchCriteria,
)


class SignalExtractorPort(Protocol):
    def extract_signals(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: Optional[str],
        api_key: str,
        request_id: str,
        config: Optional[AiCallConfig] = None,
    ) -> ImageSignals:
        ...


class RerankerPort(Protocol):
    def rerank(
        self,
        signals: ImageSignals,
        candidates: List[CandidateSummary],
        prompt: Optional[str],
        weights: Optional[RankingWeights],
        api_key: str,
        request_id: str,
        config: Optional[AiCallConfig] = None,
    ) -> RerankResult:
        ...


class CandidateStorePort(Protocol):
    def find_candidates(self, criteria: SearchCriteria) -> RetrievalResult:
        ...

    def find_by_id(self, product_id: str, max_description_chars: int = 240) -> Optional[CandidateSummary]:
        ...

    def find_by_title(self, title: str, max_description_chars: int = 240) -> Optional[CandidateSummary]:
        ...
