from __future__ import annotations

"""
Search orchestration: image -> signals -> candidates -> heuristic order ->
optional LLM rerank -> bounded result list.

Stages run sequentially on the calling thread; each external call is
submitted to a shared executor and awaited with the smaller of its stage
budget and what is left of the total budget. A worker cannot be interrupted,
so model ports also receive the stage deadline and stop retrying once it has
passed.
"""

import time
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar

from loguru import logger

from .config import MAX_REASONS, AdminConfig
from .config_provider import ConfigProvider
from .errors import ProviderError, ProviderErrorCode
from .ports import CandidateStorePort, RerankerPort, SignalExtractorPort
from .retry import deadline_after
from .schemas import (
    AiCallConfig,
    ImageSignals,
    RerankResult,
    RetrievalPlan,
    ScoredCandidate,
    SearchCriteria,
    SearchMeta,
    SearchNotice,
    SearchQuery,
    SearchResponse,
    SearchTimings,
    TelemetryCounts,
    TelemetryEvent,
    TelemetryFallbacks,
)
from .scoring import HeuristicScorer
from .telemetry import TelemetrySink

T = TypeVar("T")

_MODEL_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="image-search")

NOTICE_LOW_CONFIDENCE_CATEGORY = "LOW_CONFIDENCE_CATEGORY"
NOTICE_LOW_CONFIDENCE_TYPE = "LOW_CONFIDENCE_TYPE"
NOTICE_RERANK_FAILED = "RERANK_FAILED"
NOTICE_RERANK_DISABLED = "RERANK_DISABLED"


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 2)


class _Deadline:
    def __init__(self, total_ms: int):
        self._start = time.perf_counter()
        self._total_ms = total_ms

    def remaining_ms(self) -> float:
        return self._total_ms - (time.perf_counter() - self._start) * 1000.0

    def budget(self, stage_ms: int) -> float:
        return min(float(stage_ms), self.remaining_ms())


@dataclass
class _Trace:
    """Mutable per-request bookkeeping; frozen into a TelemetryEvent at the end."""

    request_id: str
    start: float = field(default_factory=time.perf_counter)
    stage1_ms: float = 0.0
    retrieval_ms: float = 0.0
    stage2_ms: float = 0.0
    retrieved: int = 0
    reranked: int = 0
    returned: int = 0
    vision_fallback: bool = False
    rerank_fallback: bool = False
    broad_retrieval: bool = False
    plan: Optional[RetrievalPlan] = None

    def timings(self) -> SearchTimings:
        return SearchTimings(
            total_ms=_elapsed_ms(self.start),
            stage1_ms=self.stage1_ms,
            retrieval_ms=self.retrieval_ms,
            stage2_ms=self.stage2_ms,
        )

    def event(self, timings: SearchTimings, error: Optional[str] = None) -> TelemetryEvent:
        return TelemetryEvent(
            request_id=self.request_id,
            timings=timings,
            counts=TelemetryCounts(retrieved=self.retrieved, reranked=self.reranked, returned=self.returned),
            fallbacks=TelemetryFallbacks(
                vision_fallback=self.vision_fallback,
                rerank_fallback=self.rerank_fallback,
                broad_retrieval=self.broad_retrieval,
            ),
            retrieval_plan=self.plan,
            error=error,
        )


def build_search_criteria(signals: ImageSignals, config: AdminConfig) -> SearchCriteria:
    """
    Turn signals into retrieval criteria, withholding low-confidence guesses.

    Type is only used together with category. Intent price bounds stay soft
    (they are scored, not filtered).
    """
    cat = signals.category_guess
    typ = signals.type_guess

    category = None
    if config.use_category_filter and cat.value.strip() and cat.confidence >= config.min_category_confidence:
        category = cat.value.strip()

    product_type = None
    if (
        category is not None
        and config.use_type_filter
        and typ.value.strip()
        and typ.confidence >= config.min_type_confidence
    ):
        product_type = typ.value.strip()

    return SearchCriteria(
        category=category,
        type=product_type,
        keywords=signals.keywords[: config.max_keywords_for_retrieval],
        limit=config.candidate_top_n,
        min_candidates=config.min_candidates,
        max_description_chars=config.max_description_chars,
    )


def confidence_notices(signals: ImageSignals, config: AdminConfig) -> List[SearchNotice]:
    notices: List[SearchNotice] = []
    if signals.category_guess.confidence < config.min_category_confidence:
        notices.append(
            SearchNotice(
                code=NOTICE_LOW_CONFIDENCE_CATEGORY,
                message=f"Category guess '{signals.category_guess.value}' is below the confidence threshold; "
                "category filter not applied.",
            )
        )
    if signals.type_guess.confidence < config.min_type_confidence:
        notices.append(
            SearchNotice(
                code=NOTICE_LOW_CONFIDENCE_TYPE,
                message=f"Type guess '{signals.type_guess.value}' is below the confidence threshold; "
                "type filter not applied.",
            )
        )
    return notices


def apply_rerank(top: List[ScoredCandidate], result: RerankResult) -> List[ScoredCandidate]:
    """Reorder ``top`` by the reranker ids, overlaying its reasons and bands."""
    by_id = {c.id: c for c in top}
    bands = result.match_bands or {}
    out: List[ScoredCandidate] = []
    for cid in result.ranked_ids:
        c = by_id.get(cid)
        if c is None:
            continue
        update = {}
        reasons = result.reasons.get(cid)
        if reasons:
            update["reasons"] = reasons[:MAX_REASONS]
        if cid in bands:
            update["match_band"] = bands[cid]
        out.append(c.model_copy(update=update) if update else c)
    # ids the reranker did not return keep heuristic order
    placed = {c.id for c in out}
    out.extend(c for c in top if c.id not in placed)
    return out


class ImageSearchService:
    def __init__(
        self,
        signal_extractor: SignalExtractorPort,
        candidate_store: CandidateStorePort,
        reranker: RerankerPort,
        scorer: HeuristicScorer,
        config_provider: ConfigProvider,
        telemetry: TelemetrySink,
        executor: Optional[Executor] = None,
    ):
        self._extractor = signal_extractor
        self._store = candidate_store
        self._reranker = reranker
        self._scorer = scorer
        self._config_provider = config_provider
        self._telemetry = telemetry
        self._executor = executor or _MODEL_EXECUTOR

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run_with_timeout(self, operation: str, fn: Callable[[], T], timeout_ms: float) -> T:
        if timeout_ms <= 0:
            raise ProviderError(ProviderErrorCode.PROVIDER_TIMEOUT, f"{operation} skipped: total budget exhausted")
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=timeout_ms / 1000.0)
        except FutureTimeoutError as exc:
            future.cancel()
            raise ProviderError(
                ProviderErrorCode.PROVIDER_TIMEOUT, f"{operation} timed out after {int(timeout_ms)}ms"
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(ProviderErrorCode.INTERNAL_ERROR, f"{operation} failed: {exc}") from exc

    def _record(self, trace: _Trace, timings: SearchTimings, error: Optional[str] = None) -> None:
        self._telemetry.record(trace.event(timings, error))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search_by_image(
        self,
        image_bytes: bytes,
        mime_type: str,
        api_key: str,
        request_id: str,
        prompt: Optional[str] = None,
    ) -> SearchResponse:
        config = self._config_provider.get_config()
        deadline = _Deadline(config.timeouts_ms.total)
        trace = _Trace(request_id=request_id)

        try:
            return self._search(image_bytes, mime_type, api_key, request_id, prompt, config, deadline, trace)
        except ProviderError as e:
            logger.warning("[{}] Search failed: {} {}", request_id, e.code.value, e.message)
            self._record(trace, trace.timings(), error=e.code.value)
            raise
        except Exception:
            logger.exception("[{}] Search failed with an unexpected error", request_id)
            self._record(trace, trace.timings(), error=ProviderErrorCode.INTERNAL_ERROR.value)
            raise

    def _search(
        self,
        image_bytes: bytes,
        mime_type: str,
        api_key: str,
        request_id: str,
        prompt: Optional[str],
        config: AdminConfig,
        deadline: _Deadline,
        trace: _Trace,
    ) -> SearchResponse:
        notices: List[SearchNotice] = []

        # Stage 1: signals
        stage1_budget = deadline.budget(config.timeouts_ms.stage1)
        stage1_deadline = deadline_after(stage1_budget)
        t = time.perf_counter()
        try:
            signals = self._run_with_timeout(
                "Signal extraction",
                lambda: self._extractor.extract_signals(
                    image_bytes,
                    mime_type,
                    prompt,
                    api_key,
                    request_id,
                    AiCallConfig(timeout_ms=int(stage1_budget), deadline=stage1_deadline),
                ),
                stage1_budget,
            )
        except ProviderError:
            trace.vision_fallback = True
            raise
        finally:
            trace.stage1_ms = _elapsed_ms(t)

        flags = signals.quality_flags
        trace.vision_fallback = flags.low_confidence or not flags.is_furniture_likely
        notices.extend(confidence_notices(signals, config))

        # Retrieval
        criteria = build_search_criteria(signals, config)
        trace.broad_retrieval = criteria.category is None
        t = time.perf_counter()
        try:
            retrieval = self._run_with_timeout(
                "Candidate retrieval",
                lambda: self._store.find_candidates(criteria),
                deadline.budget(config.timeouts_ms.retrieval),
            )
        finally:
            trace.retrieval_ms = _elapsed_ms(t)
        trace.plan = retrieval.plan
        trace.retrieved = len(retrieval.products)
        logger.info(
            "[{}] Retrieved {} candidates via plan {} (attempted={})",
            request_id, trace.retrieved, retrieval.plan, retrieval.attempted,
        )

        if not retrieval.products:
            return self._finish(trace, signals, prompt, [], notices)

        # Heuristic order
        scored = self._scorer.score_all(retrieval.products, signals, config)

        # Stage 2: rerank
        if config.enable_llm_rerank:
            top = scored[: config.llm_rerank_top_m]
            rest = scored[config.llm_rerank_top_m:]
            stage2_budget = deadline.budget(config.timeouts_ms.stage2)
            stage2_deadline = deadline_after(stage2_budget)
            t = time.perf_counter()
            try:
                result = self._run_with_timeout(
                    "Rerank",
                    lambda: self._reranker.rerank(
                        signals,
                        list(top),
                        prompt,
                        config.weights,
                        api_key,
                        request_id,
                        AiCallConfig(
                            timeout_ms=max(1, int(stage2_budget)),
                            repair_timeout_ms=config.timeouts_ms.repair,
                            deadline=stage2_deadline,
                        ),
                    ),
                    stage2_budget,
                )
                scored = apply_rerank(top, result) + rest
                trace.reranked = len(top)
            except ProviderError as e:
                if e.is_auth:
                    raise
                logger.exception("[{}] Rerank failed ({}); keeping heuristic order", request_id, e.code.value)
                trace.rerank_fallback = True
                notices.append(
                    SearchNotice(
                        code=NOTICE_RERANK_FAILED,
                        message="AI re-ranking failed; results are in heuristic order.",
                    )
                )
            finally:
                trace.stage2_ms = _elapsed_ms(t)
        else:
            notices.append(
                SearchNotice(code=NOTICE_RERANK_DISABLED, message="AI re-ranking is disabled.")
            )

        return self._finish(trace, signals, prompt, scored[: config.rerank_output_k], notices)

    def _finish(
        self,
        trace: _Trace,
        signals: ImageSignals,
        prompt: Optional[str],
        results: List[ScoredCandidate],
        notices: List[SearchNotice],
    ) -> SearchResponse:
        trace.returned = len(results)
        timings = trace.timings()
        self._record(trace, timings)
        logger.info(
            "[{}] Search done: returned={} plan={} total_ms={}",
            trace.request_id, trace.returned, trace.plan, timings.total_ms,
        )
        return SearchResponse(
            query=SearchQuery(prompt=prompt, signals=signals),
            results=results,
            meta=SearchMeta(
                request_id=trace.request_id,
                timings=timings,
                notices=notices,
                retrieval_plan=trace.plan,
            ),
        )
