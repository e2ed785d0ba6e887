from __future__ import annotations

"""
Stage 2: LLM reranking of the heuristic top-M.

State machine per call:

    Attempt(n) -> Validate -> PostProcess -> done
                     |
                     v  (unparsable / wrong shape)
                  Repair(k)  -- success --> PostProcess
                     |
                     v  (exhausted)
            PROVIDER_INVALID_RESPONSE = failure of Attempt(n)

A failed attempt is retried with exponential backoff unless it was an auth
error. After the last attempt the failure is surfaced as INTERNAL_ERROR with
the last error chained.
"""

import json
from typing import Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import (
    AI_RETRY_MAX,
    GEMINI_MODEL_RERANK,
    GEMINI_MODEL_VISION,
    MAX_REASONS,
    RERANK_BACKOFF_BASE_S,
    RERANK_BACKOFF_CAP_S,
    RERANK_MAX_OUTPUT_TOKENS,
    RERANK_TEMPERATURE,
    REPAIR_TEMPERATURE,
    RankingWeights,
)
from .errors import ProviderError, ProviderErrorCode
from .gemini_client import GeminiClient, strip_json_fences, text_part
from .prompts import (
    REPAIR_SYSTEM_PROMPT,
    RERANK_RESPONSE_SCHEMA,
    RERANK_SYSTEM_PROMPT,
    build_rerank_payload,
    build_rerank_user_prompt,
    build_repair_user_prompt,
)
from .retry import RetryPolicy, call_timeout_ms, exponential_backoff, fixed_delay
from .schemas import AiCallConfig, CandidateSummary, ImageSignals, MatchBand, RerankResult

ClientFactory = Callable[[str], GeminiClient]


# ---------------------------
# Output parsing
# ---------------------------

class RerankItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    reasons: List[str] = Field(default_factory=list)
    match_band: Optional[MatchBand] = Field(default=None, alias="matchBand")


class RerankOutput(BaseModel):
    results: List[RerankItem]


def parse_rerank_output(text: str) -> RerankOutput:
    """JSON validity and shape are checked separately; both map to INVALID_RESPONSE."""
    try:
        raw = json.loads(strip_json_fences(text))
    except json.JSONDecodeError as e:
        raise ProviderError(
            ProviderErrorCode.PROVIDER_INVALID_RESPONSE, f"Rerank output is not valid JSON: {e.msg}"
        ) from e
    try:
        return RerankOutput.model_validate(raw)
    except ValidationError as e:
        raise ProviderError(
            ProviderErrorCode.PROVIDER_INVALID_RESPONSE,
            "Rerank output does not match the results schema",
            details=e.errors(include_url=False),
        ) from e


def post_process_ranking(output: RerankOutput, candidates: List[CandidateSummary]) -> RerankResult:
    """
    Make the model ranking a permutation of the candidate ids.

    Unknown ids and repeats are dropped; ids the model left out are appended
    in their original order.
    """
    known = [c.id for c in candidates]
    known_set = set(known)

    ranked: List[str] = []
    seen = set()
    reasons: Dict[str, List[str]] = {}
    bands: Dict[str, MatchBand] = {}
    dropped = 0

    for item in output.results:
        if item.id not in known_set or item.id in seen:
            dropped += 1
            continue
        seen.add(item.id)
        ranked.append(item.id)
        cleaned = [r.strip() for r in item.reasons if r and r.strip()]
        if cleaned:
            reasons[item.id] = cleaned[:MAX_REASONS]
        if item.match_band is not None:
            bands[item.id] = item.match_band

    missing = [cid for cid in known if cid not in seen]
    if dropped or missing:
        logger.info("Rerank post-process: dropped={} backfilled={}", dropped, len(missing))
    ranked.extend(missing)

    return RerankResult(ranked_ids=ranked, reasons=reasons, match_bands=bands or None)


# ---------------------------
# Reranker
# ---------------------------

def default_rerank_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=AI_RETRY_MAX,
        backoff=exponential_backoff(RERANK_BACKOFF_BASE_S, RERANK_BACKOFF_CAP_S),
    )


def default_repair_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=AI_RETRY_MAX, backoff=fixed_delay(0.0))


class GeminiReranker:
    def __init__(
        self,
        client_factory: ClientFactory = GeminiClient,
        policy: Optional[RetryPolicy] = None,
        repair_policy: Optional[RetryPolicy] = None,
        model: str = GEMINI_MODEL_RERANK,
        repair_model: str = GEMINI_MODEL_VISION,
    ):
        self._client_factory = client_factory
        self._policy = policy or default_rerank_policy()
        self._repair_policy = repair_policy or default_repair_policy()
        self._model = model
        self._repair_model = repair_model

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
        if not candidates:
            return RerankResult(ranked_ids=[], reasons={})

        config = config or AiCallConfig()
        payload = build_rerank_payload(signals, candidates, prompt, weights)
        user_prompt = build_rerank_user_prompt(payload)

        with self._client_factory(api_key) as client:
            last_error: Optional[ProviderError] = None
            for attempt in self._policy.attempts():
                timeout_ms = call_timeout_ms(config.timeout_ms, config.deadline, "Rerank")
                try:
                    text = client.generate(
                        model=self._model,
                        system_instruction=RERANK_SYSTEM_PROMPT,
                        parts=[text_part(user_prompt)],
                        temperature=RERANK_TEMPERATURE if config.temperature is None else config.temperature,
                        max_output_tokens=config.max_output_tokens or RERANK_MAX_OUTPUT_TOKENS,
                        response_schema=RERANK_RESPONSE_SCHEMA,
                        timeout_ms=timeout_ms,
                    )
                    output = self._validate_or_repair(client, text, config, request_id)
                    result = post_process_ranking(output, candidates)
                    logger.info(
                        "[{}] Rerank ok on attempt {}: {} ids", request_id, attempt, len(result.ranked_ids)
                    )
                    return result
                except ProviderError as e:
                    if e.is_auth:
                        raise
                    last_error = e
                    if self._policy.is_last(attempt):
                        break
                    delay = self._policy.wait(attempt, deadline=config.deadline)
                    logger.warning(
                        "[{}] Rerank attempt {}/{} failed ({}), retrying in {}s",
                        request_id, attempt, self._policy.max_attempts, e.code.value, delay,
                    )

        logger.error("[{}] Rerank failed after {} attempts: {!r}", request_id, self._policy.max_attempts, last_error)
        raise ProviderError(
            ProviderErrorCode.INTERNAL_ERROR,
            f"Rerank failed after {self._policy.max_attempts} attempts",
            details={"last_error": last_error.code.value if last_error else None},
        ) from last_error

    def _validate_or_repair(
        self,
        client: GeminiClient,
        text: str,
        config: AiCallConfig,
        request_id: str,
    ) -> RerankOutput:
        try:
            return parse_rerank_output(text)
        except ProviderError as first:
            logger.warning("[{}] Rerank output invalid ({}); entering repair", request_id, first.message)

        for attempt in self._repair_policy.attempts():
            timeout_ms = call_timeout_ms(config.repair_timeout_ms, config.deadline, "Rerank repair")
            try:
                repaired = client.generate(
                    model=self._repair_model,
                    system_instruction=REPAIR_SYSTEM_PROMPT,
                    parts=[text_part(build_repair_user_prompt(text))],
                    temperature=REPAIR_TEMPERATURE,
                    max_output_tokens=config.max_output_tokens or RERANK_MAX_OUTPUT_TOKENS,
                    response_schema=RERANK_RESPONSE_SCHEMA,
                    timeout_ms=timeout_ms,
                )
                output = parse_rerank_output(repaired)
                logger.info("[{}] Rerank output repaired on attempt {}", request_id, attempt)
                return output
            except ProviderError as e:
                if e.is_auth:
                    raise
                logger.warning(
                    "[{}] Repair attempt {}/{} failed: {}",
                    request_id, attempt, self._repair_policy.max_attempts, e.code.value,
                )
                if not self._repair_policy.is_last(attempt):
                    self._repair_policy.wait(attempt, deadline=config.deadline)

        raise ProviderError(
            ProviderErrorCode.PROVIDER_INVALID_RESPONSE,
            f"Rerank output could not be repaired after {self._repair_policy.max_attempts} attempts",
        )
