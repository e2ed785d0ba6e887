import json
import time

import pytest

from image_search.config import RankingWeights
from image_search.errors import ProviderError, ProviderErrorCode
from image_search.prompts import (
    REPAIR_SYSTEM_PROMPT,
    RERANK_PAYLOAD_VERSION,
    build_rerank_payload,
)
from image_search.rerank import (
    GeminiReranker,
    RerankOutput,
    parse_rerank_output,
    post_process_ranking,
)
from image_search.retry import RetryPolicy, deadline_after, exponential_backoff, fixed_delay
from image_search.schemas import AiCallConfig, CandidateSummary, Guess, ImageSignals, MatchBand


SIGNALS = ImageSignals(
    category_guess=Guess(value="Chair", confidence=0.9),
    type_guess=Guess(value="Dining Chair", confidence=0.9),
    keywords=["oak", "dining chair"],
)


def _candidates(*ids):
    return [CandidateSummary(id=i, title=f"Item {i}", description="d" * 500) for i in ids]


def _output(*ids, band="HIGH"):
    return json.dumps({"results": [{"id": i, "reasons": [f"why {i}"], "matchBand": band} for i in ids]})


class ScriptedClient:
    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def generate(self, **kwargs):
        self.calls.append(kwargs)
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


def _reranker(client, sleep, attempts=3, repair_attempts=3):
    return GeminiReranker(
        client_factory=lambda api_key: client,
        policy=RetryPolicy(max_attempts=attempts, backoff=exponential_backoff(1.0, 5.0), sleep=sleep),
        repair_policy=RetryPolicy(max_attempts=repair_attempts, backoff=fixed_delay(0.0), sleep=sleep),
    )


def _rerank(reranker, candidates, config=None):
    return reranker.rerank(SIGNALS, candidates, "cozy", RankingWeights(), "key", "req-1", config)


# ---------------------------
# Parsing and post-processing
# ---------------------------

def test_parse_rerank_output_shape_checked():
    out = parse_rerank_output(_output("a", "b"))
    assert [r.id for r in out.results] == ["a", "b"]
    assert out.results[0].match_band == MatchBand.HIGH

    with pytest.raises(ProviderError) as exc:
        parse_rerank_output('{"items": []}')
    assert exc.value.code == ProviderErrorCode.PROVIDER_INVALID_RESPONSE

    with pytest.raises(ProviderError):
        parse_rerank_output("{not json")


def test_post_process_drops_unknown_and_duplicates_and_backfills():
    raw = RerankOutput.model_validate(
        {
            "results": [
                {"id": "c", "reasons": ["best"], "matchBand": "HIGH"},
                {"id": "ghost", "reasons": ["invented"]},
                {"id": "c", "reasons": ["again"]},
                {"id": "a", "reasons": [" ", ""]},
            ]
        }
    )
    result = post_process_ranking(raw, _candidates("a", "b", "c", "d"))

    assert result.ranked_ids == ["c", "a", "b", "d"]
    assert result.reasons == {"c": ["best"]}
    assert result.match_bands == {"c": MatchBand.HIGH}


def test_post_process_is_permutation_of_inputs():
    raw = RerankOutput.model_validate({"results": []})
    result = post_process_ranking(raw, _candidates("x", "y"))
    assert result.ranked_ids == ["x", "y"]
    assert result.match_bands is None


def test_payload_is_versioned_and_truncates_descriptions():
    payload = build_rerank_payload(SIGNALS, _candidates("a"), prompt=None, weights=RankingWeights())
    assert payload.schemaVersion == RERANK_PAYLOAD_VERSION
    assert len(payload.candidates[0].desc) == 200
    assert payload.prompt


# ---------------------------
# State machine
# ---------------------------

def test_empty_candidates_skip_model(recording_sleep):
    client = ScriptedClient([])
    result = _rerank(_reranker(client, recording_sleep), [])
    assert result.ranked_ids == []
    assert client.calls == []


def test_success_first_attempt(recording_sleep):
    client = ScriptedClient([_output("b", "a")])
    result = _rerank(_reranker(client, recording_sleep), _candidates("a", "b"))

    assert result.ranked_ids == ["b", "a"]
    assert result.reasons["b"] == ["why b"]
    assert recording_sleep.calls == []
    assert client.calls[0]["response_schema"] is not None


def test_repair_recovers_malformed_output(recording_sleep):
    client = ScriptedClient(["{broken", _output("b", "a")])
    result = _rerank(_reranker(client, recording_sleep), _candidates("a", "b"))

    assert result.ranked_ids == ["b", "a"]
    repair_call = client.calls[1]
    assert repair_call["system_instruction"] == REPAIR_SYSTEM_PROMPT
    assert repair_call["temperature"] == 0.0
    assert "{broken" in repair_call["parts"][0]["text"]
    assert recording_sleep.calls == []


def test_repair_exhaustion_fails_attempt_then_outer_retry_succeeds(recording_sleep):
    client = ScriptedClient(["{bad", "{bad", "{bad", "{bad", _output("a", "b")])
    result = _rerank(_reranker(client, recording_sleep), _candidates("a", "b"))

    assert result.ranked_ids == ["a", "b"]
    # one outer backoff (2^1 s) between attempt 1 and 2
    assert recording_sleep.calls == [2.0]
    assert len(client.calls) == 5


def test_transient_errors_retry_with_backoff_then_internal_error(recording_sleep):
    errors = [ProviderError(ProviderErrorCode.PROVIDER_RATE_LIMIT, "slow") for _ in range(3)]
    client = ScriptedClient(errors)

    with pytest.raises(ProviderError) as exc:
        _rerank(_reranker(client, recording_sleep), _candidates("a"))

    assert exc.value.code == ProviderErrorCode.INTERNAL_ERROR
    assert isinstance(exc.value.__cause__, ProviderError)
    assert exc.value.__cause__.code == ProviderErrorCode.PROVIDER_RATE_LIMIT
    assert recording_sleep.calls == [2.0, 4.0]
    assert len(client.calls) == 3


def test_auth_error_is_raised_immediately(recording_sleep):
    client = ScriptedClient([ProviderError(ProviderErrorCode.PROVIDER_AUTH_ERROR, "bad key")])
    with pytest.raises(ProviderError) as exc:
        _rerank(_reranker(client, recording_sleep), _candidates("a"))

    assert exc.value.is_auth
    assert recording_sleep.calls == []
    assert len(client.calls) == 1


def test_auth_error_inside_repair_is_raised(recording_sleep):
    client = ScriptedClient(["{bad", ProviderError(ProviderErrorCode.PROVIDER_AUTH_ERROR, "bad key")])
    with pytest.raises(ProviderError) as exc:
        _rerank(_reranker(client, recording_sleep), _candidates("a"))

    assert exc.value.is_auth
    assert len(client.calls) == 2


def test_single_attempt_policy_surfaces_internal_error(recording_sleep):
    client = ScriptedClient([ProviderError(ProviderErrorCode.PROVIDER_TIMEOUT, "slow")])
    with pytest.raises(ProviderError) as exc:
        _rerank(_reranker(client, recording_sleep, attempts=1), _candidates("a"))

    assert exc.value.code == ProviderErrorCode.INTERNAL_ERROR
    assert recording_sleep.calls == []


# ---------------------------
# Deadline
# ---------------------------

def test_expired_deadline_makes_no_model_call(recording_sleep):
    client = ScriptedClient([_output("a")])
    config = AiCallConfig(timeout_ms=30_000, deadline=time.monotonic() - 0.01)

    with pytest.raises(ProviderError) as exc:
        _rerank(_reranker(client, recording_sleep), _candidates("a"), config)

    assert exc.value.code == ProviderErrorCode.PROVIDER_TIMEOUT
    assert client.calls == []


def test_retry_stops_when_backoff_would_overrun_deadline(recording_sleep):
    client = ScriptedClient(
        [ProviderError(ProviderErrorCode.PROVIDER_NETWORK_ERROR, "reset"), _output("a")]
    )
    config = AiCallConfig(timeout_ms=30_000, deadline=deadline_after(1_000))

    with pytest.raises(ProviderError) as exc:
        _rerank(_reranker(client, recording_sleep), _candidates("a"), config)

    # the 2s backoff does not fit in the remaining second
    assert exc.value.code == ProviderErrorCode.PROVIDER_TIMEOUT
    assert len(client.calls) == 1
    assert recording_sleep.calls == []
    assert client.calls[0]["timeout_ms"] <= 1_000


def test_repair_calls_get_remaining_budget(recording_sleep):
    client = ScriptedClient(["{broken", _output("a")])
    config = AiCallConfig(timeout_ms=30_000, repair_timeout_ms=30_000, deadline=deadline_after(5_000))

    result = _rerank(_reranker(client, recording_sleep), _candidates("a"), config)

    assert result.ranked_ids == ["a"]
    assert all(call["timeout_ms"] <= 5_000 for call in client.calls)
