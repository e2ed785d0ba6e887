import pytest

from image_search.config import AdminConfig
from image_search.schemas import CandidateSummary, Intent, MatchBand
from image_search.scoring import (
    HeuristicScorer,
    dimension_proximity,
    match_band_for,
    price_proximity,
    text_similarity,
)


def _candidate(**kwargs):
    base = {
        "id": "c1",
        "title": "Oak Dining Chair",
        "category": "Chair",
        "type": "Dining Chair",
        "price": 120.0,
        "width": 45.0,
        "height": 80.0,
        "depth": 50.0,
        "description": "Solid oak dining chair, Scandinavian style, light wood finish.",
    }
    base.update(kwargs)
    return CandidateSummary(**base)


def test_text_similarity():
    assert text_similarity("oak chair", []) == 0.0
    assert text_similarity("oak chair", ["OAK", "walnut"]) == 0.5


def test_price_proximity():
    assert price_proximity(80, 100, None) == 1.0
    assert price_proximity(120, 100, None) == pytest.approx(0.8)
    assert price_proximity(300, 100, None) == 0.0
    assert price_proximity(150, None, 200) == pytest.approx(0.75)


def test_dimension_proximity():
    c = _candidate()
    assert dimension_proximity(c, Intent(preferred_width=45)) == 1.0
    assert dimension_proximity(c, Intent(preferred_width=50)) == pytest.approx(0.8)
    # only dimensions present on both sides count
    no_depth = _candidate(depth=None)
    assert dimension_proximity(no_depth, Intent(preferred_depth=50)) == 0.5


def test_full_match_scores_high_and_caps_reasons(make_signals):
    scorer = HeuristicScorer()
    scored = scorer.score(_candidate(), make_signals(), AdminConfig())

    assert scored.score == pytest.approx(0.8)
    assert scored.match_band == MatchBand.HIGH
    assert scored.reasons == ["Keyword match", "Category match", "Type match"]


def test_no_match_scores_zero(make_signals):
    scorer = HeuristicScorer()
    sofa = _candidate(
        id="s1",
        title="Grey Fabric Sofa",
        category="Sofa",
        type="Sofa",
        description="Three-seater sofa in grey fabric.",
    )
    scored = scorer.score(sofa, make_signals(), AdminConfig())
    assert scored.score == 0.0
    assert scored.match_band == MatchBand.LOW
    assert scored.reasons == []


def test_price_factor_only_when_intent_has_price(make_signals):
    scorer = HeuristicScorer()
    config = AdminConfig()
    signals = make_signals(keywords=(), style=(), material=(), color=(), category="", type_="")
    plain = scorer.score(_candidate(), signals, config)
    assert plain.score == 0.0

    with_price = make_signals(
        keywords=(), style=(), material=(), color=(), category="", type_="", intent={"priceMax": 200}
    )
    scored = scorer.score(_candidate(), with_price, config)
    assert scored.score == pytest.approx(0.1)
    assert scored.reasons == ["Price matches preference"]


def test_dimension_reason_emitted(make_signals):
    scorer = HeuristicScorer()
    signals = make_signals(
        keywords=(), style=(), material=(), color=(), category="", type_="", intent={"preferredWidth": 45}
    )
    scored = scorer.score(_candidate(), signals, AdminConfig())
    assert scored.score == pytest.approx(0.1)
    assert scored.reasons == ["Dimensions match preference"]


def test_score_is_not_renormalized_by_weights(make_signals):
    config = AdminConfig().merged({"weights": {"text": 1.0, "category": 1.0, "type": 1.0, "attributes": 1.0}})
    scored = HeuristicScorer().score(_candidate(), make_signals(), config)
    assert scored.score == pytest.approx(4.0)


def test_match_band_thresholds():
    config = AdminConfig()
    assert match_band_for(0.40, config) == MatchBand.HIGH
    assert match_band_for(0.39, config) == MatchBand.MEDIUM
    assert match_band_for(0.20, config) == MatchBand.MEDIUM
    assert match_band_for(0.19, config) == MatchBand.LOW


def test_score_all_is_stable_and_does_not_mutate(make_signals):
    scorer = HeuristicScorer()
    a = _candidate(id="a", title="Plain", description="", category="", type="")
    b = _candidate(id="b", title="Plain", description="", category="", type="")
    top = _candidate(id="top")
    inputs = [a, b, top]

    ranked = scorer.score_all(inputs, make_signals(), AdminConfig())

    assert [c.id for c in ranked] == ["top", "a", "b"]
    assert [c.id for c in inputs] == ["a", "b", "top"]
    assert inputs[0] == a
