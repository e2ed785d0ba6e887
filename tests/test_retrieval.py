import pandas as pd
import pytest

from image_search.retrieval import CatalogStore, to_candidate_summary
from image_search.schemas import SearchCriteria


def _criteria(**kwargs):
    kwargs.setdefault("limit", 60)
    kwargs.setdefault("min_candidates", 2)
    return SearchCriteria(**kwargs)


def test_store_requires_canonical_columns():
    with pytest.raises(KeyError):
        CatalogStore(pd.DataFrame({"id": ["x"], "title": ["y"]}))


def test_plan_a_returns_when_enough(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(category="chair", type="DINING CHAIR", keywords=["chair"]))
    assert res.plan == "A"
    assert res.attempted == ["A"]
    assert [p.id for p in res.products] == ["c1", "c2"]


def test_ladder_relaxes_to_b(catalog_df):
    store = CatalogStore(catalog_df)
    # only c1 passes A; B (category + keyword) yields c1 and c3
    res = store.find_candidates(_criteria(category="Chair", type="Dining Chair", keywords=["oak"]))
    assert res.plan == "B"
    assert res.attempted == ["A", "B"]
    assert {p.id for p in res.products} == {"c1", "c3"}


def test_ladder_falls_through_to_keyword_only(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(category="Sofa", keywords=["oak"], min_candidates=3))
    # B is empty (no oak sofa); C matches every oak product
    assert res.plan == "C"
    assert res.attempted == ["B", "C"]
    assert {p.id for p in res.products} == {"c1", "c3", "t1"}


def test_best_tier_kept_when_none_reaches_min(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(
        _criteria(category="Chair", type="Lounge Chair", keywords=["lounge"], min_candidates=10)
    )
    # every tier yields below min; D (category OR type) has the most rows
    assert res.attempted == ["A", "B", "C", "D"]
    assert res.plan == "D"
    assert len(res.products) == 4


def test_larger_later_tier_beats_empty_earlier_tier(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(category="Nonexistent", keywords=["relaxed"], min_candidates=10))
    assert res.attempted == ["B", "C", "D"]
    # B empty, C has 1, D empty -> C
    assert res.plan == "C"


def test_ties_keep_the_stricter_tier(catalog_df):
    df = catalog_df.copy()
    df.loc[df["id"] == "c3", "category"] = "Lounge"
    store = CatalogStore(df)
    res = store.find_candidates(_criteria(category="Lounge", keywords=["relaxed"], min_candidates=10))
    # B = {c3}, C = {c3}, D = {c3}: ties keep the earliest
    assert res.plan == "B"


def test_all_tiers_empty_returns_last_attempted(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(category="Bed", keywords=["velvet"]))
    assert res.products == []
    assert res.attempted == ["B", "C", "D"]
    assert res.plan == "D"


def test_no_inputs_runs_broad_text_query(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(limit=3))
    assert res.plan == "TEXT"
    assert res.attempted == []
    assert [p.id for p in res.products] == ["c1", "c2", "c3"]


def test_keywords_are_literal_not_regex(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(keywords=["o.k"], min_candidates=1))
    assert res.products == []


def test_limit_caps_every_tier(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(category="Chair", limit=2, min_candidates=1))
    assert res.plan == "D"
    assert len(res.products) == 2


def test_bounds_are_applied_to_each_tier(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(category="Chair", price_max=150, min_candidates=1))
    assert {p.id for p in res.products} == {"c1", "c4"}


def test_description_truncated(catalog_df):
    store = CatalogStore(catalog_df)
    res = store.find_candidates(_criteria(keywords=["oak"], max_description_chars=10, min_candidates=1))
    assert all(len(p.description) <= 10 for p in res.products)


def test_find_by_id_and_title(catalog_df):
    store = CatalogStore(catalog_df)
    assert store.find_by_id("t2").title == "Glass Dining Table"
    assert store.find_by_id("missing") is None
    assert store.find_by_title("Grey Fabric Sofa").id == "s1"
    assert store.find_by_title("grey fabric sofa") is None


def test_to_candidate_summary_handles_nan_dimensions():
    rec = {"id": 5, "title": "X", "price": float("nan"), "width": float("nan")}
    c = to_candidate_summary(rec, 240)
    assert c.id == "5"
    assert c.price == 0.0
    assert c.width is None
