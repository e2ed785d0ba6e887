from __future__ import annotations
"""
Candidate retrieval over the product catalog.

The catalog is a document collection held as a canonical DataFrame (see
catalog_build). Retrieval walks a relaxation ladder from the strictest query
to the broadest, stopping at the first tier that yields ``min_candidates``:

  A  category AND type AND any keyword
  B  category AND any keyword
  C  any keyword
  D  category OR type

A tier whose inputs are missing is never issued. When no tier can run, one
broad unscoped query (plan TEXT) is issued instead. Every query is capped at
``limit`` rows, so retrieval never returns an unbounded set.
"""

import math
from typing import Any, Callable, List, Optional, Tuple

import pandas as pd
from loguru import logger

from .catalog_build import CANONICAL_COLUMNS
from .normalize import clamp_text_length, clean_terms, fold
from .schemas import CandidateSummary, RetrievalPlan, RetrievalResult, SearchCriteria


def _opt_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(num) else num


def to_candidate_summary(record: dict, max_description_chars: int) -> CandidateSummary:
    """Project a catalog row to the fields needed downstream."""
    return CandidateSummary(
        id=str(record["id"]),
        title=str(record.get("title") or ""),
        category=str(record.get("category") or ""),
        type=str(record.get("type") or ""),
        price=_opt_float(record.get("price")) or 0.0,
        width=_opt_float(record.get("width")),
        height=_opt_float(record.get("height")),
        depth=_opt_float(record.get("depth")),
        description=clamp_text_length(str(record.get("description") or ""), max_description_chars),
    )


class CatalogStore:
    """Read-only query layer over the normalized catalog DataFrame."""

    def __init__(self, catalog_df: pd.DataFrame):
        missing = [c for c in CANONICAL_COLUMNS if c not in catalog_df.columns]
        if missing:
            raise KeyError(f"Catalog DataFrame is missing columns: {missing}")

        self._df = catalog_df[CANONICAL_COLUMNS].reset_index(drop=True)
        # case-folded views, computed once
        self._title = self._df["title"].fillna("").astype(str).str.casefold()
        self._desc = self._df["description"].fillna("").astype(str).str.casefold()
        self._category = self._df["category"].fillna("").astype(str).str.strip().str.casefold()
        self._type = self._df["type"].fillna("").astype(str).str.strip().str.casefold()
        self._numeric = {
            col: pd.to_numeric(self._df[col], errors="coerce")
            for col in ("price", "width", "height", "depth")
        }
        logger.info("CatalogStore ready with {} products", len(self._df))

    def __len__(self) -> int:
        return len(self._df)

    # ------------------------------------------------------------------
    # Masks
    # ------------------------------------------------------------------

    def _all(self) -> pd.Series:
        return pd.Series(True, index=self._df.index)

    def _equals(self, column: pd.Series, value: str) -> pd.Series:
        return column == fold(value)

    def _keyword_mask(self, keywords: List[str]) -> pd.Series:
        mask = pd.Series(False, index=self._df.index)
        for kw in keywords:
            needle = fold(kw)
            if not needle:
                continue
            mask |= self._title.str.contains(needle, regex=False)
            mask |= self._desc.str.contains(needle, regex=False)
        return mask

    def _category_or_type(self, category: Optional[str], product_type: Optional[str]) -> pd.Series:
        mask = pd.Series(False, index=self._df.index)
        if category:
            mask |= self._equals(self._category, category)
        if product_type:
            mask |= self._equals(self._type, product_type)
        return mask

    def _bounds_mask(self, criteria: SearchCriteria) -> pd.Series:
        mask = self._all()
        bounds = (
            ("price", criteria.price_min, criteria.price_max),
            ("width", criteria.width_min, criteria.width_max),
            ("height", criteria.height_min, criteria.height_max),
            ("depth", criteria.depth_min, criteria.depth_max),
        )
        for col, lo, hi in bounds:
            values = self._numeric[col]
            if lo is not None:
                mask &= values.notna() & (values >= lo)
            if hi is not None:
                mask &= values.notna() & (values <= hi)
        return mask

    def _query(self, mask: pd.Series, limit: int) -> pd.DataFrame:
        return self._df[mask].head(limit)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def find_candidates(self, criteria: SearchCriteria) -> RetrievalResult:
        category = (criteria.category or "").strip() or None
        product_type = (criteria.type or "").strip() or None
        keywords = clean_terms(criteria.keywords)
        limit = criteria.limit
        min_candidates = criteria.min_candidates

        base = self._bounds_mask(criteria)
        kw = self._keyword_mask(keywords) if keywords else None

        tiers: List[Tuple[RetrievalPlan, bool, Callable[[], pd.Series]]] = [
            (
                "A",
                bool(category and product_type and keywords),
                lambda: base
                & self._equals(self._category, category)
                & self._equals(self._type, product_type)
                & kw,
            ),
            (
                "B",
                bool(category and keywords),
                lambda: base & self._equals(self._category, category) & kw,
            ),
            (
                "C",
                bool(keywords),
                lambda: base & kw,
            ),
            (
                "D",
                bool(category or product_type),
                lambda: base & self._category_or_type(category, product_type),
            ),
        ]

        attempted: List[RetrievalPlan] = []
        best_plan: Optional[RetrievalPlan] = None
        best_rows = self._df.iloc[0:0]

        for plan, ready, build_mask in tiers:
            if not ready:
                logger.debug("Retrieval plan {} skipped: required inputs missing", plan)
                continue
            attempted.append(plan)
            rows = self._query(build_mask(), limit)
            logger.info("Retrieval plan {} returned {} rows (min={})", plan, len(rows), min_candidates)
            if len(rows) >= min_candidates:
                return self._result(rows, plan, attempted, criteria)
            # ties keep the earlier, stricter tier
            if best_plan is None or len(rows) > len(best_rows):
                best_plan, best_rows = plan, rows

        if not attempted:
            rows = self._query(base, limit)
            logger.info("Retrieval fell back to broad query: {} rows", len(rows))
            return self._result(rows, "TEXT", attempted, criteria)

        if best_rows.empty:
            logger.warning("All retrieval plans empty (attempted={})", attempted)
            return self._result(best_rows, attempted[-1], attempted, criteria)

        logger.info("Retrieval keeping best plan {} with {} rows", best_plan, len(best_rows))
        return self._result(best_rows, best_plan, attempted, criteria)

    def _result(
        self,
        rows: pd.DataFrame,
        plan: RetrievalPlan,
        attempted: List[RetrievalPlan],
        criteria: SearchCriteria,
    ) -> RetrievalResult:
        products = [
            to_candidate_summary(rec, criteria.max_description_chars)
            for rec in rows.to_dict(orient="records")
        ]
        return RetrievalResult(products=products, plan=plan, attempted=list(attempted))

    def find_by_id(self, product_id: str, max_description_chars: int = 240) -> Optional[CandidateSummary]:
        rows = self._df[self._df["id"].astype(str) == str(product_id)]
        if rows.empty:
            return None
        return to_candidate_summary(rows.iloc[0].to_dict(), max_description_chars)

    def find_by_title(self, title: str, max_description_chars: int = 240) -> Optional[CandidateSummary]:
        rows = self._df[self._df["title"] == title]
        if rows.empty:
            return None
        return to_candidate_summary(rows.iloc[0].to_dict(), max_description_chars)
