from __future__ import annotations

"""
Offline quality evaluation over a golden set of query images.

Each golden case names an image and the product it should surface. Every case
is searched twice, once image-only and once with its prompt, so the report
shows how much the prompt lifts Hit@k and MRR.

    python -m image_search.eval --golden data/golden_set.json
"""

import argparse
import json
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .catalog_build import load_catalog_snapshot
from .config import CATALOG_SNAPSHOT_PATH, DATA_DIR
from .config_provider import ConfigProvider
from .errors import ProviderError
from .rerank import GeminiReranker
from .retrieval import CatalogStore
from .schemas import ScoredCandidate
from .scoring import HeuristicScorer
from .service import ImageSearchService
from .telemetry import TelemetrySink
from .vision import GeminiSignalExtractor

DEFAULT_GOLDEN_PATH = DATA_DIR / "golden_set.json"
DEFAULT_KS = (1, 3, 5)

MODE_BASELINE = "baseline"
MODE_AUGMENTED = "augmented"


# ---------- golden set ----------

class GoldenCase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    label: str = ""
    image_path: str
    prompt: Optional[str] = None
    expected_category: Optional[str] = None
    expected_type: Optional[str] = None


class GoldenSet(BaseModel):
    cases: List[GoldenCase] = Field(default_factory=list)


def load_golden_set(path: Path) -> List[GoldenCase]:
    """Accepts a bare JSON array of cases or ``{"cases": [...]}``."""
    if not path.exists():
        raise FileNotFoundError(f"Golden set not found: {path}")
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, list):
        raw = {"cases": raw}
    return GoldenSet.model_validate(raw).cases


def _mime_type_for(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "image/jpeg"


# ---------- metrics ----------

def find_rank(case: GoldenCase, results: Sequence[ScoredCandidate]) -> Optional[int]:
    """
    1-based position of the expected product, matched by id or, failing
    that, by the case id (underscores as spaces) appearing in the title.
    """
    needle = case.id.lower().replace("_", " ")
    for pos, r in enumerate(results, start=1):
        if r.id == case.id or needle in r.title.lower():
            return pos
    return None


def hit_at_k(rank: Optional[int], k: int) -> bool:
    return rank is not None and rank <= k


def reciprocal_rank(rank: Optional[int]) -> float:
    return 1.0 / rank if rank else 0.0


@dataclass
class CaseResult:
    case_id: str
    label: str
    mode: str
    rank: Optional[int]
    latency_ms: float


def summarize(results: Sequence[CaseResult], ks: Sequence[int] = DEFAULT_KS) -> Dict[str, float]:
    """Hit@k as a fraction of evaluated cases, plus mean reciprocal rank."""
    if not results:
        return {**{f"hit@{k}": 0.0 for k in ks}, "mrr": 0.0, "n": 0}
    n = len(results)
    out: Dict[str, float] = {f"hit@{k}": sum(hit_at_k(r.rank, k) for r in results) / n for k in ks}
    out["mrr"] = sum(reciprocal_rank(r.rank) for r in results) / n
    out["n"] = n
    return out


# ---------- running ----------

def run_case(
    service: ImageSearchService,
    case: GoldenCase,
    api_key: str,
    base_dir: Path,
    with_prompt: bool,
) -> Optional[CaseResult]:
    """Search one case; returns None when the image is missing or the search fails."""
    mode = MODE_AUGMENTED if with_prompt else MODE_BASELINE
    image_path = base_dir / case.image_path
    if not image_path.exists():
        logger.warning("[{}] Skipping {}: image missing at {}", mode, case.id, image_path)
        return None

    try:
        resp = service.search_by_image(
            image_bytes=image_path.read_bytes(),
            mime_type=_mime_type_for(image_path),
            api_key=api_key,
            request_id=f"eval-{mode}-{case.id}",
            prompt=case.prompt if with_prompt else None,
        )
    except ProviderError as e:
        logger.warning("[{}] Skipping {}: search failed with {}", mode, case.id, e.code.value)
        return None

    rank = find_rank(case, resp.results)
    logger.info(
        "[{}] {:<40} {} ({}ms)",
        mode, case.label or case.id, f"rank {rank}" if rank else "not found", resp.meta.timings.total_ms,
    )
    return CaseResult(
        case_id=case.id,
        label=case.label,
        mode=mode,
        rank=rank,
        latency_ms=resp.meta.timings.total_ms,
    )


def evaluate(
    service: ImageSearchService,
    cases: Sequence[GoldenCase],
    api_key: str,
    base_dir: Path,
    ks: Sequence[int] = DEFAULT_KS,
) -> Dict[str, object]:
    """
    Run every case image-only, then with its prompt.

    Cases without a prompt still run in both passes so the two summaries
    cover the same set.
    """
    per_case: List[CaseResult] = []
    for with_prompt in (False, True):
        for case in cases:
            result = run_case(service, case, api_key, base_dir, with_prompt)
            if result is not None:
                per_case.append(result)

    baseline = [r for r in per_case if r.mode == MODE_BASELINE]
    augmented = [r for r in per_case if r.mode == MODE_AUGMENTED]
    return {
        MODE_BASELINE: summarize(baseline, ks),
        MODE_AUGMENTED: summarize(augmented, ks),
        "cases": per_case,
    }


def format_report(report: Dict[str, object], ks: Sequence[int] = DEFAULT_KS) -> str:
    base = report[MODE_BASELINE]
    aug = report[MODE_AUGMENTED]
    lines = [
        f"{'Metric':<10} {'Baseline':>10} {'+Prompt':>10} {'Lift':>10}",
        "-" * 43,
    ]
    for key in [f"hit@{k}" for k in ks] + ["mrr"]:
        lines.append(f"{key:<10} {base[key]:>10.4f} {aug[key]:>10.4f} {aug[key] - base[key]:>+10.4f}")
    lines.append(f"{'cases':<10} {base['n']:>10} {aug['n']:>10}")
    return "\n".join(lines)


def write_case_results(results: Sequence[CaseResult], path: Path) -> None:
    rows = [
        {"case_id": r.case_id, "label": r.label, "mode": r.mode, "rank": r.rank, "latency_ms": r.latency_ms}
        for r in results
    ]
    df = pd.DataFrame(rows, columns=["case_id", "label", "mode", "rank", "latency_ms"])
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, encoding="utf-8")


def build_eval_service(catalog_path: Path) -> ImageSearchService:
    return ImageSearchService(
        signal_extractor=GeminiSignalExtractor(),
        candidate_store=CatalogStore(load_catalog_snapshot(catalog_path)),
        reranker=GeminiReranker(),
        scorer=HeuristicScorer(),
        config_provider=ConfigProvider(),
        telemetry=TelemetrySink(),
    )


# ---------- CLI ----------

def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Hit@k / MRR evaluation over a golden image set.")
    ap.add_argument("--golden", type=Path, default=DEFAULT_GOLDEN_PATH,
                    help="JSON golden set; image paths are relative to this file")
    ap.add_argument("--catalog", type=Path, default=CATALOG_SNAPSHOT_PATH)
    ap.add_argument("--api-key", default=os.getenv("GEMINI_API_KEY"))
    ap.add_argument("--k", type=int, nargs="+", default=list(DEFAULT_KS))
    ap.add_argument("--out_csv", type=Path, default=None, help="Optional per-case results CSV")
    args = ap.parse_args(argv)

    if not args.api_key:
        ap.error("an API key is required (--api-key or GEMINI_API_KEY)")

    cases = load_golden_set(args.golden)
    service = build_eval_service(args.catalog)
    report = evaluate(service, cases, args.api_key, args.golden.parent, ks=args.k)

    print(format_report(report, ks=args.k))
    if args.out_csv:
        write_case_results(report["cases"], args.out_csv)
        logger.info("Wrote per-case results to {}", args.out_csv)


if __name__ == "__main__":
    main()
