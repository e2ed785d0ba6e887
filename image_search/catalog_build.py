from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from loguru import logger

from .config import CATALOG_RAW_DIR, CATALOG_SNAPSHOT_PATH
from .normalize import basic_clean


CANONICAL_COLUMNS: List[str] = [
    "id",
    "title",
    "description",
    "category",
    "type",
    "price",
    "width",
    "height",
    "depth",
]

DIMENSION_COLUMNS = ["width", "height", "depth"]


# ---------------------------
# Column detection / standardization
# ---------------------------

# Product exports come from different tools, so we accept a few variants.
COLUMN_CANDIDATES: Dict[str, List[str]] = {
    "id": ["id", "_id", "product_id", "productId", "sku", "SKU"],
    "title": ["title", "Title", "name", "Name", "product_name", "Product Name"],
    "description": ["description", "Description", "desc", "details", "Long Description"],
    "category": ["category", "Category", "product_category"],
    "type": ["type", "Type", "product_type", "subcategory", "Subcategory"],
    "price": ["price", "Price", "unit_price", "price_usd"],
    "width": ["width", "Width", "width_cm"],
    "height": ["height", "Height", "height_cm"],
    "depth": ["depth", "Depth", "depth_cm", "length"],
}


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename columns from a raw export to the canonical internal schema."""
    col_map: Dict[str, str] = {}
    lower_to_original = {str(c).lower(): c for c in df.columns}

    for canon, candidates in COLUMN_CANDIDATES.items():
        for candidate in candidates:
            if candidate in df.columns:
                col_map[candidate] = canon
                break
            cand_lower = candidate.lower()
            if cand_lower in lower_to_original:
                col_map[lower_to_original[cand_lower]] = canon
                break

    logger.info("Standardizing columns with map: {}", col_map)
    df_std = df.rename(columns=col_map)

    missing = [c for c in ("title", "category") if c not in df_std.columns]
    if missing:
        logger.warning("Raw catalog is missing expected columns: {}", missing)

    return df_std


# ---------------------------
# Field parsing helpers
# ---------------------------

def parse_document_id(value: Any) -> str:
    """
    Normalise a document id to a plain string.

    Handles Mongo extended-JSON exports ({"$oid": "..."}) as well as numbers.
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    if isinstance(value, dict):
        value = value.get("$oid") or value.get("oid") or ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def parse_number(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return default if pd.isna(value) else float(value)
    text = str(value).strip().replace(",", "").lstrip("$")
    if not text:
        return default
    try:
        return float(text)
    except ValueError:
        return default


def parse_dimension(value: Any) -> Optional[float]:
    """Dimensions <= 0 mean 'unknown' in product exports."""
    num = parse_number(value)
    if num is None or num <= 0:
        return None
    return num


# ---------------------------
# Catalog normalization
# ---------------------------

def normalize_catalog_df(df_raw: pd.DataFrame) -> pd.DataFrame:
    """
    Main normalization pipeline for the product catalog.

    Output: canonical schema (one row per product document):

    - id (str, unique)
    - title (str)
    - description (str, HTML stripped)
    - category (str)
    - type (str)
    - price (float, >= 0)
    - width / height / depth (float or None)
    """
    logger.info("Normalizing catalog dataframe with {} raw rows", len(df_raw))

    df = _standardize_columns(df_raw.copy())

    if "title" not in df.columns:
        logger.error("No title column found after standardization; resulting catalog will be empty.")
        return pd.DataFrame(columns=CANONICAL_COLUMNS)

    df["title"] = df["title"].apply(basic_clean)
    df = df[df["title"] != ""].reset_index(drop=True)

    if "id" in df.columns:
        df["id"] = df["id"].apply(parse_document_id)
    else:
        df["id"] = ""
    blank = df["id"] == ""
    if blank.any():
        logger.warning("{} rows without id; assigning positional ids", int(blank.sum()))
        df.loc[blank, "id"] = [f"row-{i}" for i in df.index[blank]]
    df = df.drop_duplicates(subset=["id"]).reset_index(drop=True)

    for col in ("description", "category", "type"):
        if col in df.columns:
            df[col] = df[col].apply(basic_clean)
        else:
            df[col] = ""

    if "price" in df.columns:
        df["price"] = df["price"].apply(lambda v: max(0.0, parse_number(v, 0.0) or 0.0))
    else:
        df["price"] = 0.0

    for col in DIMENSION_COLUMNS:
        if col in df.columns:
            df[col] = df[col].apply(parse_dimension)
        else:
            df[col] = None

    df_out = df[CANONICAL_COLUMNS].reset_index(drop=True)
    logger.info("Catalog normalization complete. Final rows: {}", len(df_out))
    return df_out


# ---------------------------
# IO helpers
# ---------------------------

def _read_json_documents(path: Path) -> pd.DataFrame:
    if path.suffix == ".jsonl":
        return pd.read_json(path, lines=True, dtype=False)
    with path.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, dict):
        raw = raw.get("products", [])
    return pd.DataFrame(raw)


def load_raw_catalog(path: Optional[Path] = None) -> pd.DataFrame:
    """
    Load a raw product export (JSON array, JSON lines or CSV).

    If no path is provided, we take the first export found under data/catalog_raw.
    """
    if path is None:
        candidates = sorted(
            p for p in CATALOG_RAW_DIR.glob("*") if p.suffix in {".json", ".jsonl", ".csv"}
        )
        if not candidates:
            raise FileNotFoundError(
                f"No product exports found under {CATALOG_RAW_DIR}. "
                f"Place a .json/.jsonl/.csv export there and re-run."
            )
        path = candidates[0]

    logger.info("Loading raw catalog from {}", path)
    if path.suffix in {".json", ".jsonl"}:
        df = _read_json_documents(path)
    elif path.suffix == ".csv":
        df = pd.read_csv(path)
    else:
        raise ValueError(f"Unsupported catalog export format: {path.suffix}")
    logger.info("Loaded {} rows from raw catalog", len(df))
    return df


def build_catalog_snapshot(
    raw_path: Optional[Path] = None,
    output_path: Path = CATALOG_SNAPSHOT_PATH,
) -> Path:
    """
    End-to-end: load raw export → normalize → write snapshot.

    Parquet output by default; a .json output path writes records instead.
    """
    df_norm = normalize_catalog_df(load_raw_catalog(raw_path))

    logger.info("Writing catalog snapshot to {}", output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if output_path.suffix == ".json":
        df_norm.to_json(output_path, orient="records", indent=2)
    else:
        df_norm.to_parquet(output_path, index=False)
    logger.info("Catalog snapshot written with {} rows", len(df_norm))

    return output_path


def load_catalog_snapshot(path: Path = CATALOG_SNAPSHOT_PATH) -> pd.DataFrame:
    """
    Load a snapshot and re-apply normalization so hand-edited JSON works too.
    """
    logger.info("Loading catalog snapshot from {}", path)
    if path.suffix in {".json", ".jsonl"}:
        df = _read_json_documents(path)
    else:
        df = pd.read_parquet(path)
    df = normalize_catalog_df(df)
    logger.info("Loaded catalog snapshot with {} rows", len(df))
    return df


# ---------------------------
# CLI entrypoint
# ---------------------------

def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Build the normalized product catalog snapshot.")
    parser.add_argument("--input", type=Path, default=None, help="Raw export (.json/.jsonl/.csv)")
    parser.add_argument("--output", type=Path, default=CATALOG_SNAPSHOT_PATH)
    args = parser.parse_args(argv)
    build_catalog_snapshot(args.input, args.output)


if __name__ == "__main__":
    # python -m image_search.catalog_build --input data/catalog_raw/products.json
    main()
