from __future__ import annotations

"""
Text normalisation helpers shared across catalog building, retrieval and
scoring.

Public helpers:

* basic_clean(text) -> str
    Light-weight clean used when building the catalog snapshot.

* clamp_text_length(text, max_chars) -> str
    Hard truncation used before descriptions leave retrieval.

* fold(text) -> str
    Case-insensitive comparison key.

* contains_term(haystack, term) -> bool
    Literal, case-insensitive substring match (no regex semantics).
"""

import re
import unicodedata
from typing import Iterable, List

from bs4 import BeautifulSoup

MAX_INPUT_CHARS = 20_000


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _strip_html(text: str) -> str:
    if not text:
        return ""
    if "<" not in text:
        return text
    soup = BeautifulSoup(text, "html.parser")
    return soup.get_text(" ", strip=True)


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\u2018", "'").replace("\u2019", "'")
    text = text.replace("\u201c", '"').replace("\u201d", '"')
    text = text.replace("\u2013", "-").replace("\u2014", "-")
    return text


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def basic_clean(text: str | None) -> str:
    """Light-weight clean for catalog fields.

    * strips HTML
    * normalises unicode and whitespace
    * truncates excessively long inputs
    """
    if text is None or (isinstance(text, float) and text != text):  # NaN from pandas
        return ""
    if not isinstance(text, str):
        text = str(text)

    if len(text) > MAX_INPUT_CHARS:
        text = text[:MAX_INPUT_CHARS]

    text = _strip_html(text)
    text = _normalise_unicode(text)

    text = text.replace("\r", " ").replace("\n", " ").replace("\t", " ")
    text = re.sub(r"\s+", " ", text).strip()
    return text


def clamp_text_length(text: str | None, max_chars: int = MAX_INPUT_CHARS) -> str:
    if not text:
        return ""
    return text if len(text) <= max_chars else text[:max_chars]


def fold(text: str | None) -> str:
    return (text or "").strip().casefold()


def contains_term(haystack: str, term: str) -> bool:
    needle = fold(term)
    if not needle:
        return False
    return needle in (haystack or "").casefold()


def count_terms_found(haystack: str, terms: Iterable[str]) -> int:
    return sum(1 for t in terms if contains_term(haystack, t))


def clean_terms(terms: Iterable[str] | None) -> List[str]:
    """Strip, drop blanks and de-duplicate case-insensitively (first wins)."""
    out: List[str] = []
    seen = set()
    for t in terms or []:
        s = str(t).strip()
        key = s.casefold()
        if s and key not in seen:
            seen.add(key)
            out.append(s)
    return out
