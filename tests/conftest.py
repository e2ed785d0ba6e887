import pandas as pd
import pytest

from image_search.catalog_build import normalize_catalog_df
from image_search.schemas import ImageSignals


class RecordingSleep:
    """Stand-in for time.sleep that only remembers the requested delays."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


def _build_signals(
    category="Chair",
    category_conf=0.9,
    type_="Dining Chair",
    type_conf=0.9,
    keywords=("oak", "dining chair"),
    style=("Scandinavian",),
    material=("Oak",),
    color=("Light Wood",),
    intent=None,
    **flags,
) -> ImageSignals:
    return ImageSignals.model_validate(
        {
            "categoryGuess": {"value": category, "confidence": category_conf},
            "typeGuess": {"value": type_, "confidence": type_conf},
            "attributes": {
                "style": list(style),
                "material": list(material),
                "color": list(color),
                "shape": [],
            },
            "keywords": list(keywords),
            "qualityFlags": flags,
            "intent": intent,
        }
    )


@pytest.fixture
def make_signals():
    """Factory for ImageSignals with chair defaults; override any field by keyword."""
    return _build_signals


@pytest.fixture
def signals():
    return _build_signals()


@pytest.fixture
def catalog_df():
    raw = pd.DataFrame(
        {
            "id": ["c1", "c2", "c3", "c4", "t1", "t2", "s1"],
            "title": [
                "Oak Dining Chair",
                "Walnut Dining Chair",
                "Oak Lounge Chair",
                "Metal Bar Stool",
                "Oak Coffee Table",
                "Glass Dining Table",
                "Grey Fabric Sofa",
            ],
            "description": [
                "Solid oak dining chair, Scandinavian style, light wood finish.",
                "Walnut frame with a woven seat.",
                "Relaxed lounge chair in oak.",
                "Industrial matte black stool.",
                "Round coffee table in light oak.",
                "Tempered glass top, chrome legs.",
                "Three-seater sofa in grey fabric.",
            ],
            "category": ["Chair", "Chair", "Chair", "Chair", "Table", "Table", "Sofa"],
            "type": [
                "Dining Chair",
                "Dining Chair",
                "Lounge Chair",
                "Bar Stool",
                "Coffee Table",
                "Dining Table",
                "Sofa",
            ],
            "price": [120.0, 180.0, 350.0, 90.0, 240.0, 410.0, 899.0],
            "width": [45, 47, 70, 40, 90, 160, 210],
            "height": [80, 82, 75, 100, 45, 75, 85],
            "depth": [50, 52, 80, 40, 90, 90, 95],
        }
    )
    return normalize_catalog_df(raw)
