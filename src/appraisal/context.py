from __future__ import annotations

import base64
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from . import IMAGE_PATTERNS_PATH
from .geometry import TextRun
from .regions import BoundingBox, RawImageRegion
from .registry import RegistryError, load_json

logger = logging.getLogger(__name__)

PROXIMITY_RADIUS = 100.0
SIGNATURE_TEXT_LIMIT = 100
STAMP_TEXT_LIMIT = 40
LOGO_MAX_AREA = 5000
DESCRIPTION_MIN_LENGTH = 2
# confidence multiplier for regions placed from the resource table
GUESSED_PLACEMENT_FACTOR = 0.5

CATEGORIES = (
    "property_photo",
    "floor_plan",
    "building_exterior",
    "comparison_photo",
    "location_map",
    "signature",
    "logo",
    "document_scan",
    "unknown",
)


@dataclass(frozen=True)
class SurroundingText:
    above: tuple[str, ...] = ()
    below: tuple[str, ...] = ()
    nearby: tuple[str, ...] = ()

    def joined(self) -> str:
        return " ".join(self.above + self.below + self.nearby).strip()

    def as_dict(self) -> dict[str, list[str]]:
        return {"above": list(self.above), "below": list(self.below), "nearby": list(self.nearby)}


@dataclass(frozen=True)
class ClassifiedImage:
    region: RawImageRegion
    category: str
    confidence: float
    description: str
    surrounding_text: SurroundingText = SurroundingText()

    def as_dict(self, *, include_data: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            **self.region.as_dict(),
            "category": self.category,
            "confidence": self.confidence,
            "description": self.description,
            "surrounding_text": self.surrounding_text.as_dict(),
        }
        if include_data:
            payload["data"] = base64.b64encode(self.region.data).decode("ascii")
        return payload


@dataclass(frozen=True)
class ImagePatterns:
    order: tuple[str, ...]
    keywords: dict[str, tuple[str, ...]]
    signature: tuple[str, ...]
    stamp: tuple[str, ...]
    descriptions: dict[str, str]


@lru_cache(maxsize=None)
def load_patterns(path: str = IMAGE_PATTERNS_PATH) -> ImagePatterns:
    data = load_json(path)
    categories = data.get("categories")
    if not isinstance(categories, dict):
        raise RegistryError(f"{path} has no 'categories' table")
    keywords = {
        name: tuple(
            keyword.lower()
            for language in ("arabic", "english")
            for keyword in keywords_by_language.get(language, [])
        )
        for name, keywords_by_language in categories.items()
    }
    order = tuple(data.get("order") or keywords)
    unknown = [name for name in order if name not in keywords or name not in CATEGORIES]
    if unknown:
        raise RegistryError(f"{path} orders unknown categories: {unknown}")
    return ImagePatterns(
        order=order,
        keywords=keywords,
        signature=tuple(keyword.lower() for keyword in data.get("signature", [])),
        stamp=tuple(keyword.lower() for keyword in data.get("stamp", [])),
        descriptions=dict(data.get("descriptions", {})),
    )


def gather_surrounding_text(
    box: BoundingBox, runs: Iterable[TextRun], radius: float = PROXIMITY_RADIUS
) -> SurroundingText:
    above: list[str] = []
    below: list[str] = []
    nearby: list[str] = []
    center_x, center_y = box.center
    for run in runs:
        within_span = box.x - radius <= run.x <= box.x + box.width + radius
        if within_span and box.y - radius <= run.y < box.y:
            above.append(run.text)
        elif within_span and box.bottom < run.y <= box.bottom + radius:
            below.append(run.text)
        elif math.hypot(run.x - center_x, run.y - center_y) <= radius:
            nearby.append(run.text)
    return SurroundingText(tuple(above), tuple(below), tuple(nearby))


def _matches(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _geometric_category(box: BoundingBox) -> str:
    if box.height <= 0:
        return "unknown"
    if box.area < LOGO_MAX_AREA:
        return "logo"
    aspect = box.aspect_ratio
    if aspect > 2:
        return "floor_plan"
    if 0.7 <= aspect <= 1.3:
        return "property_photo"
    if aspect < 0.7:
        return "document_scan"
    return "unknown"


def classify(text: str, box: BoundingBox, patterns: ImagePatterns | None = None) -> str:
    patterns = patterns or load_patterns()
    lowered = text.lower()
    for category in patterns.order:
        if _matches(lowered, patterns.keywords[category]):
            return category
    if lowered and len(lowered) < SIGNATURE_TEXT_LIMIT and _matches(lowered, patterns.signature):
        return "signature"
    return _geometric_category(box)


def context_confidence(
    text: str,
    category: str,
    patterns: ImagePatterns | None = None,
    *,
    source: str = "paint",
) -> float:
    patterns = patterns or load_patterns()
    lowered = text.lower()
    if not lowered:
        confidence = 0.3
    elif category in patterns.keywords and _matches(lowered, patterns.keywords[category]):
        confidence = 0.9
    elif category == "signature" and _matches(lowered, patterns.signature):
        confidence = 0.9
    else:
        confidence = 0.6
    if source == "resources":
        confidence = round(confidence * GUESSED_PLACEMENT_FACTOR, 2)
    return confidence


def describe(
    surrounding: SurroundingText,
    category: str,
    page_number: int,
    patterns: ImagePatterns | None = None,
) -> str:
    patterns = patterns or load_patterns()
    parts = [
        text for text in surrounding.above + surrounding.below if len(text) > DESCRIPTION_MIN_LENGTH
    ]
    if parts:
        return f"{' '.join(parts)} (Page {page_number})"
    label = patterns.descriptions.get(category, patterns.descriptions.get("unknown", "Image"))
    return f"{label} (Page {page_number})"


def is_stamp(text: str, patterns: ImagePatterns | None = None) -> bool:
    patterns = patterns or load_patterns()
    lowered = text.lower()
    return len(lowered) < STAMP_TEXT_LIMIT and _matches(lowered, patterns.stamp)


def correlate(
    regions: Iterable[RawImageRegion],
    runs: Sequence[TextRun],
    *,
    radius: float = PROXIMITY_RADIUS,
) -> list[ClassifiedImage]:
    patterns = load_patterns()
    classified: list[ClassifiedImage] = []
    for region in regions:
        surrounding = gather_surrounding_text(region.box, runs, radius)
        text = surrounding.joined()
        if is_stamp(text, patterns):
            logger.info("Discarding stamp-like region on page %s", region.page_number)
            continue
        category = classify(text, region.box, patterns)
        classified.append(
            ClassifiedImage(
                region=region,
                category=category,
                confidence=context_confidence(text, category, patterns, source=region.source),
                description=describe(surrounding, category, region.page_number, patterns),
                surrounding_text=surrounding,
            )
        )
    return classified
