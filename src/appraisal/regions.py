from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from .registry import env_int

logger = logging.getLogger(__name__)

MAX_COORDINATE = 100_000
MAX_DIMENSION = 10_000
PAGE_MARGIN = 1_000
MIN_ASPECT_RATIO = 0.1
MAX_ASPECT_RATIO = 10.0
DEDUP_TOLERANCE = 10.0


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        if self.height == 0:
            return math.inf
        return self.width / self.height

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def as_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class RawImageRegion:
    page_number: int
    box: BoundingBox
    data: bytes = b""
    encoding: str = "image/png"
    source: str = "paint"
    kind: str = "image"

    def with_data(self, data: bytes, encoding: str = "image/png") -> RawImageRegion:
        return replace(self, data=data, encoding=encoding)

    def as_dict(self) -> dict[str, Any]:
        return {
            "page_number": self.page_number,
            "bbox": self.box.as_dict(),
            "encoding": self.encoding,
            "source": self.source,
            "kind": self.kind,
            "size_bytes": len(self.data),
        }


def min_image_pixels() -> int:
    return env_int("APPRAISAL_MIN_IMAGE_PIXELS", 80)


def is_valid_region(
    box: BoundingBox,
    page_width: float,
    page_height: float,
    min_pixels: int | None = None,
) -> bool:
    floor = min_image_pixels() if min_pixels is None else min_pixels
    values = (box.x, box.y, box.width, box.height)
    if not all(math.isfinite(value) for value in values):
        return False
    if abs(box.x) > MAX_COORDINATE or abs(box.y) > MAX_COORDINATE:
        return False
    if box.width < floor or box.height < floor:
        return False
    if box.width > MAX_DIMENSION or box.height > MAX_DIMENSION:
        return False
    if box.x < -PAGE_MARGIN or box.y < -PAGE_MARGIN:
        return False
    if box.x > page_width + PAGE_MARGIN or box.y > page_height + PAGE_MARGIN:
        return False
    if not MIN_ASPECT_RATIO <= box.aspect_ratio <= MAX_ASPECT_RATIO:
        return False
    return box.area >= floor * floor


def _same_box(first: BoundingBox, second: BoundingBox, tolerance: float) -> bool:
    return (
        abs(first.x - second.x) < tolerance
        and abs(first.y - second.y) < tolerance
        and abs(first.width - second.width) < tolerance
        and abs(first.height - second.height) < tolerance
    )


def deduplicate(
    regions: Iterable[RawImageRegion], tolerance: float = DEDUP_TOLERANCE
) -> list[RawImageRegion]:
    kept: list[RawImageRegion] = []
    for region in regions:
        if any(
            existing.page_number == region.page_number
            and _same_box(existing.box, region.box, tolerance)
            for existing in kept
        ):
            continue
        kept.append(region)
    return kept


def filter_regions(
    regions: Iterable[RawImageRegion],
    page_width: float,
    page_height: float,
    *,
    min_pixels: int | None = None,
    tolerance: float = DEDUP_TOLERANCE,
) -> list[RawImageRegion]:
    candidates = list(regions)
    valid = [
        region
        for region in candidates
        if is_valid_region(region.box, page_width, page_height, min_pixels)
    ]
    if len(valid) < len(candidates):
        logger.debug("Dropped %s invalid region(s)", len(candidates) - len(valid))
    return deduplicate(valid, tolerance)
