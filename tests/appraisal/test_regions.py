from __future__ import annotations

import math

import pytest

from src.appraisal.regions import (
    BoundingBox,
    RawImageRegion,
    deduplicate,
    filter_regions,
    is_valid_region,
)

PAGE = (612.0, 792.0)


def _region(x: float, y: float, width: float, height: float, page: int = 1) -> RawImageRegion:
    return RawImageRegion(page_number=page, box=BoundingBox(x, y, width, height))


@pytest.mark.parametrize(
    "box",
    [
        BoundingBox(math.nan, 10, 200, 200),
        BoundingBox(10, math.inf, 200, 200),
        BoundingBox(200_000, 10, 200, 200),
        BoundingBox(10, 10, 79, 200),
        BoundingBox(10, 10, 200, 12_000),
        BoundingBox(-1_500, 10, 200, 200),
        BoundingBox(10, 792 + 1_001, 200, 200),
        BoundingBox(10, 10, 2_000, 100),
        BoundingBox(10, 10, 100, 1_100),
    ],
)
def test_invalid_regions_are_rejected(box):
    assert not is_valid_region(box, *PAGE, min_pixels=80)


def test_region_just_inside_limits_is_accepted():
    assert is_valid_region(BoundingBox(-999, 10, 80, 80), *PAGE, min_pixels=80)
    assert is_valid_region(BoundingBox(10, 10, 800, 80), *PAGE, min_pixels=80)


def test_minimum_size_comes_from_environment(monkeypatch):
    box = BoundingBox(10, 10, 60, 60)
    monkeypatch.setenv("APPRAISAL_MIN_IMAGE_PIXELS", "50")
    assert is_valid_region(box, *PAGE)
    monkeypatch.setenv("APPRAISAL_MIN_IMAGE_PIXELS", "not-a-number")
    assert not is_valid_region(box, *PAGE)


def test_deduplicate_keeps_first_of_near_identical_boxes():
    first = _region(100, 100, 200, 150)
    near = _region(105, 96, 209, 141)
    far = _region(100, 400, 200, 150)
    kept = deduplicate([first, near, far])
    assert kept == [first, far]


def test_deduplicate_respects_tolerance_boundary():
    first = _region(100, 100, 200, 150)
    shifted = _region(110, 100, 200, 150)
    assert deduplicate([first, shifted]) == [first, shifted]


def test_deduplicate_keeps_matching_boxes_on_different_pages():
    assert len(deduplicate([_region(10, 10, 200, 200, 1), _region(10, 10, 200, 200, 2)])) == 2


def test_filter_regions_is_idempotent():
    regions = [
        _region(100, 100, 200, 150),
        _region(102, 101, 199, 150),
        _region(10, 10, 20, 20),
        _region(300, 500, 150, 150),
        _region(300, 505, 155, 149),
    ]
    once = filter_regions(regions, *PAGE, min_pixels=80)
    twice = filter_regions(once, *PAGE, min_pixels=80)
    assert once == twice
    assert len(once) == 2
    assert all(is_valid_region(region.box, *PAGE, min_pixels=80) for region in once)
