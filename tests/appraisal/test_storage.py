from __future__ import annotations

import json

import httpx
import pytest

from src.appraisal.context import ClassifiedImage
from src.appraisal.regions import BoundingBox, RawImageRegion
from src.appraisal.storage import StorageConfigError, StorageUploader, category_for_storage


def _image(category: str, page: int = 1, data: bytes = b"png-bytes") -> ClassifiedImage:
    region = RawImageRegion(page_number=page, box=BoundingBox(0, 0, 200, 200), data=data)
    return ClassifiedImage(region=region, category=category, confidence=0.9, description="x")


def _uploader(handler) -> StorageUploader:
    client = httpx.Client(base_url="http://storage.test", transport=httpx.MockTransport(handler))
    return StorageUploader(client=client)


@pytest.mark.parametrize(
    ("category", "expected"),
    [
        ("property_photo", "interior"),
        ("floor_plan", "interior"),
        ("building_exterior", "exterior"),
        ("location_map", "general"),
        ("comparison_photo", "general"),
        ("signature", "general"),
    ],
)
def test_category_for_storage(category, expected):
    assert category_for_storage(category) == expected


def test_upload_batches_by_category():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        count = request.content.count(b'name="images"')
        offset = len(requests) * 100
        images = [{"id": f"img-{offset + i}", "url": f"/img/{offset + i}"} for i in range(count)]
        return httpx.Response(200, json={"images": images})

    images = [_image("property_photo", page) for page in range(1, 8)]
    images.append(_image("building_exterior", 9))
    images.append(_image("logo", 9, data=b""))

    summary = _uploader(handler).upload("property-42", images)

    assert len(requests) == 3
    assert all(request.url.path == "/api/upload/images" for request in requests)
    assert b"appraisal_document" in requests[0].content
    assert b"property-42" in requests[0].content
    assert summary.errors == []
    assert len(summary.uploaded) == 8
    assert [image.is_primary for image in summary.uploaded].count(True) == 1
    assert summary.uploaded[0].is_primary is True
    assert summary.uploaded[-1].category == "exterior"
    assert summary.uploaded[-1].original_category == "building_exterior"
    assert summary.uploaded[-1].page == 9
    json.dumps(summary.as_dict())


def test_failed_batch_is_reported_and_others_continue():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(500, json={"error": "storage down"})
        return httpx.Response(200, json={"images": [{"id": "ok", "url": "/ok"}]})

    summary = _uploader(handler).upload(
        "property-7", [_image("property_photo"), _image("building_exterior")]
    )
    assert calls["count"] == 2
    assert len(summary.errors) == 1
    assert [image.category for image in summary.uploaded] == ["exterior"]


def test_missing_storage_url_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("APPRAISAL_STORAGE_URL", raising=False)
    with pytest.raises(StorageConfigError):
        StorageUploader()
