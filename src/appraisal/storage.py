from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from .context import ClassifiedImage

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/upload/images"
BATCH_SIZE = 5
UPLOAD_SOURCE = "appraisal_document"
STORAGE_CATEGORIES = {
    "property_photo": "interior",
    "floor_plan": "interior",
    "building_exterior": "exterior",
    "location_map": "general",
    "comparison_photo": "general",
}
_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


class StorageConfigError(RuntimeError):
    """Raised when no storage endpoint is configured."""


@dataclass
class UploadedImage:
    id: str
    url: str
    category: str
    is_primary: bool
    original_category: str
    page: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "category": self.category,
            "is_primary": self.is_primary,
            "original_category": self.original_category,
            "page": self.page,
        }


@dataclass
class UploadSummary:
    uploaded: list[UploadedImage] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "uploaded": [image.as_dict() for image in self.uploaded],
            "errors": list(self.errors),
        }


def category_for_storage(category: str) -> str:
    return STORAGE_CATEGORIES.get(category, "general")


def _storage_url() -> str:
    url = os.getenv("APPRAISAL_STORAGE_URL")
    if not url:
        raise StorageConfigError("APPRAISAL_STORAGE_URL is not set")
    return url


class StorageUploader:
    def __init__(self, base_url: str | None = None, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(base_url=base_url or _storage_url(), timeout=30.0)

    def close(self) -> None:
        self._client.close()

    def _post_batch(
        self,
        entity_id: str,
        category: str,
        batch: Sequence[ClassifiedImage],
        *,
        first: bool,
    ) -> list[UploadedImage]:
        files = []
        for position, image in enumerate(batch):
            extension = _EXTENSIONS.get(image.region.encoding, "png")
            name = f"appraisal_p{image.region.page_number}_{category}_{position + 1}.{extension}"
            files.append(("images", (name, image.region.data, image.region.encoding)))
        response = self._client.post(
            UPLOAD_PATH,
            files=files,
            data={
                "entity_id": entity_id,
                "category": category,
                "is_primary": "true" if first else "false",
                "source": UPLOAD_SOURCE,
            },
        )
        response.raise_for_status()
        stored = response.json().get("images", [])
        uploaded = []
        for position, (image, entry) in enumerate(zip(batch, stored, strict=False)):
            uploaded.append(
                UploadedImage(
                    id=str(entry.get("id", "")),
                    url=str(entry.get("url", "")),
                    category=category,
                    is_primary=first and position == 0,
                    original_category=image.category,
                    page=image.region.page_number,
                )
            )
        return uploaded

    def upload(self, entity_id: str, images: Sequence[ClassifiedImage]) -> UploadSummary:
        """Upload images in per-category batches; a failed batch does not stop the rest."""

        summary = UploadSummary()
        groups: dict[str, list[ClassifiedImage]] = {}
        for image in images:
            if image.region.data:
                groups.setdefault(category_for_storage(image.category), []).append(image)
        first = True
        batch_number = 0
        for category, members in groups.items():
            for offset in range(0, len(members), BATCH_SIZE):
                batch = members[offset : offset + BATCH_SIZE]
                batch_number += 1
                try:
                    summary.uploaded.extend(
                        self._post_batch(entity_id, category, batch, first=first)
                    )
                except (httpx.HTTPError, ValueError) as exc:
                    message = f"Batch {batch_number} ({category}) failed: {exc}"
                    logger.warning("Image upload for %s: %s", entity_id, message)
                    summary.errors.append(message)
                first = False
        total = sum(len(members) for members in groups.values())
        logger.info("Uploaded %s of %s image(s) for %s", len(summary.uploaded), total, entity_id)
        return summary
