from __future__ import annotations

import asyncio
import io
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from PIL import Image

from . import PIPELINE_VERSION
from .ai_extract import AIExtractionClient, ExtractionResult
from .context import ClassifiedImage, SurroundingText, correlate
from .geometry import extract_regions, render_first_page
from .mapper import MappingReport, build_mapping_report, ui_warnings
from .normalize import NormalizedRecord, normalize
from .regions import BoundingBox, RawImageRegion

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
UPLOADED_IMAGE_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.3


@dataclass
class PipelineResult:
    record: NormalizedRecord
    report: MappingReport
    images: list[ClassifiedImage] = field(default_factory=list)
    extraction: ExtractionResult | None = None
    image_mode: str = "skipped"
    processing_seconds: float = 0.0

    def as_dict(self, *, include_image_data: bool = False) -> dict[str, Any]:
        extraction = self.extraction
        return {
            "pipeline_version": PIPELINE_VERSION,
            "record": self.record.values,
            "notes": list(self.record.notes),
            "report": self.report.as_dict(),
            "ui_warnings": [warning.as_dict() for warning in ui_warnings(self.report)],
            "images": [image.as_dict(include_data=include_image_data) for image in self.images],
            "image_mode": self.image_mode,
            "flat_record": extraction.flat if extraction else {},
            "prompt_version": extraction.prompt_version if extraction else None,
            "model_id": extraction.model_id if extraction else None,
            "attempts": extraction.attempts if extraction else 0,
            "processing_seconds": round(self.processing_seconds, 3),
        }


def _image_from_upload(data: bytes, mime_type: str) -> ClassifiedImage:
    with Image.open(io.BytesIO(data)) as image:
        width, height = image.size
    region = RawImageRegion(
        page_number=1,
        box=BoundingBox(0.0, 0.0, float(width), float(height)),
        data=data,
        encoding=mime_type,
        source="upload",
    )
    return ClassifiedImage(
        region=region,
        category="property_photo",
        confidence=UPLOADED_IMAGE_CONFIDENCE,
        description="Uploaded Property Image",
    )


def _document_scan_fallback(data: bytes) -> ClassifiedImage:
    try:
        pixels, width, height = render_first_page(data)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not render the first page for the fallback image: %s", exc)
        pixels, width, height = b"", 0.0, 0.0
    region = RawImageRegion(
        page_number=1,
        box=BoundingBox(0.0, 0.0, width, height),
        data=pixels,
        source="render",
        kind="page",
    )
    return ClassifiedImage(
        region=region,
        category="document_scan",
        confidence=FALLBACK_CONFIDENCE,
        description="Document or Text Image (Page 1)",
        surrounding_text=SurroundingText(),
    )


def extract_images(data: bytes, mime_type: str) -> tuple[list[ClassifiedImage], str]:
    """Return the classified images of a document and the extraction mode used."""

    if mime_type.startswith("image/"):
        try:
            return [_image_from_upload(data, mime_type)], "single_image"
        except OSError as exc:
            logger.warning("Uploaded image could not be read: %s", exc)
            return [], "skipped"
    if mime_type != PDF_MIME:
        return [], "skipped"
    try:
        pages = extract_regions(data)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Image extraction failed for the whole document: %s", exc)
        return [_document_scan_fallback(data)], "document_scan_fallback"
    images: list[ClassifiedImage] = []
    for page in pages:
        images.extend(correlate(page.regions, page.text_runs))
    return images, "geometry"


def build_record(
    flat: dict[str, Any], extra: dict[str, Any] | None = None
) -> tuple[NormalizedRecord, MappingReport]:
    record = normalize(flat)
    report = build_mapping_report(record.values, extra=extra)
    return record, report


def extract_record(
    data: bytes,
    mime_type: str,
    client: AIExtractionClient,
    *,
    cancel_event: threading.Event | None = None,
    timeout: float | None = None,
) -> tuple[ExtractionResult, NormalizedRecord, MappingReport]:
    extraction = client.extract(data, mime_type, cancel_event=cancel_event, timeout=timeout)
    record, report = build_record(extraction.flat, extraction.extra)
    return extraction, record, report


async def process_document(
    data: bytes,
    mime_type: str,
    *,
    client: AIExtractionClient | None = None,
    cancel_event: threading.Event | None = None,
    timeout: float | None = None,
) -> PipelineResult:
    """Run image extraction and record extraction side by side and merge the results."""

    started = time.perf_counter()
    client = client or AIExtractionClient()
    image_outcome, record_outcome = await asyncio.gather(
        asyncio.to_thread(extract_images, data, mime_type),
        asyncio.to_thread(
            extract_record,
            data,
            mime_type,
            client,
            cancel_event=cancel_event,
            timeout=timeout,
        ),
        return_exceptions=True,
    )
    # both threads have finished here; the record branch error wins
    for outcome in (record_outcome, image_outcome):
        if isinstance(outcome, BaseException):
            raise outcome
    images, image_mode = image_outcome
    extraction, record, report = record_outcome
    elapsed = time.perf_counter() - started
    logger.info(
        "Processed %s document: %s image(s) via %s, %.2f%% complete in %.2fs",
        mime_type,
        len(images),
        image_mode,
        report.overall_completeness_percentage,
        elapsed,
    )
    return PipelineResult(
        record=record,
        report=report,
        images=images,
        extraction=extraction,
        image_mode=image_mode,
        processing_seconds=elapsed,
    )
