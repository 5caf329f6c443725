from __future__ import annotations

import json
import mimetypes
import os
from pathlib import Path
from typing import Any, cast

from fastapi import APIRouter, Body, File, Form, HTTPException, UploadFile

from ..appraisal.ai_extract import (
    AIExtractionClient,
    ExtractionCancelledError,
    InvalidResponseError,
    ServiceOverloadedError,
    load_prompt_template,
)
from ..appraisal.mapper import ui_warnings
from ..appraisal.pipeline import build_record, process_document
from ..appraisal.registry import env_float
from ..appraisal.storage import StorageConfigError, StorageUploader

router = APIRouter(prefix="/appraisal", tags=["appraisal"])

SUPPORTED_TYPES = {
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/webp",
    "text/plain",
}
RETRY_AFTER_SECONDS = "60"


def _extraction_client() -> AIExtractionClient:
    return AIExtractionClient()


def _storage_uploader() -> StorageUploader:
    return StorageUploader()


def _request_timeout() -> float | None:
    timeout = env_float("APPRAISAL_REQUEST_TIMEOUT", 0.0)
    return timeout if timeout > 0 else None


def _sample_candidates() -> list[Path]:
    candidates: list[Path] = []
    env_path = os.getenv("APPRAISAL_SAMPLE_JSON")
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(Path(__file__).resolve().parents[2] / "samples" / "sample_flat_record.json")
    return candidates


def _load_sample() -> dict[str, Any]:
    for candidate in _sample_candidates():
        if candidate and candidate.exists():
            with candidate.open("r", encoding="utf-8") as handle:
                return cast(dict[str, Any], json.load(handle))
    raise HTTPException(status_code=404, detail="Sample record not available")


def _mime_type(file: UploadFile) -> str:
    content_type = (file.content_type or "").split(";", 1)[0].strip().lower()
    if content_type and content_type != "application/octet-stream":
        return content_type
    guessed, _ = mimetypes.guess_type(file.filename or "")
    return guessed or "application/octet-stream"


def _split_flat(payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    keys = set(load_prompt_template().keys)
    flat = {key: value for key, value in payload.items() if key in keys}
    extra = {key: value for key, value in payload.items() if key not in keys}
    return flat, extra


def _record_response(flat: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    record, report = build_record(flat, extra)
    return {
        "record": record.values,
        "notes": record.notes,
        "report": report.as_dict(),
        "ui_warnings": [warning.as_dict() for warning in ui_warnings(report)],
    }


@router.post("/extract")
async def appraisal_extract(
    file: UploadFile = File(...),  # noqa: B008
    entity_id: str | None = Form(None),  # noqa: B008
    include_image_data: bool = Form(False),  # noqa: B008
):
    mime_type = _mime_type(file)
    if mime_type not in SUPPORTED_TYPES:
        raise HTTPException(status_code=422, detail="Upload a PDF or an image")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=422, detail="Uploaded file is empty")

    client = _extraction_client()
    if not client.is_available():
        raise HTTPException(status_code=503, detail="Document extraction is not configured")
    try:
        result = await process_document(
            data, mime_type, client=client, timeout=_request_timeout()
        )
    except ServiceOverloadedError as exc:
        raise HTTPException(
            status_code=503,
            detail=f"Extraction service is busy after {exc.attempts} attempts; retry later",
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        ) from exc
    except ExtractionCancelledError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except InvalidResponseError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    response = result.as_dict(include_image_data=include_image_data)
    if entity_id:
        try:
            uploader = _storage_uploader()
        except StorageConfigError as exc:
            response["storage"] = {"uploaded": [], "errors": [str(exc)]}
        else:
            try:
                response["storage"] = uploader.upload(entity_id, result.images).as_dict()
            finally:
                uploader.close()
    return response


@router.post("/normalize")
async def appraisal_normalize(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:  # noqa: B008
    flat, extra = _split_flat(payload)
    return _record_response(flat, extra)


@router.get("/demo")
async def appraisal_demo() -> dict[str, Any]:
    sample = _load_sample()
    flat_obj = sample.get("flat_record")
    payload = flat_obj if isinstance(flat_obj, dict) else sample
    flat, extra = _split_flat(payload)
    return _record_response(flat, extra)
