from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from google import genai
from google.genai import types

from . import PROMPT_PATH
from .registry import RegistryError, env_float, env_int, load_json
from .retry import RetryCancelledError, RetryExhaustedError, call_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
RETRYABLE_MESSAGES = (
    "overloaded",
    "unavailable",
    "rate limit",
    "quota",
    "internal error",
    "server error",
)
RETRYABLE_CODES = {429, 500, 503}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z])(?=[A-Z0-9])|(?<=[0-9])(?=[A-Z])")


class ExtractionError(RuntimeError):
    """Base class for failures of the AI extraction call."""


class ExtractionUnavailableError(ExtractionError):
    """No credential is configured for the extraction service."""


class ServiceOverloadedError(ExtractionError):
    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"Extraction service still unavailable after {attempts} attempts: {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


class ExtractionCancelledError(ExtractionError):
    """The caller cancelled the extraction or its timeout elapsed."""


class InvalidResponseError(ExtractionError):
    """The service answered with something other than a JSON object."""


@dataclass(frozen=True)
class PromptTemplate:
    version: str
    instruction: str
    closing: str
    keys: tuple[str, ...]

    def render(self) -> str:
        schema = json.dumps({key: "" for key in self.keys}, ensure_ascii=False, indent=2)
        return f"{self.instruction}\n{schema}\n\n{self.closing}".strip()


@dataclass
class ExtractionResult:
    flat: dict[str, str]
    extra: dict[str, str]
    raw_text: str
    attempts: int
    model_id: str
    prompt_version: str


def _prompt_path() -> str:
    return os.getenv("APPRAISAL_PROMPT_PATH") or PROMPT_PATH


@lru_cache(maxsize=None)
def _template(path: str) -> PromptTemplate:
    data = load_json(path)
    instruction = data.get("instruction", "")
    if isinstance(instruction, list):
        instruction = "\n".join(str(line) for line in instruction)
    keys = data.get("keys") or []
    if not keys:
        raise RegistryError(f"Prompt template {path} lists no schema keys")
    return PromptTemplate(
        version=str(data.get("version", "unknown")),
        instruction=str(instruction),
        closing=str(data.get("closing", "")),
        keys=tuple(str(key) for key in keys),
    )


def load_prompt_template(path: str | None = None) -> PromptTemplate:
    return _template(path or _prompt_path())


def snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name.strip()).replace("-", "_").lower()


def strip_code_fence(text: str) -> str:
    return _FENCE.sub("", text.strip()).strip()


def parse_response(text: str) -> dict[str, Any]:
    cleaned = strip_code_fence(text or "")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        preview = cleaned[:80].replace("\n", " ")
        raise InvalidResponseError(f"Response is not valid JSON ({exc}): {preview!r}") from exc
    if not isinstance(payload, dict):
        raise InvalidResponseError(
            f"Expected a JSON object, received {type(payload).__name__}"
        )
    return payload


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def to_flat_record(
    payload: dict[str, Any], keys: Iterable[str]
) -> tuple[dict[str, str], dict[str, str]]:
    """Return the flat record with every schema key, plus the keys outside the schema."""

    flat = {key: "" for key in keys}
    extra: dict[str, str] = {}
    for raw_key, value in payload.items():
        key = snake_case(str(raw_key))
        text = _as_text(value)
        if key in flat:
            if text or not flat[key]:
                flat[key] = text
        elif text:
            extra[key] = text
    return flat, extra


def is_retryable_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    if any(token in message for token in RETRYABLE_MESSAGES):
        return True
    for attribute in ("code", "status", "status_code"):
        value = getattr(exc, attribute, None)
        if isinstance(value, int) and value in RETRYABLE_CODES:
            return True
        if isinstance(value, str) and value.isdigit() and int(value) in RETRYABLE_CODES:
            return True
    return False


def _api_key() -> str | None:
    return os.getenv("GOOGLE_AI_API_KEY") or os.getenv("GEMINI_API_KEY") or None


def _client(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


class AIExtractionClient:
    """Sends a document and the extraction prompt to Gemini and returns the flat record."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model_id: str | None = None,
        prompt: PromptTemplate | None = None,
    ) -> None:
        self._api_key = api_key or _api_key()
        self.model_id = model_id or os.getenv("GEMINI_MODEL") or DEFAULT_MODEL
        self._prompt = prompt
        self._backend: genai.Client | None = None
        self.max_attempts = env_int("APPRAISAL_MAX_ATTEMPTS", 4)
        self.base_delay = env_float("APPRAISAL_BACKOFF_BASE", 2.0)
        self.max_delay = env_float("APPRAISAL_BACKOFF_CAP", 60.0)

    @property
    def prompt(self) -> PromptTemplate:
        if self._prompt is None:
            self._prompt = load_prompt_template()
        return self._prompt

    def is_available(self) -> bool:
        return bool(self._api_key)

    def _service(self) -> genai.Client:
        if not self._api_key:
            raise ExtractionUnavailableError(
                "Set GOOGLE_AI_API_KEY or GEMINI_API_KEY to enable document extraction"
            )
        if self._backend is None:
            self._backend = _client(self._api_key)
        return self._backend

    def _generate(
        self, document: bytes, mime_type: str, prompt_text: str, timeout: float | None = None
    ) -> str:
        request: dict[str, Any] = {
            "model": self.model_id,
            "contents": [types.Part.from_bytes(data=document, mime_type=mime_type), prompt_text],
        }
        if timeout is not None:
            # HttpOptions.timeout is in milliseconds
            request["config"] = types.GenerateContentConfig(
                http_options=types.HttpOptions(timeout=max(1, int(timeout * 1000)))
            )
        response = self._service().models.generate_content(**request)
        return response.text or ""

    def extract(
        self,
        document: bytes,
        mime_type: str,
        *,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> ExtractionResult:
        self._service()
        prompt = self.prompt
        prompt_text = prompt.render()
        deadline = time.monotonic() + timeout if timeout is not None else None
        attempts = 0

        def _call() -> str:
            nonlocal attempts
            attempts += 1
            remaining = deadline - time.monotonic() if deadline is not None else None
            return self._generate(document, mime_type, prompt_text, remaining)

        try:
            raw_text = call_with_backoff(
                _call,
                is_retryable=is_retryable_error,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                cancel_event=cancel_event,
                deadline=deadline,
                sleep=sleep,
            )
        except RetryExhaustedError as exc:
            raise ServiceOverloadedError(exc.attempts, exc.last_error) from exc
        except RetryCancelledError as exc:
            raise ExtractionCancelledError(str(exc)) from exc

        payload = parse_response(raw_text)
        flat, extra = to_flat_record(payload, prompt.keys)
        filled = sum(1 for value in flat.values() if value)
        logger.info(
            "Extracted %s of %s fields with %s after %s attempt(s)",
            filled,
            len(flat),
            self.model_id,
            attempts,
        )
        return ExtractionResult(
            flat=flat,
            extra=extra,
            raw_text=raw_text,
            attempts=attempts,
            model_id=self.model_id,
            prompt_version=prompt.version,
        )
