from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

_QUOTES = ("'", '"')


def _env_path(path: Path | None) -> Path:
    if path is not None:
        return path
    configured = os.getenv("APPRAISAL_ENV_FILE")
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parents[1] / ".env"


def _parse_value(raw: str) -> str:
    value = raw.strip()
    if value[:1] in _QUOTES:
        end = value.find(value[0], 1)
        if end > 0:
            return value[1:end]
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return value


def parse_env_lines(lines: list[str]) -> dict[str, str]:
    entries: dict[str, str] = {}
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            entries[key] = _parse_value(value)
    return entries


def load_env_file(path: Path | None = None, *, override: bool = False) -> list[str]:
    """Apply ``KEY=value`` pairs from a .env file and return the keys that were set.

    Values already present in the environment win unless ``override`` is True.
    """

    env_path = _env_path(path)
    try:
        content = env_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []

    applied = []
    for key, value in parse_env_lines(content.splitlines()).items():
        if not override and key in os.environ:
            continue
        os.environ[key] = value
        applied.append(key)
    if applied:
        logger.info("Loaded %s setting(s) from %s", len(applied), env_path)
    return applied
