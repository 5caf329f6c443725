from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from . import CATALOG_PATH

FIELD_TYPES = {"string", "number", "boolean", "enum", "record", "list"}


class RegistryError(RuntimeError):
    """Raised when a bundled data file is missing or malformed."""


@dataclass(frozen=True)
class FieldDefinition:
    code: str
    display_name: str
    field_type: str
    is_required: bool
    is_critical: bool
    minimum: float | None = None
    maximum: float | None = None
    enum_values: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "display_name": self.display_name,
            "field_type": self.field_type,
            "is_required": self.is_required,
            "is_critical": self.is_critical,
        }
        if self.minimum is not None:
            payload["minimum"] = self.minimum
        if self.maximum is not None:
            payload["maximum"] = self.maximum
        if self.enum_values:
            payload["enum_values"] = list(self.enum_values)
        return payload


@dataclass(frozen=True)
class FieldCatalog:
    version: str
    fields: tuple[FieldDefinition, ...]

    def get(self, code: str) -> FieldDefinition | None:
        for definition in self.fields:
            if definition.code == code:
                return definition
        return None

    def codes(self) -> list[str]:
        return [definition.code for definition in self.fields]


def resolve_path(path: str | Path) -> Path:
    data_path = Path(path)
    if not data_path.is_absolute():
        base_dir = Path(__file__).resolve().parents[2]
        data_path = base_dir / data_path
    return data_path


@lru_cache(maxsize=None)
def _read_json(path: str) -> dict[str, Any]:
    data_path = resolve_path(path)
    try:
        with data_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError as exc:
        raise RegistryError(f"Data file not found: {data_path}") from exc
    except json.JSONDecodeError as exc:
        raise RegistryError(f"Data file {data_path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise RegistryError(f"Data file {data_path} must contain a JSON object")
    return cast(dict[str, Any], data)


def load_json(path: str | Path) -> dict[str, Any]:
    """Load a registry file once per process; callers must not mutate the result."""

    return _read_json(str(path))


def section(path: str | Path, name: str) -> Any:
    data = load_json(path)
    if name not in data:
        raise RegistryError(f"Data file {path} has no '{name}' section")
    return data[name]


def _field_from_entry(entry: Any) -> FieldDefinition:
    if not isinstance(entry, dict) or not isinstance(entry.get("code"), str):
        raise RegistryError(f"Malformed field definition: {entry!r}")
    field_type = entry.get("field_type", "string")
    if field_type not in FIELD_TYPES:
        raise RegistryError(f"Field {entry['code']} has unknown type {field_type!r}")
    enum_values = tuple(entry.get("enum_values") or ())
    if field_type == "enum" and not enum_values:
        raise RegistryError(f"Enum field {entry['code']} lists no values")
    return FieldDefinition(
        code=entry["code"],
        display_name=entry.get("display_name", entry["code"]),
        field_type=field_type,
        is_required=bool(entry.get("is_required", False)),
        is_critical=bool(entry.get("is_critical", False)),
        minimum=entry.get("minimum"),
        maximum=entry.get("maximum"),
        enum_values=enum_values,
    )


@lru_cache(maxsize=None)
def _catalog(path: str) -> FieldCatalog:
    data = load_json(path)
    entries = data.get("fields")
    if not isinstance(entries, list):
        raise RegistryError(f"Catalog {path} has no 'fields' list")
    fields = tuple(_field_from_entry(entry) for entry in entries)
    codes = [definition.code for definition in fields]
    if len(codes) != len(set(codes)):
        raise RegistryError(f"Catalog {path} declares a field more than once")
    return FieldCatalog(version=str(data.get("version", "unknown")), fields=fields)


def load_catalog(path: str | Path | None = None) -> FieldCatalog:
    return _catalog(str(path or os.getenv("APPRAISAL_CATALOG_PATH") or CATALOG_PATH))


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default
