from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from jsonschema import Draft202012Validator

from .registry import FieldCatalog, FieldDefinition, env_float, load_catalog

logger = logging.getLogger(__name__)

SEVERITY_UI_TYPE = {"high": "error", "medium": "warning", "low": "info"}
WARNING_TITLES = {
    "missing_critical": "Critical Field Missing",
    "low_confidence": "Low Confidence Extraction",
    "unmapped_data": "Additional Data Found",
    "validation_error": "Validation Error",
}


@dataclass
class FieldMapping:
    field_name: str
    display_name: str
    is_required: bool
    is_critical: bool
    extracted_successfully: bool
    warning_level: str
    confidence_score: float | None = None
    warning_message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "field_name": self.field_name,
            "display_name": self.display_name,
            "is_required": self.is_required,
            "is_critical": self.is_critical,
            "extracted_successfully": self.extracted_successfully,
            "warning_level": self.warning_level,
        }
        if self.confidence_score is not None:
            payload["confidence_score"] = self.confidence_score
        if self.warning_message is not None:
            payload["warning_message"] = self.warning_message
        return payload


@dataclass
class MappingWarning:
    type: str
    field: str
    message: str
    severity: str
    suggestion: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
        }
        if self.suggestion is not None:
            payload["suggestion"] = self.suggestion
        return payload


@dataclass
class UnmappedItem:
    key: str
    value: Any
    suggestion: str

    def as_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value": self.value, "suggestion": self.suggestion}


@dataclass
class MappingReport:
    catalog_version: str
    total_extracted_fields: int
    total_catalog_fields: int
    successfully_mapped: int
    missing_critical_fields: int
    low_confidence_fields: int
    unmapped_extra_fields: int
    field_mappings: list[FieldMapping] = field(default_factory=list)
    warnings: list[MappingWarning] = field(default_factory=list)
    unmapped_data: list[UnmappedItem] = field(default_factory=list)

    @property
    def overall_completeness_percentage(self) -> float:
        if not self.total_catalog_fields:
            return 0.0
        return round(self.successfully_mapped / self.total_catalog_fields * 100, 2)

    def as_dict(self) -> dict[str, Any]:
        return {
            "catalog_version": self.catalog_version,
            "total_extracted_fields": self.total_extracted_fields,
            "total_catalog_fields": self.total_catalog_fields,
            "successfully_mapped": self.successfully_mapped,
            "missing_critical_fields": self.missing_critical_fields,
            "low_confidence_fields": self.low_confidence_fields,
            "unmapped_extra_fields": self.unmapped_extra_fields,
            "overall_completeness_percentage": self.overall_completeness_percentage,
            "field_mappings": [mapping.as_dict() for mapping in self.field_mappings],
            "warnings": [warning.as_dict() for warning in self.warnings],
            "unmapped_data": [item.as_dict() for item in self.unmapped_data],
        }


@dataclass
class UIWarning:
    id: str
    type: str
    title: str
    message: str
    field_name: str
    action: str

    def as_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "field_name": self.field_name,
            "action": self.action,
        }


def low_confidence_threshold() -> float:
    return env_float("APPRAISAL_LOW_CONFIDENCE", 0.6)


def field_schema(definition: FieldDefinition) -> dict[str, Any]:
    if definition.field_type == "number":
        schema: dict[str, Any] = {"type": "number"}
        if definition.minimum is not None:
            schema["minimum"] = definition.minimum
        if definition.maximum is not None:
            schema["maximum"] = definition.maximum
        return schema
    if definition.field_type == "boolean":
        return {"type": "boolean"}
    if definition.field_type == "enum":
        return {"enum": list(definition.enum_values)}
    if definition.field_type == "record":
        return {"type": "object", "additionalProperties": {"type": "string"}}
    if definition.field_type == "list":
        return {"type": "array", "items": {"type": "string"}}
    return {"type": "string", "pattern": r"\S"}


@lru_cache(maxsize=None)
def _validators(catalog: FieldCatalog) -> dict[str, Draft202012Validator]:
    return {
        definition.code: Draft202012Validator(field_schema(definition))
        for definition in catalog.fields
    }


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return True


def suggest_field(key: str) -> str:
    name = key.lower()
    if "orientation" in name:
        return "Consider adding an orientation field for the unit"
    if "balcony" in name and "count" in name:
        return "Map to balcony details or record under additional features"
    if "maintenance" in name:
        return "Record under maintenance or service charges"
    if "facilities" in name or "amenities" in name:
        return "Record under building amenities"
    if "landmark" in name or "nearby" in name:
        return "Append to nearby services or location description"
    if "transportation" in name or "transport" in name:
        return "Append to location description as transportation access"
    return "Review and add to notes if relevant"


def _missing_mapping(definition: FieldDefinition) -> tuple[FieldMapping, MappingWarning | None]:
    if definition.is_critical:
        level = "error"
        message = f"Critical field {definition.display_name} is missing"
        warning = MappingWarning(
            type="missing_critical",
            field=definition.code,
            message=message,
            severity="high",
            suggestion="Enter this value manually before submitting the appraisal",
        )
    elif definition.is_required:
        level, message, warning = "warning", f"{definition.display_name} was not extracted", None
    else:
        level, message, warning = "info", f"Optional field {definition.display_name} is empty", None
    mapping = FieldMapping(
        field_name=definition.code,
        display_name=definition.display_name,
        is_required=definition.is_required,
        is_critical=definition.is_critical,
        extracted_successfully=False,
        warning_level=level,
        warning_message=message,
    )
    return mapping, warning


def build_mapping_report(
    values: Mapping[str, Any],
    *,
    confidences: Mapping[str, float] | None = None,
    extra: Mapping[str, Any] | None = None,
    catalog: FieldCatalog | None = None,
    threshold: float | None = None,
) -> MappingReport:
    """Check a typed record against the field catalog.

    Every catalog field gets exactly one mapping; a field counts as mapped only when it
    is present and passes its schema.
    """

    catalog = catalog or load_catalog()
    validators = _validators(catalog)
    confidences = confidences or {}
    cutoff = low_confidence_threshold() if threshold is None else threshold

    mappings: list[FieldMapping] = []
    warnings: list[MappingWarning] = []
    mapped = missing_critical = low_confidence = 0

    for definition in catalog.fields:
        value = values.get(definition.code)
        if not has_value(value):
            mapping, warning = _missing_mapping(definition)
            mappings.append(mapping)
            if warning is not None:
                missing_critical += 1
                warnings.append(warning)
            continue

        errors = [error.message for error in validators[definition.code].iter_errors(value)]
        confidence = confidences.get(definition.code)
        is_low = confidence is not None and confidence < cutoff
        level = "none"
        message = None
        if is_low:
            low_confidence += 1
            level = "warning"
            message = f"Confidence {confidence:.2f} is below {cutoff:.2f}"
            warnings.append(
                MappingWarning(
                    type="low_confidence",
                    field=definition.code,
                    message=f"{definition.display_name}: {message}",
                    severity="medium",
                    suggestion="Verify this value against the source document",
                )
            )
        if errors:
            level = "error"
            message = "; ".join(errors)
            warnings.append(
                MappingWarning(
                    type="validation_error",
                    field=definition.code,
                    message=f"{definition.display_name}: {message}",
                    severity="high",
                    suggestion="Correct the value so it matches the expected format",
                )
            )
        else:
            mapped += 1
        mappings.append(
            FieldMapping(
                field_name=definition.code,
                display_name=definition.display_name,
                is_required=definition.is_required,
                is_critical=definition.is_critical,
                extracted_successfully=not errors,
                warning_level=level,
                confidence_score=confidence,
                warning_message=message,
            )
        )

    known = set(catalog.codes())
    unmapped: list[UnmappedItem] = []
    leftovers = [(key, value) for key, value in values.items() if key not in known]
    leftovers.extend((extra or {}).items())
    for key, value in leftovers:
        if not has_value(value):
            continue
        suggestion = suggest_field(key)
        unmapped.append(UnmappedItem(key=key, value=value, suggestion=suggestion))
        warnings.append(
            MappingWarning(
                type="unmapped_data",
                field=key,
                message=f"Extracted value for {key} has no matching field",
                severity="low",
                suggestion=suggestion,
            )
        )

    report = MappingReport(
        catalog_version=catalog.version,
        total_extracted_fields=sum(1 for value in values.values() if has_value(value)),
        total_catalog_fields=len(catalog.fields),
        successfully_mapped=mapped,
        missing_critical_fields=missing_critical,
        low_confidence_fields=low_confidence,
        unmapped_extra_fields=len(unmapped),
        field_mappings=mappings,
        warnings=warnings,
        unmapped_data=unmapped,
    )
    logger.info(
        "Mapped %s of %s fields (%.2f%%), %s critical missing",
        report.successfully_mapped,
        report.total_catalog_fields,
        report.overall_completeness_percentage,
        report.missing_critical_fields,
    )
    return report


def _ui_action(warning: MappingWarning) -> str:
    if warning.severity == "high":
        return "input_required" if warning.type == "missing_critical" else "review"
    if warning.severity == "medium":
        return "verify"
    return "add_to_notes" if warning.type == "unmapped_data" else "review"


def ui_warnings(report: MappingReport) -> list[UIWarning]:
    return [
        UIWarning(
            id=f"{warning.type}-{warning.field}-{index}",
            type=SEVERITY_UI_TYPE.get(warning.severity, "info"),
            title=WARNING_TITLES.get(warning.type, "Review Required"),
            message=warning.message,
            field_name=warning.field,
            action=_ui_action(warning),
        )
        for index, warning in enumerate(report.warnings)
    ]
