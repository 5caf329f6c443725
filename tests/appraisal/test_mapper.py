from __future__ import annotations

from src.appraisal.mapper import build_mapping_report, field_schema, suggest_field, ui_warnings
from src.appraisal.normalize import normalize
from src.appraisal.registry import load_catalog

from .builders import empty_flat_record


def _valid_values() -> dict[str, object]:
    return {
        "client_name": "بنك القاهرة",
        "bedrooms": 3,
        "electricity_available": True,
        "finishing_level": "fully_finished",
        "general_floor_materials": ["ceramic"],
        "floor_materials": {"general": "سيراميك"},
    }


def test_empty_record_has_zero_completeness_and_flags_every_critical_field():
    catalog = load_catalog()
    report = build_mapping_report(normalize(empty_flat_record()).values)
    critical = [definition.code for definition in catalog.fields if definition.is_critical]
    missing = [warning for warning in report.warnings if warning.type == "missing_critical"]
    assert report.overall_completeness_percentage == 0
    assert sorted(warning.field for warning in missing) == sorted(critical)
    assert all(warning.severity == "high" for warning in missing)
    assert report.missing_critical_fields == len(critical)


def test_every_catalog_field_is_mapped_exactly_once():
    catalog = load_catalog()
    report = build_mapping_report(_valid_values())
    names = [mapping.field_name for mapping in report.field_mappings]
    assert names == catalog.codes()
    assert report.total_catalog_fields == len(catalog.fields)


def test_warning_levels_follow_field_importance():
    report = build_mapping_report({"client_name": "بنك القاهرة"})
    levels = {mapping.field_name: mapping.warning_level for mapping in report.field_mappings}
    assert levels["client_name"] == "none"
    assert levels["appraiser_name"] == "error"
    assert levels["electricity_available"] == "warning"
    assert levels["owner_name"] == "info"


def test_completeness_grows_with_each_valid_field():
    values: dict[str, object] = {}
    previous = build_mapping_report(values).overall_completeness_percentage
    for key, value in _valid_values().items():
        values[key] = value
        current = build_mapping_report(values).overall_completeness_percentage
        assert current > previous
        assert 0 <= current <= 100
        previous = current


def test_invalid_values_are_errors_and_not_mapped():
    report = build_mapping_report({"bedrooms": 50, "finishing_level": "palace", "year_built": "1990"})
    assert report.successfully_mapped == 0
    invalid = {w.field for w in report.warnings if w.type == "validation_error"}
    assert invalid == {"bedrooms", "finishing_level", "year_built"}
    mapping = next(m for m in report.field_mappings if m.field_name == "bedrooms")
    assert mapping.warning_level == "error"
    assert mapping.extracted_successfully is False


def test_low_confidence_is_flagged_but_still_mapped(monkeypatch):
    monkeypatch.setenv("APPRAISAL_LOW_CONFIDENCE", "0.7")
    report = build_mapping_report({"bedrooms": 3}, confidences={"bedrooms": 0.65})
    mapping = next(m for m in report.field_mappings if m.field_name == "bedrooms")
    assert mapping.warning_level == "warning"
    assert mapping.confidence_score == 0.65
    assert report.successfully_mapped == 1
    assert report.low_confidence_fields == 1
    warning = next(w for w in report.warnings if w.type == "low_confidence")
    assert warning.severity == "medium"


def test_extra_keys_become_unmapped_items_with_suggestions():
    report = build_mapping_report(
        {"client_name": "بنك"},
        extra={"unit_orientation": "بحري", "nearby_landmarks": "الجامعة", "misc_note": "x", "empty": ""},
    )
    keys = [item.key for item in report.unmapped_data]
    assert keys == ["unit_orientation", "nearby_landmarks", "misc_note"]
    assert report.unmapped_extra_fields == 3
    assert "orientation" in report.unmapped_data[0].suggestion
    assert report.unmapped_data[2].suggestion == "Review and add to notes if relevant"
    unmapped = [w for w in report.warnings if w.type == "unmapped_data"]
    assert all(w.severity == "low" for w in unmapped)


def test_suggestions_by_name():
    assert "balcony" in suggest_field("balcony_count").lower()
    assert "maintenance" in suggest_field("maintenance_fees").lower()
    assert "amenities" in suggest_field("building_facilities").lower()
    assert "transportation" in suggest_field("public_transportation").lower()


def test_ui_warnings_translate_severity_to_actions():
    report = build_mapping_report(
        {"bedrooms": 99, "bathrooms": 2},
        confidences={"bathrooms": 0.2},
        extra={"unit_orientation": "بحري"},
    )
    by_type = {}
    for ui in ui_warnings(report):
        by_type.setdefault((ui.title, ui.type, ui.action), ui)
    assert ("Critical Field Missing", "error", "input_required") in by_type
    assert ("Validation Error", "error", "review") in by_type
    assert ("Low Confidence Extraction", "warning", "verify") in by_type
    assert ("Additional Data Found", "info", "add_to_notes") in by_type
    ids = [ui.id for ui in ui_warnings(report)]
    assert len(ids) == len(set(ids))


def test_field_schema_requires_non_empty_strings():
    definition = load_catalog().get("client_name")
    assert field_schema(definition) == {"type": "string", "pattern": r"\S"}
    report = build_mapping_report({"client_name": 12})
    assert any(w.type == "validation_error" and w.field == "client_name" for w in report.warnings)


def test_report_as_dict_is_json_ready():
    payload = build_mapping_report(_valid_values()).as_dict()
    assert payload["catalog_version"] == "appraisal-fields-2024.1"
    assert payload["successfully_mapped"] == 6
    assert len(payload["field_mappings"]) == payload["total_catalog_fields"]
