from __future__ import annotations

import pytest

from src.appraisal.normalize import (
    COMPARABLE_ENUMS,
    ENUM_FIELDS,
    apply_rounding,
    enum_tables,
    map_enum,
    normalize,
    parse_boolean,
    parse_construction_volume,
    parse_number,
    translate_address,
)
from src.appraisal.registry import load_catalog

from .builders import empty_flat_record, flat_record


def test_arabic_digits_and_availability_normalize():
    record = normalize(flat_record(bedrooms="٣", electricity_available="متوفر"))
    assert record.values["bedrooms"] == 3
    assert isinstance(record.values["bedrooms"], int)
    assert record.values["electricity_available"] is True


def test_empty_record_normalizes_to_nothing():
    record = normalize(empty_flat_record())
    assert record.values == {}
    assert record.notes == []


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("١٢٠", 120),
        ("۱۲۰", 120),
        ("٢٫٥", 2.5),
        ("٤٬١٩٧٬٨٥٠", 4197850),
        ("1,500,000 جنيه", 1500000),
        ("120 م2", 120),
        ("EGP 2,500", 2500),
        ("-5", -5),
        (".5", 0.5),
        ("-.25", -0.25),
        ("٫٧٥", 0.75),
        ("", None),
        ("غير محدد", None),
        (None, None),
    ],
)
def test_parse_number(raw, expected):
    assert parse_number(raw) == expected


@pytest.mark.parametrize("value", [0, 7, 42, 1999, 2.5, 0.75, 123456.25, -3])
def test_parse_number_round_trips_formatted_numbers(value):
    assert parse_number(str(value)) == value


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("نعم", True),
        ("متاح", True),
        ("Yes", True),
        ("TRUE", True),
        ("1", True),
        ("لا", False),
        ("غير متوفر", False),
        ("", None),
        ("   ", None),
    ],
)
def test_parse_boolean(raw, expected):
    assert parse_boolean(raw) is expected


def test_map_enum_exact_lowercase_partial_and_default():
    assert map_enum("condition", "ممتاز") == "excellent"
    assert map_enum("condition", "EXCELLENT") == "excellent"
    assert map_enum("windows", "شبابيك الومنيوم مزدوجة") == "aluminum"
    assert map_enum("condition", "حالة غير مذكورة") == "good"
    assert map_enum("doors", "باب مصفح") is None
    assert map_enum("condition", "") is None


def test_enum_tables_only_produce_catalog_tokens():
    catalog = load_catalog()
    tables = enum_tables()
    checks = list(ENUM_FIELDS.items())
    checks += [(f"comparable_sale_1_{name}", table) for name, table in COMPARABLE_ENUMS.items()]
    for code, table in checks:
        allowed = set(catalog.get(code).enum_values)
        produced = set(tables[table]["values"].values())
        if tables[table]["default"] is not None:
            produced.add(tables[table]["default"])
        assert produced <= allowed, (code, produced - allowed)


def test_enum_fields_hold_catalog_tokens_for_arbitrary_input():
    noise = ["كلام عشوائي", "xyz", "١٢٣", "جيد", "حديد", "بحري"]
    catalog = load_catalog()
    for text in noise:
        flat = flat_record(**{code: text for code in ENUM_FIELDS})
        record = normalize(flat)
        for code in ENUM_FIELDS:
            if code in record.values:
                assert record.values[code] in catalog.get(code).enum_values


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("75%", 75), ("٥٠٪", 50), ("نسبة البناء 25 %", 25), ("60", 60), ("غير معروف", None)],
)
def test_construction_volume(raw, expected):
    assert parse_construction_volume(raw) == expected


def test_rounding_uses_half_up_steps():
    rounded = apply_rounding(
        {
            "final_reconciled_value": 4197850,
            "price_per_sqm_area": 25437,
            "land_price_per_sqm": 15005,
            "bedrooms": 3,
        }
    )
    assert rounded["final_reconciled_value"] == 4197900
    assert rounded["price_per_sqm_area"] == 25440
    assert rounded["land_price_per_sqm"] == 15010
    assert rounded["bedrooms"] == 3


def test_rounding_applies_to_normalized_values():
    record = normalize(flat_record(final_reconciled_value="٤٬١٩٧٬٨٥٠", price_per_sqm_area="25,437"))
    assert record.values["final_reconciled_value"] == 4197900
    assert record.values["price_per_sqm_area"] == 25440


def test_translate_address_prefers_longest_names():
    english = translate_address("شارع التسعين، التجمع الخامس، القاهرة الجديدة")
    assert "Street" in english
    assert "Fifth Settlement" in english
    assert "New Cairo" in english
    assert "القاهرة" not in english
    assert translate_address("مصر الجديدة") == "Heliopolis"
    assert translate_address("عمارة ١٢") == "Building 12"


def test_english_address_is_only_derived_when_missing():
    derived = normalize(flat_record(property_address_arabic="المعادي، القاهرة"))
    assert derived.values["property_address_english"] == "Maadi، Cairo"
    kept = normalize(
        flat_record(property_address_arabic="المعادي", property_address_english="Road 9, Maadi")
    )
    assert kept.values["property_address_english"] == "Road 9, Maadi"
    assert "property_address_english" not in normalize(empty_flat_record()).values


def test_materials_fill_room_fields_from_annotated_list():
    record = normalize(flat_record(floor_materials="سيراميك (نوم), رخام (استقبال)"))
    assert record.values["bedroom_flooring"] == "ceramic"
    assert record.values["reception_flooring"] == "marble"
    assert record.values["general_floor_materials"] == ["ceramic", "marble"]
    assert record.values["floor_materials"] == {"general": "سيراميك (نوم), رخام (استقبال)"}


def test_mixed_material_format_is_flagged():
    record = normalize(flat_record(wall_finishes="نوم: دهانات بلاستيك، سيراميك (حمام ومطبخ)"))
    assert "mixed_material_format:wall_finishes" in record.notes
    assert record.values["bedroom_walls"] == "plastic_paint"
    assert record.values["bathroom_walls"] == "ceramic_tiles"
    assert record.values["kitchen_walls"] == "ceramic_tiles"


def test_room_material_outside_room_enum_is_left_unset():
    record = normalize(flat_record(floor_materials="مطبخ: باركيه، نوم: باركيه"))
    assert "kitchen_flooring" not in record.values
    assert record.values["bedroom_flooring"] == "parquet"
    assert "unsupported_room_material:kitchen_flooring:parquet" in record.notes


def test_exterior_finishes_map_areas():
    record = normalize(
        flat_record(exterior_finishes_description="واجهات: دهانات دراي ماكس، مدخل: رخام")
    )
    assert record.values["exterior_finishes"] == {"facade": "dry_mix_paint", "entrance": "marble"}
    assert record.values["exterior_finishes_description"].startswith("واجهات")
