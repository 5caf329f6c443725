from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any

from . import ENUM_MAPS_PATH, GAZETTEER_PATH, ROUNDING_PATH
from .materials import MaterialParse, parse_exterior, parse_materials
from .registry import RegistryError, load_catalog, load_json

logger = logging.getLogger(__name__)

_DIGITS = str.maketrans(
    "٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹٫٪",
    "01234567890123456789.%",
)
_GROUPING = re.compile(r"[,٬]|(?<=\d)\s(?=\d{3}(?!\d))")
_NUMBER = re.compile(r"-?(?:\d+(?:\.\d+)?|\.\d+)")
_SPACES = re.compile(r"\s+")

TRUTHY = {"yes", "true", "available", "نعم", "متوفر", "موجود", "متاح", "1"}
ROUNDING_MODES = {"HALF_UP": ROUND_HALF_UP}

TEXT_FIELDS = (
    "client_name",
    "requested_by",
    "appraisal_date",
    "report_number",
    "appraiser_name",
    "registration_number",
    "appraisal_valid_until",
    "owner_name",
    "property_address_arabic",
    "district_name",
    "city_name",
    "governorate",
    "property_boundaries",
    "building_number",
    "unit_number",
    "entrance",
    "electrical_system_description",
    "sanitary_ware_description",
    "exterior_finishes_description",
    "nearby_services",
    "location_description",
    "funding_source",
    "area_character",
    "garage_share_description",
    "occupancy_status",
)

NUMBER_FIELDS = (
    "floor_number",
    "building_age_years",
    "effective_building_age_years",
    "economic_building_life_years",
    "remaining_building_life_years",
    "bedrooms",
    "bathrooms",
    "reception_rooms",
    "kitchens",
    "parking_spaces",
    "total_floors",
    "year_built",
    "land_area_sqm",
    "built_area_sqm",
    "unit_area_sqm",
    "balcony_area_sqm",
    "garage_area_sqm",
    "total_building_area_sqm",
    "unit_land_share_sqm",
    "overall_condition_rating",
    "street_width_meters",
    "accessibility_rating",
    "neighborhood_quality_rating",
    "demand_supply_ratio",
    "time_to_sell",
    "price_per_sqm_area",
    "price_per_sqm_semi_finished",
    "price_per_sqm_fully_finished",
    "price_per_sqm_land",
    "cost_approach_value",
    "sales_comparison_value",
    "income_approach_value",
    "final_reconciled_value",
    "monthly_rental_estimate",
    "land_value",
    "building_value",
    "land_price_per_sqm",
    "unit_land_share_value",
    "construction_cost_per_sqm",
    "unit_construction_cost",
    "building_value_with_profit",
    "curable_depreciation_value",
    "incurable_depreciation_value",
    "total_depreciation_value",
    "total_units_in_building",
    "estimated_selling_time",
)

BOOLEAN_FIELDS = (
    "electricity_available",
    "water_supply_available",
    "sewage_system_available",
    "gas_supply_available",
    "telephone_available",
    "internet_fiber_available",
    "elevator_available",
    "parking_available",
    "security_system",
    "title_deed_available",
    "building_permit_available",
    "occupancy_certificate",
    "real_estate_tax_paid",
)

ENUM_FIELDS = {
    "report_type": "report_type",
    "construction_type": "construction",
    "property_type": "property_type",
    "finishing_level": "finishing",
    "ceiling_type": "ceiling",
    "windows_type": "windows",
    "doors_type": "doors",
    "structural_condition": "condition",
    "mechanical_systems_condition": "condition",
    "exterior_condition": "condition",
    "interior_condition": "condition",
    "noise_level": "noise",
    "view_quality": "view",
    "market_trend": "market_trend",
    "recommended_valuation_method": "valuation_method",
    "ownership_type": "ownership",
}

COMPARABLE_COUNT = 3
COMPARABLE_TEXT = ("address", "sale_date")
COMPARABLE_NUMBERS = ("price", "area", "price_per_sqm", "age", "floor")
COMPARABLE_ENUMS = {"finishing": "finishing", "orientation": "orientation", "street_view": "street_view"}


@dataclass
class NormalizedRecord:
    values: dict[str, Any] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"values": self.values, "notes": list(self.notes)}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return _SPACES.sub(" ", str(value)).strip()


def normalize_digits(text: str) -> str:
    return text.translate(_DIGITS)


def parse_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return int(value) if float(value).is_integer() else value
    text = _GROUPING.sub("", normalize_digits(_text(value)))
    match = _NUMBER.search(text)
    if match is None:
        return None
    number = float(match.group())
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def parse_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    text = _text(value).lower()
    if not text:
        return None
    return text in TRUTHY


@lru_cache(maxsize=None)
def _enum_tables(path: str) -> dict[str, dict[str, Any]]:
    tables = load_json(path).get("tables")
    if not isinstance(tables, dict):
        raise RegistryError(f"{path} has no 'tables' section")
    compiled: dict[str, dict[str, Any]] = {}
    for name, mapping in tables.items():
        values = mapping.get("values") or {}
        compiled[name] = {
            "values": dict(values),
            "lowered": {key.lower(): token for key, token in values.items()},
            "partial": bool(mapping.get("partial", False)),
            "default": mapping.get("default"),
        }
    return compiled


def enum_tables(path: str = ENUM_MAPS_PATH) -> dict[str, dict[str, Any]]:
    return _enum_tables(path)


def map_enum(table: str, value: Any) -> str | None:
    text = _text(value)
    if not text:
        return None
    try:
        mapping = enum_tables()[table]
    except KeyError as exc:
        raise RegistryError(f"Unknown enum table: {table}") from exc
    if text in mapping["values"]:
        return mapping["values"][text]
    lowered = text.lower()
    if lowered in mapping["lowered"]:
        return mapping["lowered"][lowered]
    if mapping["partial"]:
        for key in sorted(mapping["lowered"], key=len, reverse=True):
            if key in lowered:
                return mapping["lowered"][key]
    default = mapping["default"]
    if default is None:
        logger.warning("No %s value matches %r; leaving it unset", table, text[:40])
    else:
        logger.warning("No %s value matches %r; using default %s", table, text[:40], default)
    return default


def parse_construction_volume(value: Any) -> int | None:
    text = normalize_digits(_text(value))
    if not text:
        return None
    for band in (75, 50, 25):
        if f"{band}%" in text.replace(" ", "") or f"%{band}" in text.replace(" ", ""):
            return band
    match = re.search(r"\d+", text)
    return int(match.group()) if match else None


@lru_cache(maxsize=None)
def _gazetteer(path: str) -> tuple[tuple[str, str], ...]:
    data = load_json(path)
    entries: dict[str, str] = {}
    for section in ("vocabulary", "governorates", "districts"):
        entries.update(data.get(section, {}))
    return tuple(sorted(entries.items(), key=lambda item: len(item[0]), reverse=True))


def translate_address(arabic: str, path: str = GAZETTEER_PATH) -> str:
    translated = normalize_digits(_text(arabic))
    for source, target in _gazetteer(path):
        translated = translated.replace(source, target)
    return _SPACES.sub(" ", translated).strip()


@lru_cache(maxsize=None)
def _rounding_plan(path: str) -> dict[str, tuple[Decimal, str]]:
    data = load_json(path)
    rules = data.get("rules") or {}
    plan: dict[str, tuple[Decimal, str]] = {}
    for group, codes in (data.get("fields") or {}).items():
        rule = rules.get(group)
        if rule is None:
            raise RegistryError(f"{path} lists fields for undefined rule {group!r}")
        try:
            step = Decimal(str(rule["step"]))
            mode = ROUNDING_MODES[rule.get("mode", "HALF_UP")]
        except (KeyError, InvalidOperation) as exc:
            raise RegistryError(f"{path} has a malformed {group!r} rule") from exc
        for code in codes:
            plan[code] = (step, mode)
    return plan


def round_to_step(value: int | float, step: Decimal, mode: str = ROUND_HALF_UP) -> int | float:
    quantized = (Decimal(str(value)) / step).quantize(Decimal("1"), rounding=mode) * step
    return int(quantized) if quantized == quantized.to_integral_value() else float(quantized)


def apply_rounding(values: dict[str, Any], path: str = ROUNDING_PATH) -> dict[str, Any]:
    rounded = dict(values)
    for code, (step, mode) in _rounding_plan(path).items():
        value = rounded.get(code)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            rounded[code] = round_to_step(value, step, mode)
    return rounded


def _room_fields(
    parse: MaterialParse, suffix: str, source: str, values: dict[str, Any], notes: list[str]
) -> None:
    catalog = load_catalog()
    for room, material in parse.rooms.items():
        code = f"{room}_{suffix}"
        definition = catalog.get(code)
        if definition is None:
            notes.append(f"no_room_field:{source}:{room}")
            continue
        if material not in definition.enum_values:
            notes.append(f"unsupported_room_material:{code}:{material}")
            continue
        values[code] = material
    for room in parse.unknown_rooms:
        notes.append(f"unknown_room:{source}:{room}")


def _normalize_materials(flat: dict[str, Any], values: dict[str, Any], notes: list[str]) -> None:
    for source, kind, suffix, general_field in (
        ("floor_materials", "flooring", "flooring", "general_floor_materials"),
        ("wall_finishes", "walls", "walls", "general_wall_materials"),
    ):
        raw = _text(flat.get(source))
        if not raw:
            continue
        values[source] = {"general": raw}
        parse = parse_materials(raw, kind)
        if parse.mixed:
            logger.warning("Field %s mixes room-by-room and annotated list formats", source)
            notes.append(f"mixed_material_format:{source}")
        if parse.general:
            values[general_field] = parse.general
        _room_fields(parse, suffix, source, values, notes)

    exterior = _text(flat.get("exterior_finishes_description"))
    if exterior:
        areas, general = parse_exterior(exterior)
        if areas:
            values["exterior_finishes"] = areas
        if general:
            values["general_exterior_materials"] = general


def normalize(flat: dict[str, Any]) -> NormalizedRecord:
    """Coerce a flat all-string record into typed canonical values.

    Empty inputs stay unset. Enum fields only ever receive tokens from their tables.
    """

    values: dict[str, Any] = {}
    notes: list[str] = []

    for code in TEXT_FIELDS:
        text = _text(flat.get(code))
        if text:
            values[code] = text
    for code in NUMBER_FIELDS:
        number = parse_number(flat.get(code))
        if number is not None:
            values[code] = number
    for code in BOOLEAN_FIELDS:
        flag = parse_boolean(flat.get(code))
        if flag is not None:
            values[code] = flag
    for code, table in ENUM_FIELDS.items():
        token = map_enum(table, flat.get(code))
        if token is not None:
            values[code] = token

    volume = parse_construction_volume(flat.get("construction_volume"))
    if volume is not None:
        values["construction_volume"] = volume

    for index in range(1, COMPARABLE_COUNT + 1):
        prefix = f"comparable_sale_{index}_"
        for name in COMPARABLE_TEXT:
            text = _text(flat.get(prefix + name))
            if text:
                values[prefix + name] = text
        for name in COMPARABLE_NUMBERS:
            number = parse_number(flat.get(prefix + name))
            if number is not None:
                values[prefix + name] = number
        for name, table in COMPARABLE_ENUMS.items():
            token = map_enum(table, flat.get(prefix + name))
            if token is not None:
                values[prefix + name] = token

    english = _text(flat.get("property_address_english"))
    arabic = values.get("property_address_arabic", "")
    if english:
        values["property_address_english"] = english
    elif arabic:
        values["property_address_english"] = translate_address(arabic)

    _normalize_materials(flat, values, notes)
    return NormalizedRecord(values=apply_rounding(values), notes=notes)
