from __future__ import annotations

import json

import pytest

from src.appraisal.registry import RegistryError, load_catalog, load_json


def test_catalog_declares_unique_typed_fields():
    catalog = load_catalog()
    codes = catalog.codes()
    assert len(codes) == len(set(codes))
    assert catalog.get("bedrooms").field_type == "number"
    assert catalog.get("finishing_level").enum_values
    assert sum(1 for definition in catalog.fields if definition.is_critical) == 35


def test_malformed_files_raise_registry_error(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(RegistryError):
        load_json(broken)
    listing = tmp_path / "list.json"
    listing.write_text("[]", encoding="utf-8")
    with pytest.raises(RegistryError):
        load_json(listing)
    with pytest.raises(RegistryError):
        load_json(tmp_path / "absent.json")


def test_catalog_rejects_enum_without_values(tmp_path):
    catalog = tmp_path / "fields.json"
    catalog.write_text(
        json.dumps({"version": "t", "fields": [{"code": "x", "field_type": "enum"}]}),
        encoding="utf-8",
    )
    with pytest.raises(RegistryError):
        load_catalog(catalog)
