"""
Unit tests for the recognized-field catalog.
"""

from medvault.catalog import FieldCatalog, sample_record
from medvault.config import RECOGNIZED_FIELDS
from medvault.field_paths import ABSENT, get


def test_default_catalog_uses_recognized_fields():
    catalog = FieldCatalog()
    assert catalog.fields == list(RECOGNIZED_FIELDS)
    assert catalog.is_recognized("vitals.heartRate")
    assert not catalog.is_recognized("vitals.mood")
    assert not catalog.is_recognized("vitals")


def test_custom_catalog_replaces_defaults():
    catalog = FieldCatalog(["a.b"])
    assert catalog.is_recognized("a.b")
    assert not catalog.is_recognized("vitals.heartRate")


def test_validate_splits_preserving_order():
    valid, invalid = FieldCatalog().validate(
        ["vitals.weight", "ssn", "patientInfo.name", "vitals.mood"]
    )
    assert valid == ["vitals.weight", "patientInfo.name"]
    assert invalid == ["ssn", "vitals.mood"]


def test_categories_group_by_top_level_segment():
    grouped = FieldCatalog(["vitals.heartRate", "vitals.weight", "custom.x"]).categories()
    assert list(grouped.values()) == [["vitals.heartRate", "vitals.weight"], ["custom.x"]]
    assert "custom" in grouped


def test_sample_record_covers_every_recognized_field():
    record = sample_record("Jane Doe")
    assert record["patientInfo"]["name"] == "Jane Doe"
    for field in RECOGNIZED_FIELDS:
        assert get(record, field) is not ABSENT, field
