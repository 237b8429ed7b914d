import pytest

from glassops.models.field_mapping import FieldMapping
from glassops.services.field_mapper import (
    DEFAULT_RULES,
    FieldMapper,
    MappingRule,
    apply_mappings,
    extract_customer_name,
    extract_zip,
    normalize_intake,
    transform_value,
    validate_required_fields,
)

from conftest import VALID_FORM


@pytest.mark.parametrize(
    "value, rule, expected",
    [
        ("abc123", "uppercase", "ABC123"),
        ("MiXeD", "lowercase", "mixed"),
        ("  padded  ", "trim", "padded"),
        ("2019", "parseInt", 2019),
        ("42abc", "parseInt", 42),
        ("3.75 in", "parseFloat", 3.75),
        ("untouched", None, "untouched"),
        ("untouched", "no-such-rule", "untouched"),
        ("abc", "parseInt", None),
    ],
)
def test_transform_value(value, rule, expected):
    assert transform_value(value, rule) == expected


def test_apply_mappings_renames_and_transforms():
    mapped = apply_mappings(VALID_FORM, DEFAULT_RULES)

    assert mapped["customer_fname"] == "Jane"
    assert mapped["customer_email"] == "jane@example.com"
    assert mapped["vehicle_year"] == 2019
    assert mapped["vehicle_vin"] == "1HGCM82633A004352"
    assert "notes" not in mapped


def test_apply_mappings_skips_empty_and_unparseable_values():
    rules = [
        MappingRule("year", "vehicle_year", "parseInt"),
        MappingRule("notes", "notes"),
    ]
    assert apply_mappings({"year": "unknown", "notes": ""}, rules) == {}


def test_mapping_is_idempotent_on_the_same_input():
    form = dict(VALID_FORM)
    first = apply_mappings(form, DEFAULT_RULES)
    second = apply_mappings(form, DEFAULT_RULES)

    assert first == second
    assert form == VALID_FORM


def test_validate_required_fields_reports_each_missing_field():
    form = dict(VALID_FORM, email="", make=None)
    form.pop("year")

    errors = validate_required_fields(form, DEFAULT_RULES)

    assert errors == [
        "Required field 'email' is missing or empty",
        "Required field 'year' is missing or empty",
        "Required field 'make' is missing or empty",
    ]


def test_whitespace_only_required_value_counts_as_missing():
    form = dict(VALID_FORM, **{"mobile-phone": "   "})

    assert validate_required_fields(form, DEFAULT_RULES) == [
        "Required field 'mobile-phone' is missing or empty",
    ]
    assert "customer_phone" not in apply_mappings(form, DEFAULT_RULES)


def test_validate_required_fields_passes_complete_form():
    assert validate_required_fields(VALID_FORM, DEFAULT_RULES) == []


def test_extract_customer_name_layouts():
    assert extract_customer_name({"first-name": "Jane", "last-name": "Doe"}) == ("Jane", "Doe", "Jane Doe")
    assert extract_customer_name({"name": "Ana Maria Lopez"}) == ("Ana", "Maria Lopez", "Ana Maria Lopez")
    assert extract_customer_name({}) == ("", "", "")


def test_extract_zip():
    assert extract_zip("12 Palm Ave, Oceanside, CA 92054") == "92054"
    assert extract_zip("no zip here") == "00000"
    assert extract_zip(None, default="") == ""


def test_normalize_intake_extracts_transaction_columns():
    columns = normalize_intake(VALID_FORM)

    assert columns["customer_name"] == "Jane Doe"
    assert columns["customer_email"] == "jane@example.com"
    assert columns["customer_zip"] == "92054"
    assert columns["vehicle_vin"] == "1HGCM82633A004352"
    assert columns["damage_description"] == "Windshield Replacement - front"


def test_normalize_intake_falls_back_to_zip_in_address():
    columns = normalize_intake({"name": "Sam", "address": "1 Main St 85001"})

    assert columns["customer_zip"] == "85001"
    assert columns["customer_email"] == ""


async def test_field_mapper_uses_defaults_when_table_is_empty(db):
    mapped, errors = await FieldMapper(db).map(VALID_FORM)

    assert errors == []
    assert mapped["service_zip"] == "92054"


async def test_field_mapper_prefers_stored_rules(db):
    db.add(FieldMapping(source_field="email", target_field="contact", transform_rule="uppercase", is_required=True))
    await db.commit()

    mapped, errors = await FieldMapper(db).map({"email": "a@b.co"})

    assert errors == []
    assert mapped == {"contact": "A@B.CO"}
