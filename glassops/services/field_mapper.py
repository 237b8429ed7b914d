"""
Field mapper: intake form fields -> normalized ERP job fields.

The mapping functions are pure; FieldMapper only adds loading the rules
from the field_mappings table (falling back to DEFAULT_FIELD_MAPPINGS).
"""
import re
from dataclasses import dataclass
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from glassops.models.field_mapping import FieldMapping, DEFAULT_FIELD_MAPPINGS

_INT_PATTERN = re.compile(r"^\s*[+-]?\d+")
_FLOAT_PATTERN = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_ZIP_PATTERN = re.compile(r"\b\d{5}\b")


@dataclass(frozen=True)
class MappingRule:
    """One rename/transform rule."""
    source_field: str
    target_field: str
    transform_rule: str | None = None
    is_required: bool = False

    @classmethod
    def from_model(cls, mapping: FieldMapping) -> "MappingRule":
        return cls(
            source_field=mapping.source_field,
            target_field=mapping.target_field,
            transform_rule=mapping.transform_rule,
            is_required=bool(mapping.is_required),
        )


DEFAULT_RULES = [MappingRule(**rule) for rule in DEFAULT_FIELD_MAPPINGS]


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_int(value):
    match = _INT_PATTERN.match(str(value))
    return int(match.group(0)) if match else None


def _parse_float(value):
    match = _FLOAT_PATTERN.match(str(value))
    return float(match.group(0)) if match else None


_TRANSFORMS = {
    "uppercase": lambda v: str(v).upper(),
    "lowercase": lambda v: str(v).lower(),
    "trim": lambda v: str(v).strip(),
    "parseInt": _parse_int,
    "int": _parse_int,
    "parseFloat": _parse_float,
    "float": _parse_float,
}


def transform_value(value, rule: str | None):
    """
    Apply a single transform rule.

    Unknown or empty rules pass the value through unchanged. Numeric
    coercions return None when the value has no numeric prefix.
    """
    if not rule:
        return value
    transform = _TRANSFORMS.get(rule)
    if transform is None:
        return value
    return transform(value)


def apply_mappings(form_data: dict, rules: list[MappingRule]) -> dict:
    """
    Rename and transform form fields according to the rules.

    Fields that are missing or empty in the form are skipped, as are values a
    numeric coercion could not parse.

    Args:
        form_data: Raw intake payload
        rules: Mapping rules to apply, in order

    Returns:
        New dict keyed by target field
    """
    mapped = {}
    for rule in rules:
        value = form_data.get(rule.source_field)
        if _is_blank(value):
            continue
        transformed = transform_value(value, rule.transform_rule)
        if transformed is not None:
            mapped[rule.target_field] = transformed
    return mapped


def validate_required_fields(form_data: dict, rules: list[MappingRule]) -> list[str]:
    """Return one error message per required field that is missing or empty."""
    errors = []
    for rule in rules:
        if rule.is_required and _is_blank(form_data.get(rule.source_field)):
            errors.append(f"Required field '{rule.source_field}' is missing or empty")
    return errors


def extract_customer_name(form_data: dict) -> tuple[str, str, str]:
    """
    Pull (first, last, full) name out of the common form layouts.

    Accepts first-name/last-name, firstName/lastName, name/fullName
    and customerName.
    """
    first = form_data.get("first-name") or form_data.get("firstName")
    last = form_data.get("last-name") or form_data.get("lastName")
    if first or last:
        first = str(first or "").strip()
        last = str(last or "").strip()
        return first, last, f"{first} {last}".strip()

    full = form_data.get("name") or form_data.get("fullName") or form_data.get("customerName")
    if full:
        full = str(full).strip()
        parts = full.split(" ")
        return parts[0], " ".join(parts[1:]), full

    return "", "", ""


def extract_zip(text: str | None, default: str = "00000") -> str:
    """First five-digit group in the text, or the default."""
    if not text:
        return default
    match = _ZIP_PATTERN.search(str(text))
    return match.group(0) if match else default


def _first(form_data: dict, *keys):
    for key in keys:
        value = form_data.get(key)
        if not _is_blank(value):
            return value
    return None


def normalize_intake(form_data: dict) -> dict:
    """
    Extract the Transaction columns from a raw intake payload.

    Missing values stay None; the pipeline's required-field validation
    decides whether the transaction can proceed.
    """
    _, _, full_name = extract_customer_name(form_data)
    address = _first(form_data, "location", "address", "service-address", "customerAddress")
    zip_code = _first(form_data, "zip-code", "zip", "zipCode", "postal-code")
    service_type = _first(form_data, "service-type", "serviceType")
    damage_location = _first(form_data, "which-windows-wheels", "damageLocation")
    year = _first(form_data, "year", "vehicleYear")
    vin = _first(form_data, "vin", "vehicleVin")

    damage = " - ".join(str(part) for part in (service_type, damage_location) if part)

    return {
        "customer_name": full_name or "Unknown",
        "customer_email": str(_first(form_data, "email", "customerEmail") or "").strip().lower(),
        "customer_phone": _first(form_data, "mobile-phone", "phone", "customerPhone"),
        "customer_address": address,
        "customer_zip": str(zip_code).strip() if zip_code else (extract_zip(address, default="") or None),
        "vehicle_year": str(year) if year is not None else None,
        "vehicle_make": _first(form_data, "make", "vehicleMake"),
        "vehicle_model": _first(form_data, "model", "vehicleModel"),
        "vehicle_vin": str(vin).upper() if vin else None,
        "service_type": service_type,
        "damage_description": damage or _first(form_data, "damageDescription", "notes"),
    }


class FieldMapper:
    """Loads mapping rules and runs validation + transformation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_rules(self) -> list[MappingRule]:
        """Rules from the database, or the built-in defaults when none exist."""
        result = await self.db.execute(select(FieldMapping).order_by(FieldMapping.id))
        mappings = list(result.scalars().all())
        if not mappings:
            return list(DEFAULT_RULES)
        return [MappingRule.from_model(m) for m in mappings]

    async def map(self, form_data: dict) -> tuple[dict, list[str]]:
        """
        Validate and transform a payload.

        Returns:
            (mapped_data, errors) - errors is empty when every required field is present
        """
        rules = await self.load_rules()
        errors = validate_required_fields(form_data, rules)
        if errors:
            return {}, errors
        return apply_mappings(form_data, rules), []
