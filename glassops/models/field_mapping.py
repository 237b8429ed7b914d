"""
Field mapping rules: intake form field -> ERP job field.
"""
from sqlalchemy import Column, String, Integer, Boolean
from glassops.models.base import Base


class FieldMapping(Base):
    """One rename/transform rule applied by the field mapper."""
    __tablename__ = "field_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_field = Column(String(128), nullable=False)
    target_field = Column(String(128), nullable=False)
    transform_rule = Column(String(32), nullable=True)  # uppercase, lowercase, parseInt, parseFloat, trim
    is_required = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<FieldMapping({self.source_field} -> {self.target_field}, rule={self.transform_rule})>"


# Used when the field_mappings table is empty.
DEFAULT_FIELD_MAPPINGS = [
    {"source_field": "first-name", "target_field": "customer_fname", "transform_rule": "trim", "is_required": True},
    {"source_field": "last-name", "target_field": "customer_surname", "transform_rule": "trim", "is_required": True},
    {"source_field": "email", "target_field": "customer_email", "transform_rule": "lowercase", "is_required": True},
    {"source_field": "mobile-phone", "target_field": "customer_phone", "transform_rule": "trim", "is_required": True},
    {"source_field": "location", "target_field": "service_location", "transform_rule": None, "is_required": False},
    {"source_field": "zip-code", "target_field": "service_zip", "transform_rule": "trim", "is_required": True},
    {"source_field": "service-type", "target_field": "service_type", "transform_rule": None, "is_required": True},
    {"source_field": "which-windows-wheels", "target_field": "damage_location", "transform_rule": None, "is_required": False},
    {"source_field": "factory-privacy-tinted", "target_field": "is_tinted", "transform_rule": None, "is_required": False},
    {"source_field": "year", "target_field": "vehicle_year", "transform_rule": "parseInt", "is_required": True},
    {"source_field": "make", "target_field": "vehicle_make", "transform_rule": None, "is_required": True},
    {"source_field": "model", "target_field": "vehicle_model", "transform_rule": None, "is_required": True},
    {"source_field": "vin", "target_field": "vehicle_vin", "transform_rule": "uppercase", "is_required": False},
    {"source_field": "notes", "target_field": "notes", "transform_rule": None, "is_required": False},
]
