"""Utilities for importing provider exports and exporting CRM state."""

from .exporters import audit_to_dataframe, entities_to_dataframe, export_audit, export_entities
from .loaders import UnsupportedFileTypeError, load_records

__all__ = [
    "load_records",
    "UnsupportedFileTypeError",
    "export_entities",
    "entities_to_dataframe",
    "export_audit",
    "audit_to_dataframe",
]
