"""Reporting package — CSV and JSON output."""

from .csv_export import export_csv, REPORT_FIELDS
from .json_export import export_json

__all__ = [
    "export_csv",
    "export_json",
    "REPORT_FIELDS",
]
