"""
Audit Export Module

CSV and PDF exports of recorded audits.
"""

from .csv_export import CSV_HEADERS, export_csv, generate_csv

__all__ = ["CSV_HEADERS", "export_csv", "generate_csv"]
