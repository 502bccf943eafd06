"""
ventaudit - Ventilation Compliance Audit Records

This package provides tools for:
1. Recording projects, buildings, functional zones and shutter airflows
2. Classifying measured airflows against their references
3. Exporting audit results to CSV and PDF
"""

__version__ = "1.0.0"
