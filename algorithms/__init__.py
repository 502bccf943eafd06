"""
Compliance Algorithms

Pure airflow deviation and classification functions, usable standalone for
batch reporting.
"""

from .compliance import (
    ComplianceResult,
    ComplianceSummary,
    calculate_deviation,
    classify,
    classify_deviation,
    format_deviation,
    summarize,
)

__all__ = [
    "ComplianceResult",
    "ComplianceSummary",
    "calculate_deviation",
    "classify",
    "classify_deviation",
    "format_deviation",
    "summarize",
]
