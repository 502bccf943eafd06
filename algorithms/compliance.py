"""
Airflow Compliance Algorithms
Classifies measured smoke-extraction airflows against their reference values
following the NF S61-933 Annex H functional test tiers.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Tuple


COMPLIANT = "compliant"
ACCEPTABLE = "acceptable"
NON_COMPLIANT = "non-compliant"

STATUSES = (COMPLIANT, ACCEPTABLE, NON_COMPLIANT)

# Tier limits on the absolute deviation, in percent
COMPLIANT_LIMIT = 10.0
ACCEPTABLE_LIMIT = 20.0

TIERS = {
    COMPLIANT: {"color": "#10B981", "label": "Compliant"},
    ACCEPTABLE: {"color": "#F59E0B", "label": "Acceptable"},
    NON_COMPLIANT: {"color": "#EF4444", "label": "Non-compliant"},
}

# Absorbs binary noise such as 1100/1000 -> 10.000000000000009
_DEVIATION_DIGITS = 10


@dataclass(frozen=True)
class ComplianceResult:
    """Derived compliance of one shutter. Never persisted."""

    deviation: float
    status: str
    color: str
    label: str

    @property
    def is_compliant(self) -> bool:
        return self.status == COMPLIANT


@dataclass(frozen=True)
class ComplianceSummary:
    """Tier counts over a set of shutters."""

    total: int
    compliant: int
    acceptable: int
    non_compliant: int

    @property
    def compliance_rate(self) -> float:
        """Percentage of compliant shutters (0 when there are none)."""
        if self.total == 0:
            return 0.0
        return (self.compliant / self.total) * 100

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "compliant": self.compliant,
            "acceptable": self.acceptable,
            "non_compliant": self.non_compliant,
            "compliance_rate": self.compliance_rate,
        }


def calculate_deviation(reference_flow: float, measured_flow: float) -> float:
    """
    Calculate the signed deviation of a measured flow from its reference.

    Args:
        reference_flow: Reference airflow (m³/h), >= 0
        measured_flow: Measured airflow (m³/h), >= 0

    Returns:
        Deviation in percent. 0 when both flows are 0; +inf when only the
        reference is 0.

    Example:
        >>> calculate_deviation(1000, 950)
        -5.0
    """
    _check_flow("reference_flow", reference_flow)
    _check_flow("measured_flow", measured_flow)

    if reference_flow == 0:
        return 0.0 if measured_flow == 0 else math.inf

    deviation = ((measured_flow - reference_flow) / reference_flow) * 100
    return round(deviation, _DEVIATION_DIGITS)


def classify_deviation(deviation: float) -> str:
    """
    Map a deviation to its compliance status.

    Args:
        deviation: Signed deviation in percent

    Returns:
        One of "compliant", "acceptable", "non-compliant"
    """
    magnitude = abs(deviation)
    if magnitude <= COMPLIANT_LIMIT:
        return COMPLIANT
    if magnitude <= ACCEPTABLE_LIMIT:
        return ACCEPTABLE
    return NON_COMPLIANT


def classify(reference_flow: float, measured_flow: float) -> ComplianceResult:
    """
    Classify a shutter measurement.

    Args:
        reference_flow: Reference airflow (m³/h)
        measured_flow: Measured airflow (m³/h)

    Returns:
        ComplianceResult with deviation, status, display color and label

    Raises:
        ValueError: If a flow is negative or not finite

    Example:
        >>> classify(1000, 950).status
        'compliant'
        >>> classify(1000, 700).status
        'non-compliant'
    """
    deviation = calculate_deviation(reference_flow, measured_flow)
    status = classify_deviation(deviation)
    tier = TIERS[status]
    return ComplianceResult(
        deviation=deviation,
        status=status,
        color=tier["color"],
        label=tier["label"],
    )


def format_deviation(deviation: float) -> str:
    """
    Format a deviation for display.

    Example:
        >>> format_deviation(-5)
        '-5.0%'
        >>> format_deviation(12.345)
        '+12.3%'
    """
    if math.isinf(deviation):
        return "+∞%" if deviation > 0 else "-∞%"
    if deviation == 0:
        return "0.0%"
    return f"{deviation:+.1f}%"


def summarize(flows: Iterable[Tuple[float, float]]) -> ComplianceSummary:
    """
    Count compliance tiers over (reference_flow, measured_flow) pairs.

    Args:
        flows: Iterable of (reference_flow, measured_flow)

    Returns:
        ComplianceSummary
    """
    counts = {status: 0 for status in STATUSES}
    for reference_flow, measured_flow in flows:
        counts[classify(reference_flow, measured_flow).status] += 1

    return ComplianceSummary(
        total=sum(counts.values()),
        compliant=counts[COMPLIANT],
        acceptable=counts[ACCEPTABLE],
        non_compliant=counts[NON_COMPLIANT],
    )


def _check_flow(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"{name} must be finite, got {value}")
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
