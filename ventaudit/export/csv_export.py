"""
CSV Export

One row per shutter with its owning chain and compliance result.
"""

import csv
import io
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from algorithms.compliance import format_deviation

from ..storage.models import Project


CSV_HEADERS = [
    "Project",
    "City",
    "Building",
    "Zone",
    "Shutter",
    "Type",
    "Reference flow (m³/h)",
    "Measured flow (m³/h)",
    "Deviation (%)",
    "Status",
    "Remarks",
    "Created",
    "Updated",
]


def iter_rows(projects: Iterable[Project]) -> Iterator[List[str]]:
    """Yield the data rows (without header) in traversal order."""
    for project in projects:
        for building in project.buildings:
            for zone in building.functional_zones:
                for shutter in zone.shutters:
                    compliance = shutter.compliance
                    yield [
                        project.name,
                        project.city or "",
                        building.name,
                        zone.name,
                        shutter.name,
                        shutter.type_label,
                        _flow(shutter.reference_flow),
                        _flow(shutter.measured_flow),
                        format_deviation(compliance.deviation),
                        compliance.label,
                        shutter.remarks or "",
                        shutter.created_at.date().isoformat(),
                        shutter.updated_at.date().isoformat(),
                    ]


def generate_csv(projects: Iterable[Project],
                 project_ids: Optional[Iterable[str]] = None) -> str:
    """
    Render projects as CSV text with every cell quoted.

    Args:
        projects: Projects to export
        project_ids: Restrict the export to these project IDs

    Returns:
        CSV content
    """
    if project_ids is not None:
        selected = set(project_ids)
        projects = [p for p in projects if p.id in selected]

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    writer.writerows(iter_rows(projects))
    return buffer.getvalue()


def export_csv(projects: Iterable[Project], output_path: str,
               project_ids: Optional[Iterable[str]] = None) -> str:
    """
    Write the CSV export to a file.

    Returns:
        Path to the written file
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)
    # utf-8-sig so spreadsheet tools detect the encoding of "m³/h"
    with open(output, "w", encoding="utf-8-sig", newline="") as f:
        f.write(generate_csv(projects, project_ids))
    return str(output)


def _flow(value: float) -> str:
    return f"{value:g}"
