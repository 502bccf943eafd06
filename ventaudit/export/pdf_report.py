"""
PDF Audit Report

Renders the audit tree as an HTML report and converts it to PDF using
weasyprint. One table per functional zone, color coded by compliance tier.
"""

import html
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from weasyprint import HTML, CSS

from algorithms.compliance import (
    ACCEPTABLE_LIMIT,
    COMPLIANT_LIMIT,
    TIERS,
    format_deviation,
    summarize,
)

from ..storage.models import Building, FunctionalZone, Project


REPORT_CSS = """
@page { size: A4; margin: 18mm 15mm; }
body { font-family: "DejaVu Sans", Arial, sans-serif; font-size: 9pt; color: #111827; }
h1 { font-size: 16pt; color: #009999; margin-bottom: 2mm; }
h2 { font-size: 13pt; border-bottom: 1px solid #E5E7EB; margin-top: 8mm; }
h3 { font-size: 11pt; margin-bottom: 1mm; }
h4 { font-size: 10pt; color: #6B7280; margin: 3mm 0 1mm 0; }
table { width: 100%; border-collapse: collapse; margin-bottom: 3mm; }
th, td { border: 1px solid #E5E7EB; padding: 1.5mm 2mm; text-align: left; }
th { background: #F3F4F6; }
td.num { text-align: right; }
.status { font-weight: bold; }
.summary td { border: none; padding: 0.5mm 2mm; }
.legend { color: #6B7280; font-size: 8pt; }
"""


class AuditReportRenderer:
    """
    Renders audit projects as a PDF report.
    """

    def __init__(self, title: str = "Smoke extraction airflow audit"):
        """Initialize the renderer."""
        self.title = title

    def generate_pdf(self, projects: Iterable[Project], output_path: str) -> str:
        """
        Generate the PDF report.

        Args:
            projects: Projects to include
            output_path: Path where the PDF will be saved

        Returns:
            Path to generated PDF
        """
        html_content = self.build_html(projects)

        output_dir = Path(output_path).parent
        output_dir.mkdir(parents=True, exist_ok=True)

        HTML(string=html_content).write_pdf(output_path, stylesheets=[CSS(string=REPORT_CSS)])
        return output_path

    def build_html(self, projects: Iterable[Project]) -> str:
        """Build the report HTML document."""
        projects = list(projects)
        parts = [
            "<!DOCTYPE html>",
            "<html><head><meta charset=\"utf-8\">",
            f"<title>{_e(self.title)}</title></head><body>",
            f"<h1>{_e(self.title)}</h1>",
            f"<p>Generated {datetime.now().strftime('%Y-%m-%d %H:%M')}</p>",
            self._legend(),
        ]
        if not projects:
            parts.append("<p>No projects recorded.</p>")
        for project in projects:
            parts.append(self._project_section(project))
        parts.append("</body></html>")
        return "\n".join(parts)

    # ------------------------------------------------------------------ #
    #  Sections
    # ------------------------------------------------------------------ #

    def _legend(self) -> str:
        return (
            "<p class=\"legend\">"
            f"{_e(TIERS['compliant']['label'])}: |deviation| &le; {COMPLIANT_LIMIT:g}% &middot; "
            f"{_e(TIERS['acceptable']['label'])}: {COMPLIANT_LIMIT:g}% &lt; |deviation| "
            f"&le; {ACCEPTABLE_LIMIT:g}% &middot; "
            f"{_e(TIERS['non-compliant']['label'])}: |deviation| &gt; {ACCEPTABLE_LIMIT:g}%"
            "</p>"
        )

    def _project_section(self, project: Project) -> str:
        shutters = [
            s for b in project.buildings for z in b.functional_zones for s in z.shutters
        ]
        summary = summarize((s.reference_flow, s.measured_flow) for s in shutters)

        period = ""
        if project.start_date or project.end_date:
            start = project.start_date.isoformat() if project.start_date else "?"
            end = project.end_date.isoformat() if project.end_date else "?"
            period = f"<p>Period: {start} &rarr; {end}</p>"

        parts = [
            f"<h2>{_e(project.breadcrumb)}</h2>",
            period,
            "<table class=\"summary\">",
            f"<tr><td>Shutters</td><td>{summary.total}</td></tr>",
            f"<tr><td>{_e(TIERS['compliant']['label'])}</td><td>{summary.compliant}</td></tr>",
            f"<tr><td>{_e(TIERS['acceptable']['label'])}</td><td>{summary.acceptable}</td></tr>",
            f"<tr><td>{_e(TIERS['non-compliant']['label'])}</td><td>{summary.non_compliant}</td></tr>",
            f"<tr><td>Compliance rate</td><td>{summary.compliance_rate:.1f}%</td></tr>",
            "</table>",
        ]
        for building in project.buildings:
            parts.append(self._building_section(building))
        return "\n".join(parts)

    def _building_section(self, building: Building) -> str:
        parts = [f"<h3>{_e(building.name)}</h3>"]
        if building.description:
            parts.append(f"<p>{_e(building.description)}</p>")
        for zone in building.functional_zones:
            parts.append(self._zone_table(zone))
        return "\n".join(parts)

    def _zone_table(self, zone: FunctionalZone) -> str:
        rows: List[str] = []
        for shutter in zone.shutters:
            compliance = shutter.compliance
            rows.append(
                "<tr>"
                f"<td>{_e(shutter.name)}</td>"
                f"<td>{_e(shutter.type_label)}</td>"
                f"<td class=\"num\">{shutter.reference_flow:g}</td>"
                f"<td class=\"num\">{shutter.measured_flow:g}</td>"
                f"<td class=\"num\">{_e(format_deviation(compliance.deviation))}</td>"
                f"<td class=\"status\" style=\"color: {compliance.color}\">{_e(compliance.label)}</td>"
                f"<td>{_e(shutter.remarks or '')}</td>"
                "</tr>"
            )
        if not rows:
            rows.append("<tr><td colspan=\"7\">No shutters recorded.</td></tr>")

        return "\n".join([
            f"<h4>{_e(zone.name)}</h4>",
            "<table>",
            "<tr><th>Shutter</th><th>Type</th><th>Reference (m³/h)</th>"
            "<th>Measured (m³/h)</th><th>Deviation</th><th>Status</th><th>Remarks</th></tr>",
            *rows,
            "</table>",
        ])


def generate_audit_pdf(projects: Iterable[Project], output_path: str,
                       title: Optional[str] = None) -> str:
    """
    Convenience function to render an audit report.

    Args:
        projects: Projects to include
        output_path: Path where the PDF will be saved
        title: Report title

    Returns:
        Path to generated PDF
    """
    renderer = AuditReportRenderer(title) if title else AuditReportRenderer()
    return renderer.generate_pdf(projects, output_path)


def _e(text: str) -> str:
    return html.escape(str(text))
