"""
ventaudit CLI Commands
Command-line interface for recording and reviewing airflow audits.
"""

import functools
import logging
from datetime import date
from pathlib import Path
from typing import Optional

import click

from algorithms.compliance import classify, format_deviation

from . import __version__
from .config import get_config_value, load_config
from .storage import (
    EntityStore,
    JsonSnapshotAdapter,
    NotFoundError,
    PersistenceError,
    QueryFacade,
)
from .storage.models import LEVELS, SHUTTER_TYPES

logger = logging.getLogger(__name__)

DATE = click.DateTime(formats=["%Y-%m-%d"])
STATUS_MARKS = {"compliant": "✓", "acceptable": "!", "non-compliant": "✗"}


class PersistenceFailure(click.ClickException):
    """Storage could not be read or written."""

    exit_code = 2


class AuditSession:
    """Configuration and lazily opened store for one CLI invocation."""

    def __init__(self, config: dict, data_file: Optional[str] = None):
        self.config = config
        self.data_file = data_file or get_config_value(config, "storage.path")
        self._store = None

    @property
    def adapter(self) -> JsonSnapshotAdapter:
        return self.store.adapter

    @property
    def store(self) -> EntityStore:
        if self._store is None:
            adapter = JsonSnapshotAdapter(
                self.data_file,
                write_retries=get_config_value(self.config, "storage.write_retries", 1),
            )
            self._store = EntityStore.open(adapter)
        return self._store

    @property
    def queries(self) -> QueryFacade:
        return QueryFacade(self.store)


def handles_storage_errors(command):
    """Report store failures as CLI errors instead of tracebacks."""

    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except (NotFoundError, ValueError) as e:
            raise click.ClickException(str(e))
        except PersistenceError as e:
            raise PersistenceFailure(str(e))

    return wrapper


@click.group()
@click.version_option(version=__version__)
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='YAML configuration file (default: ventaudit.yaml)')
@click.option('--data-file', type=click.Path(dir_okay=False), help='Snapshot file to use')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, config_path: Optional[str], data_file: Optional[str], verbose: bool):
    """
    ventaudit - Smoke extraction airflow audit records

    Record projects, buildings, functional zones and shutters, and classify
    measured airflows against their reference values.
    """
    try:
        config = load_config(config_path)
    except ValueError as e:
        raise click.ClickException(str(e))

    level = "DEBUG" if verbose else str(get_config_value(config, "logging.level", "WARNING"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = AuditSession(config, data_file)


@cli.command()
@click.pass_obj
@handles_storage_errors
def init(session: AuditSession):
    """Create the snapshot file if it does not exist."""
    adapter = session.adapter
    click.echo(f"✓ Audit data ready: {adapter.storage_path}")


@cli.command()
@click.pass_obj
@handles_storage_errors
def info(session: AuditSession):
    """Show storage statistics."""
    stats = session.adapter.storage_info()
    counts = session.queries.counts()

    click.echo(f"Storage: {stats['storage_path']} ({stats['storage_size']})")
    click.echo(f"  Projects: {counts['projects']}")
    click.echo(f"  Buildings: {counts['buildings']}")
    click.echo(f"  Zones: {counts['zones']}")
    click.echo(f"  Shutters: {counts['shutters']}")
    click.echo(f"  Notes: {stats['notes_count']}")


@cli.command(name='classify')
@click.argument('reference', type=float)
@click.argument('measured', type=float)
@click.option('--save', is_flag=True, help='Keep the result in the quick-calc history')
@click.pass_obj
@handles_storage_errors
def classify_command(session: AuditSession, reference: float, measured: float, save: bool):
    """Classify a MEASURED airflow against its REFERENCE."""
    result = classify(reference, measured)
    if save:
        session.store.record_quick_calc(reference, measured)

    click.echo(f"Deviation: {format_deviation(result.deviation)}")
    click.echo(f"{STATUS_MARKS[result.status]} {result.label}")


@cli.command()
@click.option('--clear', is_flag=True, help='Erase the history')
@click.pass_obj
@handles_storage_errors
def history(session: AuditSession, clear: bool):
    """Show the last quick calculations."""
    if clear:
        session.store.clear_quick_calc_history()
        click.echo("✓ History cleared")
        return

    entries = session.store.quick_calc_history()
    if not entries:
        click.echo("No quick calculations recorded")
        return

    for entry in entries:
        click.echo(
            f"  {entry.timestamp:%Y-%m-%d %H:%M}  ref {entry.reference_flow:g}  "
            f"measured {entry.measured_flow:g}  {format_deviation(entry.deviation)}  "
            f"{STATUS_MARKS[entry.status]} {entry.status}"
        )


# ---------------------------------------------------------------------- #
#  Projects
# ---------------------------------------------------------------------- #

@cli.group()
def project():
    """Manage audit projects."""
    pass


@project.command(name='create')
@click.argument('name')
@click.option('--city', help='City')
@click.option('--start', 'start_date', type=DATE, help='Start date (YYYY-MM-DD)')
@click.option('--end', 'end_date', type=DATE, help='End date (YYYY-MM-DD)')
@click.pass_obj
@handles_storage_errors
def project_create(session: AuditSession, name: str, city: Optional[str], start_date, end_date):
    """Create a project."""
    created = session.store.create_project(
        name=name.strip(),
        city=city.strip() if city else None,
        start_date=start_date.date() if start_date else None,
        end_date=end_date.date() if end_date else None,
    )
    click.echo(f"✓ Project created: {created.id}")


@project.command(name='list')
@click.pass_obj
@handles_storage_errors
def project_list(session: AuditSession):
    """List projects."""
    projects = session.store.list_projects()
    if not projects:
        click.echo("No projects")
        return

    favorites = set(session.store.get_favorites("project"))
    for item in projects:
        star = "★ " if item.id in favorites else "  "
        click.echo(
            f"{star}{item.id}  {item.breadcrumb}  "
            f"({len(item.buildings)} buildings, {item.get_total_shutters()} shutters)"
        )


@project.command(name='show')
@click.argument('project_id')
@click.pass_obj
@handles_storage_errors
def project_show(session: AuditSession, project_id: str):
    """Show a project tree with compliance results."""
    item = session.store.get_project(project_id)
    if item is None:
        raise NotFoundError("project", project_id)

    click.echo(f"━━━ {item.breadcrumb} ━━━")
    if item.start_date or item.end_date:
        click.echo(f"Period: {item.start_date or '?'} → {item.end_date or '?'}")

    for building in item.buildings:
        click.echo(f"  {building.name} [{building.id}]")
        for zone in building.functional_zones:
            click.echo(f"    {zone.name} [{zone.id}]")
            for shutter in zone.shutters:
                compliance = shutter.compliance
                click.echo(
                    f"      {STATUS_MARKS[compliance.status]} {shutter.name} "
                    f"({shutter.type}) ref {shutter.reference_flow:g} "
                    f"measured {shutter.measured_flow:g} "
                    f"{format_deviation(compliance.deviation)} [{shutter.id}]"
                )

    summary = session.queries.compliance_summary(item.id)
    click.echo(f"\nCompliance rate: {summary.compliance_rate:.1f}% of {summary.total} shutters")


@project.command(name='update')
@click.argument('project_id')
@click.option('--name', help='New name')
@click.option('--city', help='New city')
@click.option('--start', 'start_date', type=DATE, help='Start date (YYYY-MM-DD)')
@click.option('--end', 'end_date', type=DATE, help='End date (YYYY-MM-DD)')
@click.option('--clear-city', is_flag=True, help='Remove the city')
@click.option('--clear-dates', is_flag=True, help='Remove start and end dates')
@click.pass_obj
@handles_storage_errors
def project_update(session: AuditSession, project_id: str, name, city, start_date, end_date,
                   clear_city: bool, clear_dates: bool):
    """Update a project."""
    updates = {}
    if name is not None:
        updates["name"] = name.strip()
    if city is not None:
        updates["city"] = city.strip()
    if clear_city:
        updates["city"] = None
    if clear_dates:
        updates["start_date"] = None
        updates["end_date"] = None
    if start_date is not None:
        updates["start_date"] = start_date.date()
    if end_date is not None:
        updates["end_date"] = end_date.date()

    updated = session.store.update_project(project_id, updates)
    click.echo(f"✓ Project updated: {updated.breadcrumb}")


@project.command(name='delete')
@click.argument('project_id')
@click.confirmation_option(prompt='Delete this project and everything it contains?')
@click.pass_obj
@handles_storage_errors
def project_delete(session: AuditSession, project_id: str):
    """Delete a project with its buildings, zones and shutters."""
    _report_delete(session.store.delete_project(project_id), "Project", project_id)


# ---------------------------------------------------------------------- #
#  Buildings and zones
# ---------------------------------------------------------------------- #

@cli.group()
def building():
    """Manage buildings."""
    pass


@building.command(name='create')
@click.argument('project_id')
@click.argument('name')
@click.option('--description', help='Description')
@click.pass_obj
@handles_storage_errors
def building_create(session: AuditSession, project_id: str, name: str, description: Optional[str]):
    """Add a building to a project."""
    created = session.store.create_building(project_id, name=name.strip(), description=description)
    click.echo(f"✓ Building created: {created.id}")


@building.command(name='list')
@click.argument('project_id')
@click.pass_obj
@handles_storage_errors
def building_list(session: AuditSession, project_id: str):
    """List the buildings of a project."""
    if session.store.get_project(project_id) is None:
        raise NotFoundError("project", project_id)

    buildings = session.store.list_buildings(project_id)
    if not buildings:
        click.echo("No buildings")
    for item in buildings:
        click.echo(
            f"  {item.id}  {item.name}  "
            f"({len(item.functional_zones)} zones, {item.get_total_shutters()} shutters)"
        )


@building.command(name='update')
@click.argument('building_id')
@click.option('--name', help='New name')
@click.option('--description', help='New description')
@click.option('--clear-description', is_flag=True, help='Remove the description')
@click.pass_obj
@handles_storage_errors
def building_update(session: AuditSession, building_id: str, name, description,
                    clear_description: bool):
    """Update a building."""
    updates = _described_updates(name, description, clear_description)
    updated = session.store.update_building(building_id, updates)
    click.echo(f"✓ Building updated: {updated.name}")


@building.command(name='delete')
@click.argument('building_id')
@click.confirmation_option(prompt='Delete this building and everything it contains?')
@click.pass_obj
@handles_storage_errors
def building_delete(session: AuditSession, building_id: str):
    """Delete a building with its zones and shutters."""
    _report_delete(session.store.delete_building(building_id), "Building", building_id)


@cli.group()
def zone():
    """Manage functional zones."""
    pass


@zone.command(name='create')
@click.argument('building_id')
@click.argument('name')
@click.option('--description', help='Description')
@click.pass_obj
@handles_storage_errors
def zone_create(session: AuditSession, building_id: str, name: str, description: Optional[str]):
    """Add a functional zone to a building."""
    created = session.store.create_zone(building_id, name=name.strip(), description=description)
    click.echo(f"✓ Zone created: {created.id}")


@zone.command(name='list')
@click.argument('building_id')
@click.pass_obj
@handles_storage_errors
def zone_list(session: AuditSession, building_id: str):
    """List the functional zones of a building."""
    if session.store.get_building(building_id) is None:
        raise NotFoundError("building", building_id)

    zones = session.store.list_zones(building_id)
    if not zones:
        click.echo("No zones")
    for item in zones:
        click.echo(f"  {item.id}  {item.name}  ({len(item.shutters)} shutters)")


@zone.command(name='update')
@click.argument('zone_id')
@click.option('--name', help='New name')
@click.option('--description', help='New description')
@click.option('--clear-description', is_flag=True, help='Remove the description')
@click.pass_obj
@handles_storage_errors
def zone_update(session: AuditSession, zone_id: str, name, description, clear_description: bool):
    """Update a functional zone."""
    updates = _described_updates(name, description, clear_description)
    updated = session.store.update_zone(zone_id, updates)
    click.echo(f"✓ Zone updated: {updated.name}")


@zone.command(name='delete')
@click.argument('zone_id')
@click.confirmation_option(prompt='Delete this zone and its shutters?')
@click.pass_obj
@handles_storage_errors
def zone_delete(session: AuditSession, zone_id: str):
    """Delete a functional zone with its shutters."""
    _report_delete(session.store.delete_zone(zone_id), "Zone", zone_id)


# ---------------------------------------------------------------------- #
#  Shutters
# ---------------------------------------------------------------------- #

@cli.group()
def shutter():
    """Manage shutters and their measurements."""
    pass


@shutter.command(name='create')
@click.argument('zone_id')
@click.argument('name')
@click.option('--type', 'shutter_type', type=click.Choice(SHUTTER_TYPES), required=True,
              help='Shutter position')
@click.option('--reference', type=float, required=True, help='Reference flow (m³/h)')
@click.option('--measured', type=float, default=0.0, help='Measured flow (m³/h)')
@click.option('--remarks', help='Remarks')
@click.pass_obj
@handles_storage_errors
def shutter_create(session: AuditSession, zone_id: str, name: str, shutter_type: str,
                   reference: float, measured: float, remarks: Optional[str]):
    """Add a shutter to a zone."""
    created = session.store.create_shutter(
        zone_id,
        name=name.strip(),
        type=shutter_type,
        reference_flow=reference,
        measured_flow=measured,
        remarks=remarks,
    )
    compliance = created.compliance
    click.echo(f"✓ Shutter created: {created.id}")
    click.echo(f"  {format_deviation(compliance.deviation)} {STATUS_MARKS[compliance.status]} {compliance.label}")


@shutter.command(name='list')
@click.argument('zone_id')
@click.pass_obj
@handles_storage_errors
def shutter_list(session: AuditSession, zone_id: str):
    """List the shutters of a zone with their compliance."""
    if session.store.get_zone(zone_id) is None:
        raise NotFoundError("zone", zone_id)

    shutters = session.store.list_shutters(zone_id)
    if not shutters:
        click.echo("No shutters")
    for item in shutters:
        compliance = item.compliance
        click.echo(
            f"  {STATUS_MARKS[compliance.status]} {item.id}  {item.name} ({item.type_label})  "
            f"ref {item.reference_flow:g} measured {item.measured_flow:g}  "
            f"{format_deviation(compliance.deviation)}"
        )


@shutter.command(name='update')
@click.argument('shutter_id')
@click.option('--name', help='New name')
@click.option('--type', 'shutter_type', type=click.Choice(SHUTTER_TYPES), help='Shutter position')
@click.option('--reference', type=float, help='Reference flow (m³/h)')
@click.option('--measured', type=float, help='Measured flow (m³/h)')
@click.option('--remarks', help='Remarks')
@click.option('--clear-remarks', is_flag=True, help='Remove the remarks')
@click.pass_obj
@handles_storage_errors
def shutter_update(session: AuditSession, shutter_id: str, name, shutter_type, reference,
                   measured, remarks, clear_remarks: bool):
    """Update a shutter measurement."""
    updates = {}
    if name is not None:
        updates["name"] = name.strip()
    if shutter_type is not None:
        updates["type"] = shutter_type
    if reference is not None:
        updates["reference_flow"] = reference
    if measured is not None:
        updates["measured_flow"] = measured
    if remarks is not None:
        updates["remarks"] = remarks
    if clear_remarks:
        updates["remarks"] = None

    updated = session.store.update_shutter(shutter_id, updates)
    compliance = updated.compliance
    click.echo(f"✓ Shutter updated: {updated.name}")
    click.echo(f"  {format_deviation(compliance.deviation)} {STATUS_MARKS[compliance.status]} {compliance.label}")


@shutter.command(name='duplicate')
@click.argument('shutter_id')
@click.option('--zone', 'zone_id', help='Target zone (default: same zone)')
@click.pass_obj
@handles_storage_errors
def shutter_duplicate(session: AuditSession, shutter_id: str, zone_id: Optional[str]):
    """Copy a shutter, resetting its measured flow."""
    created = session.store.duplicate_shutter(shutter_id, zone_id)
    click.echo(f"✓ Shutter created: {created.name} ({created.id})")


@shutter.command(name='delete')
@click.argument('shutter_id')
@click.confirmation_option(prompt='Delete this shutter?')
@click.pass_obj
@handles_storage_errors
def shutter_delete(session: AuditSession, shutter_id: str):
    """Delete a shutter."""
    _report_delete(session.store.delete_shutter(shutter_id), "Shutter", shutter_id)


# ---------------------------------------------------------------------- #
#  Favorites, search and statistics
# ---------------------------------------------------------------------- #

@cli.group()
def favorite():
    """Mark projects, buildings, zones or shutters as favorites."""
    pass


@favorite.command(name='toggle')
@click.argument('level', type=click.Choice(LEVELS))
@click.argument('entity_id')
@click.pass_obj
@handles_storage_errors
def favorite_toggle(session: AuditSession, level: str, entity_id: str):
    """Flip the favorite flag of an entity."""
    marked = session.store.toggle_favorite(level, entity_id)
    click.echo(f"{'★ Added to' if marked else '☆ Removed from'} favorites: {entity_id}")


@favorite.command(name='list')
@click.argument('level', type=click.Choice(LEVELS))
@click.pass_obj
@handles_storage_errors
def favorite_list(session: AuditSession, level: str):
    """List favorite ids of a level."""
    favorites = session.store.get_favorites(level)
    if not favorites:
        click.echo("No favorites")
    for entity_id in favorites:
        node = session.queries.find_by_id(entity_id)
        click.echo(f"★ {entity_id}  {node.entity.name}")


@cli.command()
@click.argument('query')
@click.pass_obj
@handles_storage_errors
def search(session: AuditSession, query: str):
    """Search shutters by shutter, zone, building or project name."""
    count = 0
    for result in session.queries.search_shutters(query):
        count += 1
        compliance = result.shutter.compliance
        click.echo(
            f"{STATUS_MARKS[compliance.status]} {result.project.breadcrumb} / "
            f"{result.building.name} / {result.zone.name} / {result.shutter.name}  "
            f"{format_deviation(compliance.deviation)} [{result.shutter.id}]"
        )
    click.echo(f"\n{count} result(s)")


@cli.command()
@click.argument('entity_id', required=False)
@click.pass_obj
@handles_storage_errors
def stats(session: AuditSession, entity_id: Optional[str]):
    """Compliance statistics for the whole store or below ENTITY_ID."""
    summary = session.queries.compliance_summary(entity_id)
    if entity_id:
        node = session.queries.find_by_id(entity_id)
        chain = [a.name for a in node.ancestors] + [node.entity.name]
        click.echo(f"━━━ {' / '.join(chain)} ━━━")

    click.echo(f"Shutters: {summary.total}")
    click.echo(f"  ✓ Compliant: {summary.compliant}")
    click.echo(f"  ! Acceptable: {summary.acceptable}")
    click.echo(f"  ✗ Non-compliant: {summary.non_compliant}")
    click.echo(f"Compliance rate: {summary.compliance_rate:.1f}%")


# ---------------------------------------------------------------------- #
#  Notes
# ---------------------------------------------------------------------- #

@cli.group()
def note():
    """Keep free-text site notes."""
    pass


@note.command(name='create')
@click.option('--title', help='Title (default: "Untitled note N")')
@click.option('--content', default='', help='Note text')
@click.pass_obj
@handles_storage_errors
def note_create(session: AuditSession, title: Optional[str], content: str):
    """Create a note."""
    created = session.store.create_note(title=title, content=content.strip())
    click.echo(f"✓ Note created: {created.title} ({created.id})")


@note.command(name='list')
@click.pass_obj
@handles_storage_errors
def note_list(session: AuditSession):
    """List notes."""
    notes = session.store.list_notes()
    if not notes:
        click.echo("No notes")
    for item in notes:
        click.echo(f"  {item.id}  {item.updated_at:%Y-%m-%d}  {item.title}")


@note.command(name='show')
@click.argument('note_id')
@click.pass_obj
@handles_storage_errors
def note_show(session: AuditSession, note_id: str):
    """Show a note."""
    item = session.store.get_note(note_id)
    if item is None:
        raise NotFoundError("note", note_id)

    click.echo(f"━━━ {item.title} ━━━")
    click.echo(f"Updated {item.updated_at:%Y-%m-%d %H:%M}")
    if item.content:
        click.echo(f"\n{item.content}")


@note.command(name='update')
@click.argument('note_id')
@click.option('--title', help='New title')
@click.option('--content', help='New text')
@click.pass_obj
@handles_storage_errors
def note_update(session: AuditSession, note_id: str, title: Optional[str], content: Optional[str]):
    """Update a note."""
    updates = {}
    if title is not None:
        updates["title"] = title.strip()
    if content is not None:
        updates["content"] = content.strip()

    updated = session.store.update_note(note_id, updates)
    click.echo(f"✓ Note updated: {updated.title}")


@note.command(name='delete')
@click.argument('note_id')
@click.confirmation_option(prompt='Delete this note?')
@click.pass_obj
@handles_storage_errors
def note_delete(session: AuditSession, note_id: str):
    """Delete a note."""
    _report_delete(session.store.delete_note(note_id), "Note", note_id)


# ---------------------------------------------------------------------- #
#  Export
# ---------------------------------------------------------------------- #

@cli.group()
def export():
    """Export audit results."""
    pass


@export.command(name='csv')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Output CSV file')
@click.option('--project', 'project_ids', multiple=True, help='Only export these projects')
@click.pass_obj
@handles_storage_errors
def export_csv_command(session: AuditSession, output: Optional[str], project_ids):
    """Export shutters to CSV."""
    from .export.csv_export import export_csv

    output = output or _default_export_path(session, "csv")
    path = export_csv(session.store.list_projects(), output, project_ids or None)
    click.echo(f"✓ Exported to: {path}")


@export.command(name='pdf')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Output PDF file')
@click.option('--project', 'project_ids', multiple=True, help='Only export these projects')
@click.pass_obj
@handles_storage_errors
def export_pdf_command(session: AuditSession, output: Optional[str], project_ids):
    """Render an audit report to PDF."""
    from .export.pdf_report import generate_audit_pdf

    projects = session.store.list_projects()
    if project_ids:
        projects = [p for p in projects if p.id in set(project_ids)]

    output = output or _default_export_path(session, "pdf")
    click.echo(f"Rendering PDF to: {output}")
    generate_audit_pdf(projects, output)
    click.echo("✓ PDF rendered successfully")


def _default_export_path(session: AuditSession, extension: str) -> str:
    directory = Path(get_config_value(session.config, "export.directory", "."))
    return str(directory / f"ventaudit_export_{date.today().isoformat()}.{extension}")


def _described_updates(name: Optional[str], description: Optional[str],
                       clear_description: bool) -> dict:
    updates = {}
    if name is not None:
        updates["name"] = name.strip()
    if description is not None:
        updates["description"] = description.strip()
    if clear_description:
        updates["description"] = None
    return updates


def _report_delete(deleted: bool, label: str, entity_id: str) -> None:
    if not deleted:
        raise NotFoundError(label.lower(), entity_id)
    click.echo(f"✓ {label} deleted: {entity_id}")


if __name__ == '__main__':
    cli()
