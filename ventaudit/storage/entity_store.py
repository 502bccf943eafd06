"""
Entity Store

In-memory audit tree (Project -> Building -> FunctionalZone -> Shutter) with
create/update/delete primitives at every level, plus free-text site notes.
Each mutation is persisted through the snapshot adapter before the call
returns; if the write fails the mutation is rolled back.
"""

import copy
import logging
import math
import re
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from algorithms.compliance import classify

from .errors import NotFoundError, PersistenceError
from .models import (
    Building,
    Favorites,
    FunctionalZone,
    Note,
    Project,
    QuickCalcEntry,
    Shutter,
    Snapshot,
    FAVORITE_KEYS,
    LEVEL_BUILDING,
    LEVEL_NOTE,
    LEVEL_PROJECT,
    LEVEL_SHUTTER,
    LEVEL_ZONE,
    SHUTTER_TYPES,
    UNTITLED_NOTE,
    utc_now,
)

logger = logging.getLogger(__name__)

QUICK_CALC_HISTORY_SIZE = 5

ID_PREFIXES = {
    LEVEL_PROJECT: "PRJ",
    LEVEL_BUILDING: "BLD",
    LEVEL_ZONE: "ZON",
    LEVEL_SHUTTER: "SHT",
    LEVEL_NOTE: "NOT",
    "quick_calc": "QCK",
}

# Fields callers may set on create/update, per level
EDITABLE_FIELDS = {
    LEVEL_PROJECT: ("name", "city", "start_date", "end_date"),
    LEVEL_BUILDING: ("name", "description"),
    LEVEL_ZONE: ("name", "description"),
    LEVEL_SHUTTER: ("name", "type", "reference_flow", "measured_flow", "remarks"),
    LEVEL_NOTE: ("title", "content"),
}

OPTIONAL_FIELDS = ("city", "start_date", "end_date", "description", "remarks")


class EntityStore:
    """
    Owner of the audit tree.

    Usage:
        adapter = JsonSnapshotAdapter("audits.json")
        store = EntityStore.open(adapter)
        project = store.create_project(name="Rivoli", city="Paris")
        building = store.create_building(project.id, name="Tower A")

    Entities returned by the store are detached copies; change them through
    the update methods.
    """

    def __init__(self, adapter, snapshot: Optional[Snapshot] = None):
        """
        Initialize the store.

        Args:
            adapter: Persistence adapter providing save(projects, favorites, history, notes)
            snapshot: Initial state (default: empty)
        """
        snapshot = snapshot or Snapshot()
        self.adapter = adapter
        self._projects: List[Project] = snapshot.projects
        self._favorites: Favorites = snapshot.favorites
        self._history: List[QuickCalcEntry] = snapshot.quick_calc_history
        self._notes: List[Note] = snapshot.notes

    @classmethod
    def open(cls, adapter) -> "EntityStore":
        """Initialize the adapter and hydrate a store from its snapshot."""
        adapter.initialize()
        return cls(adapter, adapter.load_snapshot())

    # ------------------------------------------------------------------ #
    #  Projects
    # ------------------------------------------------------------------ #

    def create_project(self, name: str, city: Optional[str] = None,
                       start_date: Optional[date] = None,
                       end_date: Optional[date] = None) -> Project:
        """
        Create a project at the end of the project list.

        Raises:
            ValueError: If the name is blank or end_date is not after start_date
            PersistenceError: If the snapshot could not be saved
        """
        fields = {"name": name, "city": city, "start_date": start_date, "end_date": end_date}
        _check_project(fields)

        now = utc_now()
        project = Project(
            id=self._new_id(LEVEL_PROJECT),
            created_at=now,
            updated_at=now,
            **fields,
        )
        with self._mutation():
            self._projects.append(project)

        logger.info("Project created: %s (%s)", project.name, project.id)
        return copy.deepcopy(project)

    def update_project(self, project_id: str, updates: Dict[str, Any]) -> Project:
        """
        Merge the given fields into a project.

        Args:
            project_id: Project ID
            updates: Fields to change; None clears an optional field

        Raises:
            NotFoundError: If the project does not exist
        """
        project = self._find_project(project_id)
        merged = self._merge(LEVEL_PROJECT, project, updates)
        _check_project(merged)

        with self._mutation():
            _apply(project, merged)
        return copy.deepcopy(project)

    def delete_project(self, project_id: str) -> bool:
        """Delete a project with all its buildings, zones and shutters."""
        for index, project in enumerate(self._projects):
            if project.id == project_id:
                with self._mutation():
                    del self._projects[index]
                    self._favorites.discard(_subtree_ids(project))
                logger.info("Project deleted: %s (%s)", project.name, project_id)
                return True
        return False

    def get_project(self, project_id: str) -> Optional[Project]:
        for project in self._projects:
            if project.id == project_id:
                return copy.deepcopy(project)
        return None

    def list_projects(self) -> List[Project]:
        return copy.deepcopy(self._projects)

    # ------------------------------------------------------------------ #
    #  Buildings
    # ------------------------------------------------------------------ #

    def create_building(self, project_id: str, name: str,
                        description: Optional[str] = None) -> Building:
        """
        Create a building at the end of a project's building list.

        Raises:
            NotFoundError: If the project does not exist
        """
        project = self._find_project(project_id)
        _check_described(LEVEL_BUILDING, {"name": name, "description": description})

        now = utc_now()
        building = Building(
            id=self._new_id(LEVEL_BUILDING),
            project_id=project.id,
            name=name,
            description=description,
            created_at=now,
            updated_at=now,
        )
        with self._mutation():
            project.buildings.append(building)

        logger.info("Building created: %s in project %s", building.name, project.id)
        return copy.deepcopy(building)

    def update_building(self, building_id: str, updates: Dict[str, Any]) -> Building:
        _, building = self._find_building(building_id)
        merged = self._merge(LEVEL_BUILDING, building, updates)
        _check_described(LEVEL_BUILDING, merged)

        with self._mutation():
            _apply(building, merged)
        return copy.deepcopy(building)

    def delete_building(self, building_id: str) -> bool:
        """Delete a building with its zones and shutters."""
        for project in self._projects:
            for index, building in enumerate(project.buildings):
                if building.id == building_id:
                    with self._mutation():
                        del project.buildings[index]
                        self._favorites.discard(_subtree_ids(building))
                    logger.info("Building deleted: %s (%s)", building.name, building_id)
                    return True
        return False

    def get_building(self, building_id: str) -> Optional[Building]:
        try:
            _, building = self._find_building(building_id)
        except NotFoundError:
            return None
        return copy.deepcopy(building)

    def list_buildings(self, project_id: str) -> List[Building]:
        """Buildings of a project in insertion order (empty for an unknown project)."""
        for project in self._projects:
            if project.id == project_id:
                return copy.deepcopy(project.buildings)
        return []

    # ------------------------------------------------------------------ #
    #  Functional zones
    # ------------------------------------------------------------------ #

    def create_zone(self, building_id: str, name: str,
                    description: Optional[str] = None) -> FunctionalZone:
        """
        Create a functional zone at the end of a building's zone list.

        Raises:
            NotFoundError: If the building does not exist
        """
        _, building = self._find_building(building_id)
        _check_described(LEVEL_ZONE, {"name": name, "description": description})

        now = utc_now()
        zone = FunctionalZone(
            id=self._new_id(LEVEL_ZONE),
            building_id=building.id,
            name=name,
            description=description,
            created_at=now,
            updated_at=now,
        )
        with self._mutation():
            building.functional_zones.append(zone)

        logger.info("Zone created: %s in building %s", zone.name, building.id)
        return copy.deepcopy(zone)

    def update_zone(self, zone_id: str, updates: Dict[str, Any]) -> FunctionalZone:
        _, zone = self._find_zone(zone_id)
        merged = self._merge(LEVEL_ZONE, zone, updates)
        _check_described(LEVEL_ZONE, merged)

        with self._mutation():
            _apply(zone, merged)
        return copy.deepcopy(zone)

    def delete_zone(self, zone_id: str) -> bool:
        """Delete a functional zone with its shutters."""
        for building in self._iter_buildings():
            for index, zone in enumerate(building.functional_zones):
                if zone.id == zone_id:
                    with self._mutation():
                        del building.functional_zones[index]
                        self._favorites.discard(_subtree_ids(zone))
                    logger.info("Zone deleted: %s (%s)", zone.name, zone_id)
                    return True
        return False

    def get_zone(self, zone_id: str) -> Optional[FunctionalZone]:
        try:
            _, zone = self._find_zone(zone_id)
        except NotFoundError:
            return None
        return copy.deepcopy(zone)

    def list_zones(self, building_id: str) -> List[FunctionalZone]:
        for building in self._iter_buildings():
            if building.id == building_id:
                return copy.deepcopy(building.functional_zones)
        return []

    # ------------------------------------------------------------------ #
    #  Shutters
    # ------------------------------------------------------------------ #

    def create_shutter(self, zone_id: str, name: str, type: str,
                       reference_flow: float, measured_flow: float,
                       remarks: Optional[str] = None) -> Shutter:
        """
        Create a shutter at the end of a zone's shutter list.

        Args:
            zone_id: Owning functional zone ID
            name: Shutter name (e.g. "V01")
            type: "high" or "low"
            reference_flow: Reference airflow (m³/h)
            measured_flow: Measured airflow (m³/h)
            remarks: Free-text remarks

        Raises:
            NotFoundError: If the zone does not exist
            ValueError: If the type or a flow is invalid
        """
        _, zone = self._find_zone(zone_id)
        fields = {
            "name": name,
            "type": type,
            "reference_flow": reference_flow,
            "measured_flow": measured_flow,
            "remarks": remarks,
        }
        _check_shutter(fields)

        now = utc_now()
        shutter = Shutter(
            id=self._new_id(LEVEL_SHUTTER),
            zone_id=zone.id,
            created_at=now,
            updated_at=now,
            **_with_float_flows(fields),
        )
        with self._mutation():
            zone.shutters.append(shutter)

        logger.info("Shutter created: %s in zone %s", shutter.name, zone.id)
        return copy.deepcopy(shutter)

    def update_shutter(self, shutter_id: str, updates: Dict[str, Any]) -> Shutter:
        _, shutter = self._find_shutter(shutter_id)
        merged = self._merge(LEVEL_SHUTTER, shutter, updates)
        _check_shutter(merged)

        with self._mutation():
            _apply(shutter, _with_float_flows(merged))
        return copy.deepcopy(shutter)

    def delete_shutter(self, shutter_id: str) -> bool:
        for zone in self._iter_zones():
            for index, shutter in enumerate(zone.shutters):
                if shutter.id == shutter_id:
                    with self._mutation():
                        del zone.shutters[index]
                        self._favorites.discard([shutter_id])
                    logger.info("Shutter deleted: %s (%s)", shutter.name, shutter_id)
                    return True
        return False

    def get_shutter(self, shutter_id: str) -> Optional[Shutter]:
        try:
            _, shutter = self._find_shutter(shutter_id)
        except NotFoundError:
            return None
        return copy.deepcopy(shutter)

    def list_shutters(self, zone_id: str) -> List[Shutter]:
        for zone in self._iter_zones():
            if zone.id == zone_id:
                return copy.deepcopy(zone.shutters)
        return []

    def duplicate_shutter(self, shutter_id: str, zone_id: Optional[str] = None) -> Shutter:
        """
        Copy a shutter into its own zone or another one.

        The copy keeps type, reference flow and remarks, gets a name not yet
        used in the target zone and a measured flow of 0.

        Example:
            V01 pasted into a zone holding V01 and V02 becomes V03.
        """
        source_zone, source = self._find_shutter(shutter_id)
        target = source_zone if zone_id is None else self._find_zone(zone_id)[1]

        name = _unique_copy_name(source.name, [s.name for s in target.shutters])
        return self.create_shutter(
            target.id,
            name=name,
            type=source.type,
            reference_flow=source.reference_flow,
            measured_flow=0.0,
            remarks=source.remarks,
        )

    # ------------------------------------------------------------------ #
    #  Favorites
    # ------------------------------------------------------------------ #

    def get_favorites(self, level: str) -> List[str]:
        return list(self._favorites.for_level(_check_level(level)))

    def is_favorite(self, level: str, entity_id: str) -> bool:
        return entity_id in self._favorites.for_level(_check_level(level))

    def set_favorites(self, level: str, ids: Iterable[str]) -> List[str]:
        """
        Replace the favorites of one level.

        Raises:
            NotFoundError: If an id does not exist at that level
        """
        key = FAVORITE_KEYS[_check_level(level)]
        ids = list(dict.fromkeys(ids))
        for entity_id in ids:
            self._locate(level, entity_id)

        with self._mutation():
            setattr(self._favorites, key, ids)
        return list(ids)

    def toggle_favorite(self, level: str, entity_id: str) -> bool:
        """Flip the favorite flag of an entity. Returns the new state."""
        self._locate(_check_level(level), entity_id)
        favorites = self._favorites.for_level(level)

        with self._mutation():
            if entity_id in favorites:
                favorites.remove(entity_id)
                marked = False
            else:
                favorites.append(entity_id)
                marked = True
        return marked

    # ------------------------------------------------------------------ #
    #  Quick-calc history
    # ------------------------------------------------------------------ #

    def record_quick_calc(self, reference_flow: float, measured_flow: float) -> QuickCalcEntry:
        """Classify a standalone measurement and keep it in the history."""
        result = classify(reference_flow, measured_flow)
        entry = QuickCalcEntry(
            id=self._new_id("quick_calc"),
            reference_flow=float(reference_flow),
            measured_flow=float(measured_flow),
            deviation=result.deviation,
            status=result.status,
            color=result.color,
            timestamp=utc_now(),
        )
        with self._mutation():
            self._history.insert(0, entry)
            del self._history[QUICK_CALC_HISTORY_SIZE:]
        return copy.deepcopy(entry)

    def quick_calc_history(self) -> List[QuickCalcEntry]:
        """Most recent first."""
        return copy.deepcopy(self._history)

    def clear_quick_calc_history(self) -> None:
        with self._mutation():
            self._history.clear()

    # ------------------------------------------------------------------ #
    #  Notes
    # ------------------------------------------------------------------ #

    def create_note(self, title: Optional[str] = None, content: str = "") -> Note:
        """
        Create a site note at the end of the note list.

        A blank title is replaced by "Untitled note N", N counting the
        untitled notes already present.

        Raises:
            ValueError: If title or content is not text
        """
        if title is not None and not isinstance(title, str):
            raise ValueError(f"note title must be text, got {title!r}")
        title = (title or "").strip() or self._untitled_title()
        fields = {"title": title, "content": content}
        _check_note(fields)

        now = utc_now()
        note = Note(id=self._new_id(LEVEL_NOTE), created_at=now, updated_at=now, **fields)
        with self._mutation():
            self._notes.append(note)

        logger.info("Note created: %s (%s)", note.title, note.id)
        return copy.deepcopy(note)

    def update_note(self, note_id: str, updates: Dict[str, Any]) -> Note:
        note = self._find_note(note_id)
        merged = self._merge(LEVEL_NOTE, note, updates)
        _check_note(merged)

        with self._mutation():
            _apply(note, merged)
        return copy.deepcopy(note)

    def delete_note(self, note_id: str) -> bool:
        for index, note in enumerate(self._notes):
            if note.id == note_id:
                with self._mutation():
                    del self._notes[index]
                logger.info("Note deleted: %s (%s)", note.title, note_id)
                return True
        return False

    def get_note(self, note_id: str) -> Optional[Note]:
        try:
            return copy.deepcopy(self._find_note(note_id))
        except NotFoundError:
            return None

    def list_notes(self) -> List[Note]:
        return copy.deepcopy(self._notes)

    def _untitled_title(self) -> str:
        titles = {note.title for note in self._notes}
        number = sum(1 for t in titles if t.startswith(UNTITLED_NOTE)) + 1
        while f"{UNTITLED_NOTE} {number}" in titles:
            number += 1
        return f"{UNTITLED_NOTE} {number}"

    # ------------------------------------------------------------------ #
    #  Whole store
    # ------------------------------------------------------------------ #

    def clear(self) -> None:
        """Remove every project, favorite, history entry and note."""
        with self._mutation():
            self._projects.clear()
            for key in FAVORITE_KEYS.values():
                setattr(self._favorites, key, [])
            self._history.clear()
            self._notes.clear()
        logger.info("All audit data cleared")

    def snapshot(self) -> Snapshot:
        return copy.deepcopy(
            Snapshot(
                projects=self._projects,
                favorites=self._favorites,
                quick_calc_history=self._history,
                notes=self._notes,
            )
        )

    def iter_projects(self) -> Iterator[Project]:
        """Live traversal for read-side helpers; do not mutate what it yields."""
        return iter(self._projects)

    # ------------------------------------------------------------------ #
    #  Lookup
    # ------------------------------------------------------------------ #

    def _find_project(self, project_id: str) -> Project:
        for project in self._projects:
            if project.id == project_id:
                return project
        raise NotFoundError(LEVEL_PROJECT, project_id)

    def _find_building(self, building_id: str) -> Tuple[Project, Building]:
        for project in self._projects:
            for building in project.buildings:
                if building.id == building_id:
                    return project, building
        raise NotFoundError(LEVEL_BUILDING, building_id)

    def _find_zone(self, zone_id: str) -> Tuple[Building, FunctionalZone]:
        for building in self._iter_buildings():
            for zone in building.functional_zones:
                if zone.id == zone_id:
                    return building, zone
        raise NotFoundError(LEVEL_ZONE, zone_id)

    def _find_shutter(self, shutter_id: str) -> Tuple[FunctionalZone, Shutter]:
        for zone in self._iter_zones():
            for shutter in zone.shutters:
                if shutter.id == shutter_id:
                    return zone, shutter
        raise NotFoundError(LEVEL_SHUTTER, shutter_id)

    def _find_note(self, note_id: str) -> Note:
        for note in self._notes:
            if note.id == note_id:
                return note
        raise NotFoundError(LEVEL_NOTE, note_id)

    def _locate(self, level: str, entity_id: str):
        finders = {
            LEVEL_PROJECT: self._find_project,
            LEVEL_BUILDING: self._find_building,
            LEVEL_ZONE: self._find_zone,
            LEVEL_SHUTTER: self._find_shutter,
        }
        return finders[level](entity_id)

    def _iter_buildings(self) -> Iterator[Building]:
        for project in self._projects:
            yield from project.buildings

    def _iter_zones(self) -> Iterator[FunctionalZone]:
        for building in self._iter_buildings():
            yield from building.functional_zones

    def _all_ids(self) -> set:
        ids = set()
        for project in self._projects:
            ids.update(_subtree_ids(project))
        ids.update(entry.id for entry in self._history)
        ids.update(note.id for note in self._notes)
        return ids

    # ------------------------------------------------------------------ #
    #  Mutation helpers
    # ------------------------------------------------------------------ #

    @contextmanager
    def _mutation(self):
        """Persist the state changed in the block, restoring it if the save fails."""
        backup = (
            copy.deepcopy(self._projects),
            copy.deepcopy(self._favorites),
            copy.deepcopy(self._history),
            copy.deepcopy(self._notes),
        )
        yield
        try:
            self.adapter.save(self._projects, self._favorites, self._history, self._notes)
        except PersistenceError:
            # Restore in place so references held by callers of iter_projects stay valid
            self._projects[:] = backup[0]
            self._favorites.__dict__.update(backup[1].__dict__)
            self._history[:] = backup[2]
            self._notes[:] = backup[3]
            logger.error("Mutation rolled back: snapshot could not be saved")
            raise

    def _merge(self, level: str, entity, updates: Dict[str, Any]) -> Dict[str, Any]:
        editable = EDITABLE_FIELDS[level]
        unknown = sorted(set(updates) - set(editable))
        if unknown:
            raise ValueError(f"Cannot update {level} field(s): {', '.join(unknown)}")

        for key, value in updates.items():
            if value is None and key not in OPTIONAL_FIELDS:
                raise ValueError(f"{level} field {key} cannot be cleared")

        merged = {key: getattr(entity, key) for key in editable}
        merged.update(updates)
        return merged

    def _new_id(self, level: str) -> str:
        existing = self._all_ids()
        while True:
            candidate = f"{ID_PREFIXES[level]}-{uuid.uuid4().hex[:12].upper()}"
            if candidate not in existing:
                return candidate


def _apply(entity, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(entity, key, value)
    entity.updated_at = utc_now()


def _check_level(level: str) -> str:
    if level not in FAVORITE_KEYS:
        raise ValueError(f"Unknown level: {level!r}")
    return level


def _check_name(level: str, name: Any) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"{level} name must not be empty")


def _check_text(level: str, key: str, value: Any) -> None:
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{level} {key} must be text, got {value!r}")


def _check_project(fields: Dict[str, Any]) -> None:
    _check_name(LEVEL_PROJECT, fields["name"])
    _check_text(LEVEL_PROJECT, "city", fields.get("city"))
    for key in ("start_date", "end_date"):
        value = fields.get(key)
        # datetime is a date subclass; only calendar days are stored
        if value is not None and (not isinstance(value, date) or isinstance(value, datetime)):
            raise ValueError(f"project {key} must be a calendar date, got {value!r}")

    start_date, end_date = fields.get("start_date"), fields.get("end_date")
    if start_date is not None and end_date is not None:
        if end_date <= start_date:
            raise ValueError("project end_date must be after start_date")


def _check_described(level: str, fields: Dict[str, Any]) -> None:
    _check_name(level, fields["name"])
    _check_text(level, "description", fields.get("description"))


def _check_shutter(fields: Dict[str, Any]) -> None:
    _check_name(LEVEL_SHUTTER, fields["name"])
    _check_text(LEVEL_SHUTTER, "remarks", fields.get("remarks"))
    if fields["type"] not in SHUTTER_TYPES:
        raise ValueError(f"shutter type must be one of {SHUTTER_TYPES}, got {fields['type']!r}")

    for key in ("reference_flow", "measured_flow"):
        value = fields[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"shutter {key} must be a number, got {value!r}")
        if not math.isfinite(value) or value < 0:
            raise ValueError(f"shutter {key} must be a finite number >= 0, got {value}")


def _check_note(fields: Dict[str, Any]) -> None:
    if not isinstance(fields["title"], str) or not fields["title"].strip():
        raise ValueError("note title must not be empty")
    if not isinstance(fields["content"], str):
        raise ValueError(f"note content must be text, got {fields['content']!r}")


def _with_float_flows(fields: Dict[str, Any]) -> Dict[str, Any]:
    fields = dict(fields)
    fields["reference_flow"] = float(fields["reference_flow"])
    fields["measured_flow"] = float(fields["measured_flow"])
    return fields


def _subtree_ids(entity) -> List[str]:
    ids = [entity.id]
    for child in getattr(entity, "buildings", None) or []:
        ids.extend(_subtree_ids(child))
    for child in getattr(entity, "functional_zones", None) or []:
        ids.extend(_subtree_ids(child))
    for child in getattr(entity, "shutters", None) or []:
        ids.append(child.id)
    return ids


_TRAILING_DIGITS = re.compile(r"\d+$")


def _unique_copy_name(name: str, existing: List[str]) -> str:
    if name not in existing:
        return name

    base = _TRAILING_DIGITS.sub("", name)
    counter = 1
    while True:
        candidate = f"{base}{counter:02d}"
        if candidate not in existing:
            return candidate
        counter += 1


__all__ = ["EntityStore", "QUICK_CALC_HISTORY_SIZE"]
