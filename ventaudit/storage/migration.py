"""
Snapshot Migration

Upgrades previously saved snapshots to the current schema and hydrates them
into model objects. Every record goes through ``normalize_record`` so future
shape changes stay in one place.

Schema versions:
    1 - bare JSON list of projects, camelCase keys, JavaScript date strings
        (written by the earlier mobile app)
    2 - envelope with ``schema_version``, snake_case keys, favorites,
        quick-calc history and site notes
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jsonschema

from algorithms.compliance import classify

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
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
LEVEL_HISTORY = "quick_calc"

_OPTIONAL_STRING = {"type": ["string", "null"]}
_NON_BLANK = {"type": "string", "pattern": r"\S"}
_FLOW = {"type": "number", "minimum": 0}

RECORD_SCHEMAS = {
    LEVEL_PROJECT: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Project record",
        "type": "object",
        "required": ["id", "name"],
        "properties": {
            "id": _NON_BLANK,
            "name": _NON_BLANK,
            "city": _OPTIONAL_STRING,
            "start_date": _OPTIONAL_STRING,
            "end_date": _OPTIONAL_STRING,
            "created_at": _OPTIONAL_STRING,
            "updated_at": _OPTIONAL_STRING,
            "buildings": {"type": ["array", "null"]},
        },
    },
    LEVEL_BUILDING: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Building record",
        "type": "object",
        "required": ["id", "name"],
        "properties": {
            "id": _NON_BLANK,
            "project_id": _OPTIONAL_STRING,
            "name": _NON_BLANK,
            "description": _OPTIONAL_STRING,
            "created_at": _OPTIONAL_STRING,
            "updated_at": _OPTIONAL_STRING,
            "functional_zones": {"type": ["array", "null"]},
        },
    },
    LEVEL_ZONE: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Functional zone record",
        "type": "object",
        "required": ["id", "name"],
        "properties": {
            "id": _NON_BLANK,
            "building_id": _OPTIONAL_STRING,
            "name": _NON_BLANK,
            "description": _OPTIONAL_STRING,
            "created_at": _OPTIONAL_STRING,
            "updated_at": _OPTIONAL_STRING,
            "shutters": {"type": ["array", "null"]},
        },
    },
    LEVEL_SHUTTER: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Shutter record",
        "type": "object",
        "required": ["id", "name", "type", "reference_flow", "measured_flow"],
        "properties": {
            "id": _NON_BLANK,
            "zone_id": _OPTIONAL_STRING,
            "name": _NON_BLANK,
            "type": {"type": "string", "enum": list(SHUTTER_TYPES)},
            "reference_flow": _FLOW,
            "measured_flow": _FLOW,
            "remarks": _OPTIONAL_STRING,
            "created_at": _OPTIONAL_STRING,
            "updated_at": _OPTIONAL_STRING,
        },
    },
    LEVEL_NOTE: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Note record",
        "type": "object",
        "required": ["id", "title"],
        "properties": {
            "id": _NON_BLANK,
            "title": _NON_BLANK,
            "content": _OPTIONAL_STRING,
            "created_at": _OPTIONAL_STRING,
            "updated_at": _OPTIONAL_STRING,
        },
    },
    LEVEL_HISTORY: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Quick calculation record",
        "type": "object",
        "required": ["id", "reference_flow", "measured_flow"],
        "properties": {
            "id": _NON_BLANK,
            "reference_flow": _FLOW,
            "measured_flow": _FLOW,
            "timestamp": _OPTIONAL_STRING,
        },
    },
}

_VALIDATORS = {
    level: jsonschema.Draft7Validator(schema)
    for level, schema in RECORD_SCHEMAS.items()
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class RecordError(ValueError):
    """A single stored record cannot be upgraded to the current schema."""


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts JavaScript ``Date.toJSON()`` output ("2024-03-01T08:30:00.000Z").
    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise RecordError(f"invalid timestamp: {value!r}")
    else:
        raise RecordError(f"invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a calendar date.

    Full timestamps are local midnights serialized in UTC, e.g. 1 March picked
    on a UTC+1 device is stored as "2024-02-29T23:00:00.000Z". They map to the
    nearest calendar day, which is exact for offsets from UTC-11 to UTC+12.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value.strip()) == 10:
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise RecordError(f"invalid date: {value!r}")
    return (parse_timestamp(value) + timedelta(hours=12)).date()


def upgrade_snapshot(raw: Any) -> Dict[str, Any]:
    """
    Bring a decoded snapshot document to the current envelope shape.

    Args:
        raw: Decoded JSON document of any known version

    Returns:
        Dictionary with schema_version, projects, favorites, quick_calc_history, notes

    Raises:
        RecordError: If the document itself is not a known snapshot shape
    """
    if isinstance(raw, list):
        logger.info("Upgrading legacy snapshot (version 1, %d projects)", len(raw))
        return {
            "schema_version": SCHEMA_VERSION,
            "projects": raw,
            "favorites": {},
            "quick_calc_history": [],
            "notes": [],
        }

    if not isinstance(raw, dict):
        raise RecordError(f"unrecognized snapshot document: {type(raw).__name__}")

    version = raw.get("schema_version", 1)
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise RecordError(f"unsupported snapshot schema version: {version!r}")

    return {
        "schema_version": SCHEMA_VERSION,
        "projects": raw.get("projects") or [],
        "favorites": raw.get("favorites") or {},
        "quick_calc_history": raw.get("quick_calc_history") or [],
        "notes": raw.get("notes") or [],
    }


def normalize_record(level: str, raw: Any) -> Dict[str, Any]:
    """
    Upgrade one stored record to the current schema.

    Renames legacy camelCase keys, validates the record against its level's
    schema and parses date fields into date values. Child collections are
    returned raw (defaulting to empty) for the caller to normalize one by one.

    Args:
        level: project, building, zone, shutter, note or quick_calc
        raw: Stored record

    Returns:
        Normalized record dictionary

    Raises:
        RecordError: If the record is not usable
    """
    if not isinstance(raw, dict):
        raise RecordError(f"{level} record is not an object: {raw!r}")

    record = {_snake_case(key): value for key, value in raw.items()}

    errors = list(_VALIDATORS[level].iter_errors(record))
    if errors:
        details = "; ".join(
            f"{error.json_path}: {error.message}" for error in errors[:5]
        )
        raise RecordError(f"{level} record {record.get('id')!r} is invalid: {details}")

    now = utc_now()
    if level == LEVEL_HISTORY:
        record["timestamp"] = parse_timestamp(record.get("timestamp")) or now
        return record

    record["created_at"] = parse_timestamp(record.get("created_at")) or now
    record["updated_at"] = parse_timestamp(record.get("updated_at")) or record["created_at"]

    if level == LEVEL_PROJECT:
        record["start_date"] = parse_date(record.get("start_date"))
        record["end_date"] = parse_date(record.get("end_date"))
        record["buildings"] = record.get("buildings") or []
    elif level == LEVEL_BUILDING:
        record["functional_zones"] = record.get("functional_zones") or []
    elif level == LEVEL_ZONE:
        record["shutters"] = record.get("shutters") or []
    return record


class SnapshotMigrator:
    """
    Hydrates an upgraded snapshot into model objects.

    Corrupt records are skipped with a warning instead of failing the load;
    ``skipped`` and ``repaired`` count what was dropped or fixed.
    """

    def __init__(self):
        self.skipped = 0
        self.repaired = 0
        self._seen_ids = set()

    def migrate(self, raw: Any) -> Snapshot:
        document = upgrade_snapshot(raw)

        projects = []
        for raw_project in _as_list(document["projects"], "projects"):
            project = self._project(raw_project)
            if project is not None:
                projects.append(project)

        history = []
        for raw_entry in _as_list(document["quick_calc_history"], "quick_calc_history"):
            entry = self._history_entry(raw_entry)
            if entry is not None:
                history.append(entry)

        notes = []
        for raw_note in _as_list(document["notes"], "notes"):
            note = self._note(raw_note)
            if note is not None:
                notes.append(note)

        favorites = self._favorites(document["favorites"], projects)

        if self.skipped or self.repaired:
            logger.warning(
                "Snapshot loaded with %d skipped and %d repaired records",
                self.skipped, self.repaired,
            )
        return Snapshot(
            projects=projects,
            favorites=favorites,
            quick_calc_history=history,
            notes=notes,
        )

    # ------------------------------------------------------------------ #
    #  Levels
    # ------------------------------------------------------------------ #

    def _project(self, raw) -> Optional[Project]:
        record = self._normalize(LEVEL_PROJECT, raw)
        if record is None:
            return None

        start_date, end_date = record["start_date"], record["end_date"]
        if start_date and end_date and end_date <= start_date:
            logger.warning(
                "Project %s: end date %s is not after start date %s, clearing end date",
                record["id"], end_date, start_date,
            )
            end_date = None
            self.repaired += 1

        project = Project(
            id=record["id"],
            name=record["name"],
            city=record.get("city"),
            start_date=start_date,
            end_date=end_date,
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )
        for raw_building in _as_list(record["buildings"], f"project {project.id} buildings"):
            building = self._building(raw_building, project.id)
            if building is not None:
                project.buildings.append(building)
        return project

    def _building(self, raw, project_id: str) -> Optional[Building]:
        record = self._normalize(LEVEL_BUILDING, raw)
        if record is None:
            return None

        building = Building(
            id=record["id"],
            project_id=self._owner(LEVEL_BUILDING, record, "project_id", project_id),
            name=record["name"],
            description=record.get("description"),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )
        for raw_zone in _as_list(record["functional_zones"], f"building {building.id} zones"):
            zone = self._zone(raw_zone, building.id)
            if zone is not None:
                building.functional_zones.append(zone)
        return building

    def _zone(self, raw, building_id: str) -> Optional[FunctionalZone]:
        record = self._normalize(LEVEL_ZONE, raw)
        if record is None:
            return None

        zone = FunctionalZone(
            id=record["id"],
            building_id=self._owner(LEVEL_ZONE, record, "building_id", building_id),
            name=record["name"],
            description=record.get("description"),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )
        for raw_shutter in _as_list(record["shutters"], f"zone {zone.id} shutters"):
            shutter = self._shutter(raw_shutter, zone.id)
            if shutter is not None:
                zone.shutters.append(shutter)
        return zone

    def _shutter(self, raw, zone_id: str) -> Optional[Shutter]:
        record = self._normalize(LEVEL_SHUTTER, raw)
        if record is None:
            return None

        return Shutter(
            id=record["id"],
            zone_id=self._owner(LEVEL_SHUTTER, record, "zone_id", zone_id),
            name=record["name"],
            type=record["type"],
            reference_flow=float(record["reference_flow"]),
            measured_flow=float(record["measured_flow"]),
            remarks=record.get("remarks"),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def _note(self, raw) -> Optional[Note]:
        record = self._normalize(LEVEL_NOTE, raw)
        if record is None:
            return None

        return Note(
            id=record["id"],
            title=record["title"],
            content=record.get("content") or "",
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def _history_entry(self, raw) -> Optional[QuickCalcEntry]:
        try:
            record = normalize_record(LEVEL_HISTORY, raw)
        except RecordError as e:
            logger.warning("Skipping quick calculation record: %s", e)
            self.skipped += 1
            return None

        # Derived fields are recomputed, not read back
        result = classify(float(record["reference_flow"]), float(record["measured_flow"]))
        return QuickCalcEntry(
            id=record["id"],
            reference_flow=float(record["reference_flow"]),
            measured_flow=float(record["measured_flow"]),
            deviation=result.deviation,
            status=result.status,
            color=result.color,
            timestamp=record["timestamp"],
        )

    def _favorites(self, raw, projects: List[Project]) -> Favorites:
        known = {level: set() for level in FAVORITE_KEYS}
        for project in projects:
            known[LEVEL_PROJECT].add(project.id)
            for building in project.buildings:
                known[LEVEL_BUILDING].add(building.id)
                for zone in building.functional_zones:
                    known[LEVEL_ZONE].add(zone.id)
                    known[LEVEL_SHUTTER].update(s.id for s in zone.shutters)

        favorites = Favorites()
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed favorites: %r", raw)
            return favorites

        for level, key in FAVORITE_KEYS.items():
            ids = raw.get(key) or []
            if not isinstance(ids, list):
                logger.warning("Ignoring malformed %s favorites: %r", key, ids)
                continue
            kept = []
            for favorite_id in ids:
                if favorite_id in known[level] and favorite_id not in kept:
                    kept.append(favorite_id)
                else:
                    logger.debug("Dropping stale %s favorite %r", level, favorite_id)
            setattr(favorites, key, kept)
        return favorites

    # ------------------------------------------------------------------ #
    #  Helpers
    # ------------------------------------------------------------------ #

    def _normalize(self, level: str, raw) -> Optional[Dict[str, Any]]:
        try:
            record = normalize_record(level, raw)
        except RecordError as e:
            logger.warning("Skipping %s record: %s", level, e)
            self.skipped += 1
            return None

        if record["id"] in self._seen_ids:
            logger.warning("Skipping %s record with duplicate id %r", level, record["id"])
            self.skipped += 1
            return None
        self._seen_ids.add(record["id"])
        return record

    def _owner(self, level: str, record: Dict[str, Any], key: str, owner_id: str) -> str:
        stored = record.get(key)
        if stored is not None and stored != owner_id:
            logger.warning(
                "%s %s: %s %r does not match owner %r, repairing",
                level, record["id"], key, stored, owner_id,
            )
            self.repaired += 1
        return owner_id


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _as_list(value, what: str) -> List[Any]:
    if isinstance(value, list):
        return value
    logger.warning("Ignoring %s: expected a list, got %s", what, type(value).__name__)
    return []
