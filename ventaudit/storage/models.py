"""
Audit record models: Project, Building, FunctionalZone, Shutter.

Children are owned by value in their parent's list. Back-references
(project_id, building_id, zone_id) are plain ids used for lookup only.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from algorithms.compliance import ComplianceResult, classify


SHUTTER_HIGH = "high"
SHUTTER_LOW = "low"
SHUTTER_TYPES = (SHUTTER_HIGH, SHUTTER_LOW)

SHUTTER_TYPE_LABELS = {
    SHUTTER_HIGH: "High shutter",
    SHUTTER_LOW: "Low shutter",
}

LEVEL_PROJECT = "project"
LEVEL_BUILDING = "building"
LEVEL_ZONE = "zone"
LEVEL_SHUTTER = "shutter"
LEVELS = (LEVEL_PROJECT, LEVEL_BUILDING, LEVEL_ZONE, LEVEL_SHUTTER)
LEVEL_NOTE = "note"

UNTITLED_NOTE = "Untitled note"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Shutter:
    """Leaf measurement record: one ventilation shutter (damper)."""

    id: str
    zone_id: str
    name: str
    type: str
    reference_flow: float
    measured_flow: float
    created_at: datetime
    updated_at: datetime
    remarks: Optional[str] = None

    @property
    def compliance(self) -> ComplianceResult:
        """Recomputed on every read."""
        return classify(self.reference_flow, self.measured_flow)

    @property
    def type_label(self) -> str:
        return SHUTTER_TYPE_LABELS.get(self.type, self.type)


@dataclass
class FunctionalZone:
    """Functional zone of a building, owning its shutters."""

    id: str
    building_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    shutters: List[Shutter] = field(default_factory=list)


@dataclass
class Building:
    """Building of a project, owning its functional zones."""

    id: str
    project_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    functional_zones: List[FunctionalZone] = field(default_factory=list)

    def get_total_shutters(self) -> int:
        return sum(len(zone.shutters) for zone in self.functional_zones)


@dataclass
class Project:
    """Audit project, root of the hierarchy."""

    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    city: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    buildings: List[Building] = field(default_factory=list)

    @property
    def breadcrumb(self) -> str:
        """Screen label: "<name> • <city>" when a city is set."""
        if self.city:
            return f"{self.name} • {self.city}"
        return self.name

    def get_total_shutters(self) -> int:
        return sum(building.get_total_shutters() for building in self.buildings)


@dataclass
class Note:
    """Free-text site note, independent of the audit tree."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    content: str = ""


@dataclass
class SearchResult:
    """A matching shutter with its owning chain."""

    shutter: Shutter
    zone: FunctionalZone
    building: Building
    project: Project


@dataclass
class NodeLookup:
    """An entity at any level plus its ancestors, root first."""

    level: str
    entity: object
    ancestors: List[object] = field(default_factory=list)

    @property
    def project(self) -> Project:
        if self.level == LEVEL_PROJECT:
            return self.entity
        return self.ancestors[0]


@dataclass
class QuickCalcEntry:
    """One standalone classification kept in the quick-calc history."""

    id: str
    reference_flow: float
    measured_flow: float
    deviation: float
    status: str
    color: str
    timestamp: datetime


@dataclass
class Favorites:
    """Favorite ids per level, in the order they were marked."""

    projects: List[str] = field(default_factory=list)
    buildings: List[str] = field(default_factory=list)
    zones: List[str] = field(default_factory=list)
    shutters: List[str] = field(default_factory=list)

    def for_level(self, level: str) -> List[str]:
        return getattr(self, FAVORITE_KEYS[level])

    def discard(self, ids) -> None:
        """Remove every given id from all levels."""
        ids = set(ids)
        for key in FAVORITE_KEYS.values():
            setattr(self, key, [i for i in getattr(self, key) if i not in ids])

    def to_dict(self) -> Dict[str, List[str]]:
        return {key: list(getattr(self, key)) for key in FAVORITE_KEYS.values()}


FAVORITE_KEYS = {
    LEVEL_PROJECT: "projects",
    LEVEL_BUILDING: "buildings",
    LEVEL_ZONE: "zones",
    LEVEL_SHUTTER: "shutters",
}


@dataclass
class Snapshot:
    """Complete persisted state at one point in time."""

    projects: List[Project] = field(default_factory=list)
    favorites: Favorites = field(default_factory=Favorites)
    quick_calc_history: List[QuickCalcEntry] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
