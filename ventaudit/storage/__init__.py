"""
Audit Record Storage

Hierarchical Project -> Building -> FunctionalZone -> Shutter store with
snapshot persistence and read-side queries.
"""

from .entity_store import EntityStore
from .errors import NotFoundError, PersistenceError, StorageError
from .models import (
    Building,
    Favorites,
    FunctionalZone,
    NodeLookup,
    Note,
    Project,
    QuickCalcEntry,
    SearchResult,
    Shutter,
    Snapshot,
)
from .persistence import JsonSnapshotAdapter
from .queries import QueryFacade

__all__ = [
    "EntityStore",
    "JsonSnapshotAdapter",
    "QueryFacade",
    "NotFoundError",
    "PersistenceError",
    "StorageError",
    "Building",
    "Favorites",
    "FunctionalZone",
    "NodeLookup",
    "Note",
    "Project",
    "QuickCalcEntry",
    "SearchResult",
    "Shutter",
    "Snapshot",
]
