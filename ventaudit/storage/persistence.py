"""
Snapshot Persistence

Durable storage of the complete audit tree as a single JSON snapshot file.
The whole snapshot is rewritten on every save; there are no partial writes.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import PersistenceError
from .migration import SCHEMA_VERSION, RecordError, SnapshotMigrator
from .models import (
    Building,
    Favorites,
    FunctionalZone,
    Note,
    Project,
    QuickCalcEntry,
    Shutter,
    Snapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_PATH = Path.home() / ".ventaudit" / "projects.json"


class JsonSnapshotAdapter:
    """
    Reads and writes the snapshot file.

    Writes go to a temporary file in the same directory which is fsync'ed and
    then atomically renamed over the target, so a crash leaves either the old
    or the new snapshot on disk.
    """

    def __init__(self, storage_path: Optional[str] = None, write_retries: int = 1):
        """
        Initialize the adapter.

        Args:
            storage_path: Snapshot file (default: ~/.ventaudit/projects.json)
            write_retries: Extra attempts after a failed write
        """
        if storage_path:
            self.storage_path = Path(storage_path).expanduser()
        else:
            self.storage_path = DEFAULT_STORAGE_PATH

        self.write_retries = max(0, int(write_retries))
        self._snapshot = Snapshot()
        self._last_payload = None
        self._initialized = False

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        """Load the existing snapshot, or create an empty one. Idempotent."""
        if self._initialized:
            return

        if self.storage_path.exists():
            self._snapshot = self._read()
        else:
            logger.info("No snapshot at %s, creating an empty one", self.storage_path)
            self._snapshot = Snapshot()
            self._write(self._encode(self._snapshot))

        self._initialized = True

    def load(self) -> List[Project]:
        """Return the stored projects in order."""
        return self.load_snapshot().projects

    def load_snapshot(self) -> Snapshot:
        """Return the complete stored state (projects, favorites, history)."""
        self.initialize()
        self._snapshot = self._read() if self.storage_path.exists() else Snapshot()
        return self._snapshot

    def save(self, projects: List[Project],
             favorites: Optional[Favorites] = None,
             history: Optional[List[QuickCalcEntry]] = None,
             notes: Optional[List[Note]] = None) -> None:
        """
        Durably write a new snapshot.

        Args:
            projects: Complete ordered project list
            favorites: Favorites to store (None keeps the last known ones)
            history: Quick-calc history to store (None keeps the last known one)
            notes: Site notes to store (None keeps the last known ones)

        Raises:
            PersistenceError: If the snapshot could not be committed
        """
        snapshot = Snapshot(
            projects=projects,
            favorites=favorites if favorites is not None else self._snapshot.favorites,
            quick_calc_history=history if history is not None else self._snapshot.quick_calc_history,
            notes=notes if notes is not None else self._snapshot.notes,
        )
        payload = self._encode(snapshot)

        if payload == self._last_payload:
            logger.debug("Snapshot unchanged, skipping write")
            self._snapshot = snapshot
            return

        self._write(payload)
        self._snapshot = snapshot
        logger.info("Snapshot saved: %d projects", len(projects))

    def clear(self) -> None:
        """Replace the stored state with an empty snapshot."""
        self.save([], Favorites(), [], [])

    def storage_info(self) -> Dict[str, Any]:
        """
        Get storage statistics.

        Returns:
            Dictionary with project and shutter counts and file size
        """
        projects = self._snapshot.projects
        size = self.storage_path.stat().st_size if self.storage_path.exists() else 0

        return {
            "projects_count": len(projects),
            "total_shutters": sum(p.get_total_shutters() for p in projects),
            "notes_count": len(self._snapshot.notes),
            "size_bytes": size,
            "storage_size": f"{size / 1024:.2f} KB",
            "storage_path": str(self.storage_path),
        }

    # ------------------------------------------------------------------ #
    #  Disk access
    # ------------------------------------------------------------------ #

    def _read(self) -> Snapshot:
        try:
            with open(self.storage_path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise PersistenceError(f"Cannot read snapshot {self.storage_path}: {e}") from e

        if not text.strip():
            logger.warning("Snapshot %s is empty, starting from an empty tree", self.storage_path)
            return Snapshot()

        try:
            raw = json.loads(text)
            snapshot = SnapshotMigrator().migrate(raw)
        except (json.JSONDecodeError, RecordError) as e:
            raise PersistenceError(f"Corrupt snapshot {self.storage_path}: {e}") from e

        self._last_payload = text
        logger.info("Snapshot loaded from %s: %d projects", self.storage_path, len(snapshot.projects))
        return snapshot

    def _write(self, payload: str) -> None:
        attempts = self.write_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self._write_atomic(payload)
            except OSError as e:
                if attempt < attempts:
                    logger.warning("Snapshot write failed (attempt %d/%d): %s", attempt, attempts, e)
                    continue
                logger.error("Snapshot write failed after %d attempts: %s", attempts, e)
                raise PersistenceError(f"Cannot write snapshot {self.storage_path}: {e}") from e
            else:
                self._last_payload = payload
                return

    def _write_atomic(self, payload: str) -> None:
        directory = self.storage_path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.storage_path.name}.", suffix=".tmp", dir=str(directory)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.storage_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        _fsync_directory(directory)

    # ------------------------------------------------------------------ #
    #  Encoding
    # ------------------------------------------------------------------ #

    def _encode(self, snapshot: Snapshot) -> str:
        document = {
            "schema_version": SCHEMA_VERSION,
            "projects": [project_to_record(p) for p in snapshot.projects],
            "favorites": snapshot.favorites.to_dict(),
            "quick_calc_history": [history_to_record(h) for h in snapshot.quick_calc_history],
            "notes": [note_to_record(n) for n in snapshot.notes],
        }
        return json.dumps(document, indent=2, ensure_ascii=False)


def project_to_record(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "city": project.city,
        "start_date": _iso(project.start_date),
        "end_date": _iso(project.end_date),
        "created_at": _iso(project.created_at),
        "updated_at": _iso(project.updated_at),
        "buildings": [building_to_record(b) for b in project.buildings],
    }


def building_to_record(building: Building) -> Dict[str, Any]:
    return {
        "id": building.id,
        "project_id": building.project_id,
        "name": building.name,
        "description": building.description,
        "created_at": _iso(building.created_at),
        "updated_at": _iso(building.updated_at),
        "functional_zones": [zone_to_record(z) for z in building.functional_zones],
    }


def zone_to_record(zone: FunctionalZone) -> Dict[str, Any]:
    return {
        "id": zone.id,
        "building_id": zone.building_id,
        "name": zone.name,
        "description": zone.description,
        "created_at": _iso(zone.created_at),
        "updated_at": _iso(zone.updated_at),
        "shutters": [shutter_to_record(s) for s in zone.shutters],
    }


def shutter_to_record(shutter: Shutter) -> Dict[str, Any]:
    return {
        "id": shutter.id,
        "zone_id": shutter.zone_id,
        "name": shutter.name,
        "type": shutter.type,
        "reference_flow": shutter.reference_flow,
        "measured_flow": shutter.measured_flow,
        "remarks": shutter.remarks,
        "created_at": _iso(shutter.created_at),
        "updated_at": _iso(shutter.updated_at),
    }


def history_to_record(entry: QuickCalcEntry) -> Dict[str, Any]:
    # Deviation is not stored: infinity has no JSON form and it is derived
    return {
        "id": entry.id,
        "reference_flow": entry.reference_flow,
        "measured_flow": entry.measured_flow,
        "timestamp": _iso(entry.timestamp),
    }


def note_to_record(note: Note) -> Dict[str, Any]:
    return {
        "id": note.id,
        "title": note.title,
        "content": note.content,
        "created_at": _iso(note.created_at),
        "updated_at": _iso(note.updated_at),
    }


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _fsync_directory(directory: Path) -> None:
    # Not supported on every platform (e.g. Windows)
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


__all__ = ["JsonSnapshotAdapter", "DEFAULT_STORAGE_PATH"]
