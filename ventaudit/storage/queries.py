"""
Read-side helpers over an EntityStore: search, lookup by id, counts and
compliance summaries.
"""

import copy
from typing import Dict, Iterator, List, Optional

from algorithms.compliance import ComplianceSummary, summarize

from .errors import NotFoundError
from .models import (
    LEVEL_BUILDING,
    LEVEL_PROJECT,
    LEVEL_SHUTTER,
    LEVEL_ZONE,
    NodeLookup,
    Project,
    SearchResult,
    Shutter,
)


class QueryFacade:
    """Read-only views of the store's tree."""

    def __init__(self, store):
        self.store = store

    def search_shutters(self, query: str) -> Iterator[SearchResult]:
        """
        Lazily yield shutters matching every word of the query.

        Each word is matched case-insensitively as a substring of the shutter
        name, zone name, building name, project name, project city and shutter
        remarks. Results follow Project -> Building -> Zone -> Shutter
        insertion order. A blank query yields nothing. Each result is a detached
        copy; edit through the store.

        Args:
            query: Free-text search, e.g. "zf01" or "tower v0"

        Returns:
            Generator of SearchResult; call again to restart
        """
        words = query.lower().split()
        if not words:
            return

        for project in self.store.iter_projects():
            for building in project.buildings:
                for zone in building.functional_zones:
                    for shutter in zone.shutters:
                        text = " ".join([
                            shutter.name,
                            zone.name,
                            building.name,
                            project.name,
                            project.city or "",
                            shutter.remarks or "",
                        ]).lower()
                        if all(word in text for word in words):
                            yield copy.deepcopy(SearchResult(
                                shutter=shutter,
                                zone=zone,
                                building=building,
                                project=project,
                            ))

    def find_by_id(self, entity_id: str) -> Optional[NodeLookup]:
        """
        Resolve an id at any level together with its ancestors (root first).

        Returns:
            Detached NodeLookup or None if no entity has this id
        """
        node = self._locate(entity_id)
        return copy.deepcopy(node) if node is not None else None

    def _locate(self, entity_id: str) -> Optional[NodeLookup]:
        for project in self.store.iter_projects():
            if project.id == entity_id:
                return NodeLookup(LEVEL_PROJECT, project, [])
            for building in project.buildings:
                if building.id == entity_id:
                    return NodeLookup(LEVEL_BUILDING, building, [project])
                for zone in building.functional_zones:
                    if zone.id == entity_id:
                        return NodeLookup(LEVEL_ZONE, zone, [project, building])
                    for shutter in zone.shutters:
                        if shutter.id == entity_id:
                            return NodeLookup(LEVEL_SHUTTER, shutter, [project, building, zone])
        return None

    def counts(self) -> Dict[str, int]:
        """Entity counts per level."""
        counts = {"projects": 0, "buildings": 0, "zones": 0, "shutters": 0}
        for project in self.store.iter_projects():
            counts["projects"] += 1
            for building in project.buildings:
                counts["buildings"] += 1
                for zone in building.functional_zones:
                    counts["zones"] += 1
                    counts["shutters"] += len(zone.shutters)
        return counts

    def shutters_under(self, entity_id: Optional[str] = None) -> List[Shutter]:
        """
        Every shutter below a node, in traversal order, as detached copies.

        Raises:
            NotFoundError: If entity_id is given and unknown
        """
        return copy.deepcopy(self._shutters(entity_id))

    def compliance_summary(self, entity_id: Optional[str] = None) -> ComplianceSummary:
        """Compliance tier counts below a node (whole store when None)."""
        return summarize(
            (s.reference_flow, s.measured_flow) for s in self._shutters(entity_id)
        )

    def _shutters(self, entity_id: Optional[str]) -> List[Shutter]:
        if entity_id is None:
            return [s for p in self.store.iter_projects() for s in _project_shutters(p)]

        node = self._locate(entity_id)
        if node is None:
            raise NotFoundError("entity", entity_id)

        if node.level == LEVEL_PROJECT:
            return list(_project_shutters(node.entity))
        if node.level == LEVEL_BUILDING:
            return [s for z in node.entity.functional_zones for s in z.shutters]
        if node.level == LEVEL_ZONE:
            return list(node.entity.shutters)
        return [node.entity]

    @staticmethod
    def breadcrumb(project: Project) -> str:
        return project.breadcrumb


def _project_shutters(project: Project) -> Iterator[Shutter]:
    for building in project.buildings:
        for zone in building.functional_zones:
            yield from zone.shutters


__all__ = ["QueryFacade"]
