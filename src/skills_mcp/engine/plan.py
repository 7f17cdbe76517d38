"""
Execution plan for skill workflow units.

ARCHITECTURAL DECISION: This module is intentionally SYNCHRONOUS.

Rationale:
- Pure in-memory graph algorithms (Kahn's algorithm, reverse-adjacency BFS)
- No I/O operations, external API calls, or database queries
- O(V + E) for leveling and for cascade lookups
- Used as a planning step before async dispatch

The orchestrator builds the plan once per run, persists only the level
assignment on each unit row, and rebuilds it when the top-level job runs.

Design Pattern:
    1. build_plan() → synchronous planning (levels + dependency maps)
    2. SkillExecutor.process_execution() → async level-by-level dispatch
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Collection, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import SkillExecutionError
from .models import WorkflowUnitInfo

logger = logging.getLogger(__name__)


class ExecutionLevel(BaseModel):
    """Units with no dependency relationship among them."""

    level: int
    units: list[WorkflowUnitInfo]


class ExecutionPlan(BaseModel):
    """Leveled DAG derived from a skill's units and dependency edges."""

    model_config = ConfigDict(frozen=True)

    levels: list[ExecutionLevel]
    unit_level_map: dict[str, int]
    dependency_map: dict[str, list[str]]
    dependents_map: dict[str, list[str]] = Field(default_factory=dict)
    total_units: int

    def units(self) -> list[WorkflowUnitInfo]:
        """All units in level order."""
        return [unit for level in self.levels for unit in level.units]

    def get_unit(self, unit_id: str) -> WorkflowUnitInfo | None:
        for unit in self.units():
            if unit.id == unit_id:
                return unit
        return None


def compute_levels(units: Sequence[WorkflowUnitInfo]) -> list[ExecutionLevel]:
    """
    Group units into levels that can be executed in parallel.

    level(u) = 0 when u has no dependencies, otherwise 1 + max(level(d)).

    Units are released with Kahn's algorithm. Any unit never released is part of
    a cycle, depends on a cycle, or depends on an unknown unit; all of them are
    reported together.

    Args:
        units: Workflow units with their dependency edges

    Returns:
        Levels sorted ascending; units inside a level keep input order

    Raises:
        SkillExecutionError: CIRCULAR_DEPENDENCY with the unresolved unit IDs
    """
    known = {unit.id for unit in units}
    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {unit.id: [] for unit in units}

    for unit in units:
        deps = list(dict.fromkeys(unit.dependency_ids))
        in_degree[unit.id] = len(deps)
        for dep in deps:
            if dep not in known:
                # Never released, so the unit ends up unresolved
                logger.warning(f"Unit '{unit.id}' depends on unknown unit '{dep}'")
                continue
            dependents[dep].append(unit.id)

    levels: dict[str, int] = {}
    queue = deque(unit.id for unit in units if in_degree[unit.id] == 0)
    for unit_id in queue:
        levels[unit_id] = 0

    while queue:
        current = queue.popleft()
        for dependent in dependents[current]:
            levels[dependent] = max(levels.get(dependent, 0), levels[current] + 1)
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    # A unit gets a level entry as soon as one dependency is released,
    # so resolution is judged by in-degree
    unresolved = [unit.id for unit in units if in_degree[unit.id] > 0]
    if unresolved:
        raise SkillExecutionError.circular_dependency(unresolved)

    grouped: dict[int, list[WorkflowUnitInfo]] = {}
    for unit in units:
        grouped.setdefault(levels[unit.id], []).append(unit)

    return [ExecutionLevel(level=level, units=grouped[level]) for level in sorted(grouped)]


def build_plan(units: Sequence[WorkflowUnitInfo]) -> ExecutionPlan:
    """Build a complete execution plan for a skill."""
    levels = compute_levels(units)

    unit_level_map = {unit.id: level.level for level in levels for unit in level.units}
    dependency_map = {unit.id: unit.dependency_ids for unit in units}

    dependents_map: dict[str, list[str]] = {unit.id: [] for unit in units}
    for unit in units:
        for dep in dict.fromkeys(unit.dependency_ids):
            dependents_map[dep].append(unit.id)

    logger.info(f"Built execution plan: {len(levels)} levels, {len(units)} units")

    return ExecutionPlan(
        levels=levels,
        unit_level_map=unit_level_map,
        dependency_map=dependency_map,
        dependents_map=dependents_map,
        total_units=len(units),
    )


def get_ready_units(
    plan: ExecutionPlan, completed: Collection[str], running: Collection[str]
) -> list[WorkflowUnitInfo]:
    """Units not yet started whose dependencies have all completed."""
    ready = []
    for unit in plan.units():
        if unit.id in completed or unit.id in running:
            continue
        if all(dep in completed for dep in plan.dependency_map.get(unit.id, [])):
            ready.append(unit)
    return ready


def is_complete(plan: ExecutionPlan, completed: Collection[str], blocked: Collection[str]) -> bool:
    """True once every unit is either completed or blocked."""
    return len(completed) + len(blocked) >= plan.total_units


def get_blocked_units(
    plan: ExecutionPlan, failed_id: str, already_blocked: Collection[str] = ()
) -> list[str]:
    """
    Transitive dependents of a failed unit.

    Breadth-first walk over the reverse adjacency list. Units in
    already_blocked are neither returned nor traversed.

    Example:
        A <- B <- C (C depends on B, B depends on A)
        get_blocked_units(plan, "A", set())  # ["B", "C"]
    """
    seen = set(already_blocked)
    seen.add(failed_id)
    blocked: list[str] = []
    queue = deque([failed_id])

    while queue:
        current = queue.popleft()
        for dependent in plan.dependents_map.get(current, []):
            if dependent in seen:
                continue
            seen.add(dependent)
            blocked.append(dependent)
            queue.append(dependent)

    return blocked


__all__ = [
    "ExecutionLevel",
    "ExecutionPlan",
    "compute_levels",
    "build_plan",
    "get_ready_units",
    "is_complete",
    "get_blocked_units",
]
