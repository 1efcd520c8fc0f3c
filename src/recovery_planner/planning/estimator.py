"""Critical-path and total-duration estimation for recovery routes."""

from __future__ import annotations

import math
from dataclasses import dataclass

from recovery_planner.constants import CRITICAL_PATH_QUANTUM_MINUTES
from recovery_planner.domain.models import Route
from recovery_planner.planning.dag import resolve_levels


@dataclass(frozen=True, slots=True)
class DurationEstimate:
    critical_path: int
    critical_path_nodes: tuple[str, ...]
    critical_path_minutes: int
    total_duration_minutes: int


def node_cost(timeout_minutes: int) -> int:
    """Depth units for one node: one per started block of the quantum, at least 1."""
    return max(1, math.ceil(timeout_minutes / CRITICAL_PATH_QUANTUM_MINUTES))


def critical_path(route: Route) -> int:
    """Longest dependency chain in depth units, floored at 1."""
    depths, _ = _depths(route)
    return max(1, max(depths.values(), default=0))


def critical_path_nodes(route: Route) -> tuple[str, ...]:
    """Node chain achieving :func:`critical_path`; first-declared wins ties."""
    depths, predecessors = _depths(route)
    if not depths:
        return ()

    end_node = route.nodes[0].id
    for node in route.nodes:
        if depths[node.id] > depths[end_node]:
            end_node = node.id

    path: list[str] = []
    cursor: str | None = end_node
    while cursor is not None:
        path.append(cursor)
        cursor = predecessors[cursor]
    path.reverse()
    return tuple(path)


def critical_path_minutes(route: Route) -> int:
    nodes = route.nodes_by_id()
    return sum(nodes[node_id].work_item.timeout_minutes for node_id in critical_path_nodes(route))


def total_duration(route: Route) -> int:
    """Sum of every node's timeout in minutes."""
    return sum(node.work_item.timeout_minutes for node in route.nodes)


def estimate(route: Route) -> DurationEstimate:
    return DurationEstimate(
        critical_path=critical_path(route),
        critical_path_nodes=critical_path_nodes(route),
        critical_path_minutes=critical_path_minutes(route),
        total_duration_minutes=total_duration(route),
    )


def _depths(route: Route) -> tuple[dict[str, int], dict[str, str | None]]:
    # Flushed order: cycle members are visited after the resolved nodes, and
    # dependencies not yet visited (or missing) contribute depth 0.
    resolution = resolve_levels(route)
    nodes = route.nodes_by_id()
    depths: dict[str, int] = {}
    predecessors: dict[str, str | None] = {}

    for node_id in resolution.resolved + resolution.unresolved:
        node = nodes[node_id]
        best_parent: str | None = None
        best_depth = 0
        for dependency in node.depends_on:
            parent_depth = depths.get(dependency)
            if parent_depth is not None and parent_depth > best_depth:
                best_parent = dependency
                best_depth = parent_depth
        depths[node_id] = best_depth + node_cost(node.work_item.timeout_minutes)
        predecessors[node_id] = best_parent

    return depths, predecessors


__all__ = [
    "DurationEstimate",
    "critical_path",
    "critical_path_minutes",
    "critical_path_nodes",
    "estimate",
    "node_cost",
    "total_duration",
]
