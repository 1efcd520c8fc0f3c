"""Generic dependency-graph inspection over ``{id, depends_on}`` nodes.

Routes, template steps, and named stages all satisfy :class:`DagNode`, so
closure checks, Kahn level resolution, and cycle detection live here once.
Every function is read-only over its input.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol, TypeAlias

from recovery_planner.domain.models import Route


class DagNode(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def depends_on(self) -> Sequence[str]: ...


Graph: TypeAlias = "Route | Sequence[DagNode]"


class CycleError(ValueError):
    """Raised when a graph that must be acyclic contains a cycle."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class RouteValidationError(ValueError):
    """Raised when a graph fails structural validation."""

    issues: tuple[str, ...]

    def __init__(self, issues: Iterable[str]) -> None:
        self.issues = tuple(issues)
        rendered = "; ".join(self.issues) if self.issues else "unknown structural failure"
        super().__init__(f"invalid route: {rendered}")


@dataclass(frozen=True, slots=True)
class DagResolution:
    """Kahn level resolution: each level is one ready set in declaration order."""

    levels: tuple[tuple[str, ...], ...]
    unresolved: tuple[str, ...]

    @property
    def resolved(self) -> tuple[str, ...]:
        return tuple(node_id for level in self.levels for node_id in level)

    @property
    def is_complete(self) -> bool:
        return not self.unresolved


@dataclass(frozen=True, slots=True)
class DagValidation:
    issues: tuple[str, ...]
    missing: tuple[tuple[str, str], ...] = ()
    cycles: tuple[tuple[str, ...], ...] = ()
    unresolved: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.issues


def graph_nodes(graph: Graph) -> tuple[DagNode, ...]:
    """Return the nodes of ``graph`` in declaration order, rejecting duplicate ids."""
    nodes: tuple[DagNode, ...] = tuple(graph.nodes) if isinstance(graph, Route) else tuple(graph)
    seen: set[str] = set()
    for node in nodes:
        if not node.id:
            raise ValueError("Node ID must be non-empty.")
        if node.id in seen:
            raise ValueError(f"Duplicate node '{node.id}' in graph.")
        seen.add(node.id)
    return nodes


def closure(graph: Graph) -> bool:
    """True iff every dependency resolves to a node in the same graph."""
    nodes = graph_nodes(graph)
    known = {node.id for node in nodes}
    return all(dependency in known for node in nodes for dependency in node.depends_on)


def missing_dependencies(graph: Graph) -> tuple[tuple[str, str], ...]:
    """Return ``(node_id, missing_dependency_id)`` pairs in declaration order."""
    nodes = graph_nodes(graph)
    known = {node.id for node in nodes}
    return tuple(
        (node.id, dependency)
        for node in nodes
        for dependency in node.depends_on
        if dependency not in known
    )


def resolve_levels(graph: Graph) -> DagResolution:
    """Resolve nodes level by level; a level holds every node whose dependencies resolved."""
    nodes = graph_nodes(graph)
    position = {node.id: index for index, node in enumerate(nodes)}
    children: dict[str, list[str]] = {node.id: [] for node in nodes}
    pending: dict[str, int] = {}

    for node in nodes:
        dependencies = tuple(dict.fromkeys(node.depends_on))
        pending[node.id] = len(dependencies)
        for dependency in dependencies:
            if dependency in children:
                children[dependency].append(node.id)

    levels: list[tuple[str, ...]] = []
    ready = [node.id for node in nodes if pending[node.id] == 0]
    resolved: set[str] = set()
    while ready:
        levels.append(tuple(ready))
        resolved.update(ready)
        unlocked: list[str] = []
        for node_id in ready:
            for child in children[node_id]:
                pending[child] -= 1
                if pending[child] == 0:
                    unlocked.append(child)
        ready = sorted(unlocked, key=position.__getitem__)

    unresolved = tuple(node.id for node in nodes if node.id not in resolved)
    return DagResolution(levels=tuple(levels), unresolved=unresolved)


def detect_cycles(graph: Graph) -> tuple[tuple[str, ...], ...]:
    """
    Detect directed cycles among existing nodes.

    Returns closed paths in dependency direction, rotated so the smallest
    rotation comes first, e.g. ``("a", "b", "a")``.
    """
    nodes = graph_nodes(graph)
    children: dict[str, list[str]] = {node.id: [] for node in nodes}
    for node in nodes:
        for dependency in dict.fromkeys(node.depends_on):
            if dependency in children:
                children[dependency].append(node.id)

    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}
    cycles: dict[tuple[str, ...], None] = {}

    for node in nodes:
        start = node.id
        if state.get(start, 0) != 0:
            continue

        state[start] = 1
        stack_index[start] = len(stack)
        stack.append(start)
        frames: list[tuple[str, Iterator[str]]] = [(start, iter(children[start]))]

        while frames:
            current, child_iter = frames[-1]
            child = next(child_iter, None)
            if child is None:
                frames.pop()
                state[current] = 2
                stack.pop()
                del stack_index[current]
                continue

            child_state = state.get(child, 0)
            if child_state == 0:
                state[child] = 1
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append((child, iter(children[child])))
            elif child_state == 1:
                cycle = tuple(stack[stack_index[child] :] + [child])
                cycles[_canonicalize_cycle(cycle)] = None

    return tuple(sorted(cycles))


def validate(graph: Graph) -> DagValidation:
    """Check closure and acyclicity, returning ordered human-readable issues."""
    nodes = graph_nodes(graph)
    missing = missing_dependencies(nodes)
    issues = [f"missing dependency {dependency} from {node_id}" for node_id, dependency in missing]

    resolution = resolve_levels(nodes)
    cycles: tuple[tuple[str, ...], ...] = ()
    if not resolution.is_complete:
        cycles = detect_cycles(nodes)
        issues.extend(f"cycle detected: {' -> '.join(path)}" for path in cycles)

        on_cycle = {node_id for path in cycles for node_id in path}
        blocked_by_missing = _downstream_of(nodes, {node_id for node_id, _ in missing})
        for node_id in resolution.unresolved:
            if node_id in on_cycle or node_id in blocked_by_missing:
                continue
            issues.append(f"unresolved node {node_id}")

    return DagValidation(
        issues=tuple(issues),
        missing=missing,
        cycles=cycles,
        unresolved=resolution.unresolved,
    )


def require_valid(graph: Graph) -> None:
    """Raise :class:`RouteValidationError` unless ``graph`` is closed and acyclic."""
    result = validate(graph)
    if not result.ok:
        raise RouteValidationError(result.issues)


def require_order(graph: Graph) -> tuple[str, ...]:
    """Return the resolved order or raise for missing dependencies and cycles."""
    nodes = graph_nodes(graph)
    resolution = resolve_levels(nodes)
    if resolution.is_complete:
        return resolution.resolved
    cycles = detect_cycles(nodes)
    if cycles:
        raise CycleError(cycles)
    raise RouteValidationError(validate(nodes).issues)


def _downstream_of(nodes: Sequence[DagNode], roots: set[str]) -> set[str]:
    if not roots:
        return set()
    children: dict[str, list[str]] = {node.id: [] for node in nodes}
    for node in nodes:
        for dependency in node.depends_on:
            if dependency in children:
                children[dependency].append(node.id)

    visited: set[str] = set()
    frontier = list(roots)
    while frontier:
        node_id = frontier.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        frontier.extend(child for child in children.get(node_id, ()) if child not in visited)
    return visited


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated
    return best + (best[0],)


__all__ = [
    "CycleError",
    "DagNode",
    "DagResolution",
    "DagValidation",
    "Graph",
    "RouteValidationError",
    "closure",
    "detect_cycles",
    "graph_nodes",
    "missing_dependencies",
    "require_order",
    "require_valid",
    "resolve_levels",
    "validate",
]
