"""Deterministic topological scheduling of route nodes into concurrency-bounded waves."""

from __future__ import annotations

from collections.abc import Set
from dataclasses import dataclass

from recovery_planner.domain.models import Route
from recovery_planner.planning.dag import require_order, resolve_levels


@dataclass(frozen=True, slots=True)
class TopologicalOrder:
    """Kahn ordering with cycle handling made explicit.

    ``order`` only ever holds dependency-safe node ids. Nodes that could not be
    resolved (cycle members, their dependents, or nodes with a missing
    dependency) are reported in ``unresolved`` instead of being appended.
    """

    order: tuple[str, ...]
    unresolved: tuple[str, ...]
    node_count: int

    @property
    def is_complete(self) -> bool:
        return not self.unresolved

    def flushed(self) -> tuple[str, ...]:
        """Total ordering with unresolved nodes appended in declaration order.

        Only dependency-safe when :attr:`is_complete` is true.
        """
        return self.order + self.unresolved

    def require_complete(self, route: Route) -> tuple[str, ...]:
        """Return the order, raising ``CycleError`` or ``RouteValidationError`` otherwise."""
        if self.is_complete:
            return self.order
        return require_order(route)


@dataclass(frozen=True, slots=True)
class ExecutionSchedule:
    """Scheduler output for one route."""

    route_id: str
    order: tuple[str, ...]
    waves: tuple[tuple[str, ...], ...]
    unresolved: tuple[str, ...]
    max_parallelism: int

    @property
    def is_complete(self) -> bool:
        return not self.unresolved

    @property
    def batch_count(self) -> int:
        return len(self.waves)


class Scheduler:
    """Kahn scheduler with declaration-order tie-break and wave slicing."""

    __slots__ = ("_max_parallelism",)

    def __init__(self, *, max_parallelism: int = 1) -> None:
        self._max_parallelism = _validate_parallelism(max_parallelism)

    @property
    def max_parallelism(self) -> int:
        return self._max_parallelism

    def schedule(self, route: Route) -> ExecutionSchedule:
        ordering = topological_order(route)
        return ExecutionSchedule(
            route_id=route.id,
            order=ordering.order,
            waves=_slice(ordering.order, self._max_parallelism),
            unresolved=ordering.unresolved,
            max_parallelism=self._max_parallelism,
        )


def topological_order(route: Route) -> TopologicalOrder:
    """Order nodes so every dependency precedes its dependents.

    Each step appends the whole ready set in the route's declaration order,
    so siblings with satisfied dependencies stay adjacent.
    """
    resolution = resolve_levels(route)
    return TopologicalOrder(
        order=resolution.resolved,
        unresolved=resolution.unresolved,
        node_count=len(route.nodes),
    )


def batches(route: Route, max_parallelism: int) -> tuple[tuple[str, ...], ...]:
    """Slice the topological order into waves of at most ``max_parallelism`` nodes."""
    width = _validate_parallelism(max_parallelism)
    return _slice(topological_order(route).order, width)


def ready_nodes(route: Route, completed: Set[str]) -> tuple[str, ...]:
    """
    Return nodes ready to run.

    A node is ready when it is not already completed and all of its
    dependencies are present in ``completed``.
    """
    done = set(completed)
    return tuple(
        node.id
        for node in route.nodes
        if node.id not in done and all(dependency in done for dependency in node.depends_on)
    )


def split_by_owner(route: Route) -> dict[str, tuple[str, ...]]:
    """Group node ids by work-item owner, preserving declaration order."""
    grouped: dict[str, list[str]] = {}
    for node in route.nodes:
        grouped.setdefault(node.work_item.owner, []).append(node.id)
    return {owner: tuple(node_ids) for owner, node_ids in grouped.items()}


def schedule_route(route: Route, *, max_parallelism: int = 1) -> ExecutionSchedule:
    """Convenience wrapper around :class:`Scheduler`."""

    return Scheduler(max_parallelism=max_parallelism).schedule(route)


def _slice(order: tuple[str, ...], width: int) -> tuple[tuple[str, ...], ...]:
    return tuple(order[start : start + width] for start in range(0, len(order), width))


def _validate_parallelism(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"max_parallelism must be an integer, got {type(value).__name__}")
    if value < 1:
        raise ValueError("max_parallelism must be >= 1")
    return value


__all__ = [
    "ExecutionSchedule",
    "Scheduler",
    "TopologicalOrder",
    "batches",
    "ready_nodes",
    "schedule_route",
    "split_by_owner",
    "topological_order",
]
