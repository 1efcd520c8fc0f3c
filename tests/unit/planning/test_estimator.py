"""Unit tests for critical-path and duration estimation."""

from __future__ import annotations

from datetime import UTC, datetime

from hypothesis import given, settings
from hypothesis import strategies as st

from recovery_planner.domain.models import Route, RouteNode, WorkItem
from recovery_planner.planning.estimator import (
    critical_path,
    critical_path_minutes,
    critical_path_nodes,
    estimate,
    node_cost,
    total_duration,
)

_BASE_TS = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _node(node_id: str, *deps: str, timeout: int = 10) -> RouteNode:
    return RouteNode(
        work_item=WorkItem(id=node_id, command=node_id, owner="sre", timeout_minutes=timeout),
        depends_on=deps,
    )


def _route(*nodes: RouteNode) -> Route:
    return Route(
        id="route-estimate", name="estimate", owner_id="inc-test", nodes=nodes, created_at=_BASE_TS
    )


def _stability_route() -> Route:
    return _route(
        _node("triage", timeout=12),
        _node("stabilize", "triage", timeout=25),
        _node("verify", "stabilize", timeout=18),
        _node("mitigate", "stabilize", timeout=40),
        _node("close", "verify", "mitigate", timeout=8),
    )


def test_node_cost_rounds_up_per_started_quantum() -> None:
    assert node_cost(1) == 1
    assert node_cost(10) == 1
    assert node_cost(11) == 2
    assert node_cost(40) == 4


def test_stability_template_critical_path() -> None:
    route = _stability_route()

    assert critical_path(route) == 10
    assert critical_path_nodes(route) == ("triage", "stabilize", "mitigate", "close")
    assert critical_path_minutes(route) == 12 + 25 + 40 + 8
    assert total_duration(route) == 12 + 25 + 18 + 40 + 8


def test_estimate_bundles_every_measure() -> None:
    result = estimate(_stability_route())

    assert result.critical_path == 10
    assert result.critical_path_nodes[-1] == "close"
    assert result.critical_path_minutes == 85
    assert result.total_duration_minutes == 103


def test_empty_route_has_floor_critical_path() -> None:
    route = _route()

    assert critical_path(route) == 1
    assert critical_path_nodes(route) == ()
    assert critical_path_minutes(route) == 0
    assert total_duration(route) == 0


def test_ties_prefer_first_declared_node() -> None:
    route = _route(_node("left", timeout=20), _node("right", timeout=20))

    assert critical_path_nodes(route) == ("left",)


def test_cyclic_route_still_estimates_without_raising() -> None:
    route = _route(_node("a", "b", timeout=10), _node("b", "a", timeout=10), _node("c"))

    assert critical_path(route) >= 1
    assert total_duration(route) == 30


@settings(max_examples=50, deadline=None)
@given(timeouts=st.lists(st.integers(min_value=1, max_value=600), min_size=1, max_size=10))
def test_estimates_are_idempotent_and_bounded(timeouts: list[int]) -> None:
    nodes = [
        _node(f"n{index}", *((f"n{index - 1}",) if index else ()), timeout=timeout)
        for index, timeout in enumerate(timeouts)
    ]
    route = _route(*nodes)

    first = estimate(route)
    second = estimate(route)

    assert first == second
    assert first.critical_path == sum(node_cost(timeout) for timeout in timeouts)
    assert first.total_duration_minutes == sum(timeouts)
    assert first.critical_path_minutes <= first.total_duration_minutes
