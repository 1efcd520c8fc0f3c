"""Unit tests for the reference run loop driving plans through an effector."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from structlog.testing import capture_logs

from recovery_planner.control_plane.run_loop import (
    EffectorResult,
    PlanNotApprovedError,
    RunLoop,
)
from recovery_planner.domain import ids
from recovery_planner.domain.events import EventType
from recovery_planner.domain.models import (
    RecoveryPlan,
    RetryPolicy,
    Route,
    RouteNode,
    WorkItem,
)
from recovery_planner.planning.dag import RouteValidationError
from recovery_planner.utils.clock import ManualClock

_BASE_TS = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _fixed_bytes(size: int) -> bytes:
    return b"\x03" * size


class _ScriptedEffector:
    """Returns scripted results per ``(node_id, attempt)``; success otherwise."""

    def __init__(self, script: dict[tuple[str, int], EffectorResult] | None = None) -> None:
        self.script = script or {}
        self.calls: list[tuple[str, int]] = []

    def execute(self, work_item: WorkItem, attempt: int) -> EffectorResult:
        self.calls.append((work_item.id, attempt))
        return self.script.get((work_item.id, attempt), EffectorResult(ok=True, elapsed_minutes=1))


def _node(node_id: str, *deps: str, max_attempts: int = 1, timeout: int = 10) -> RouteNode:
    return RouteNode(
        work_item=WorkItem(
            id=node_id,
            command=node_id,
            owner="sre",
            timeout_minutes=timeout,
            retry_policy=RetryPolicy(max_attempts=max_attempts),
        ),
        depends_on=deps,
    )


def _plan(
    *nodes: RouteNode, approved: bool = True, metadata: dict[str, str] | None = None
) -> RecoveryPlan:
    route = Route(
        id="route-loop", name="loop", owner_id="inc-loop", nodes=nodes, created_at=_BASE_TS
    )
    return RecoveryPlan(
        id=ids.generate_plan_id(timestamp_ms=1_700_000_000_000, randbytes=_fixed_bytes),
        incident_id="inc-loop",
        title="loop plan",
        route=route,
        windows=(),
        risk_score=0.1,
        created_at=_BASE_TS,
        approved=approved,
        metadata=metadata or {},
    )


def _diamond(**kwargs: int) -> tuple[RouteNode, ...]:
    return (
        _node("a", **kwargs),
        _node("b", "a", **kwargs),
        _node("c", "a", **kwargs),
        _node("d", "b", "c", **kwargs),
    )


def test_successful_run_completes_every_node_in_waves() -> None:
    effector = _ScriptedEffector()
    loop = RunLoop(effector, ManualClock(_BASE_TS))

    outcome = loop.run(_plan(*_diamond()), run_id="run-fixed")

    assert outcome.succeeded
    assert outcome.run_id == "run-fixed"
    assert outcome.completed == ("a", "b", "c", "d")
    assert outcome.waves == (("a",), ("b", "c"), ("d",))
    assert outcome.failed == ()
    assert outcome.blocked == ()
    assert outcome.events[0].event_type is EventType.RUN_STARTED
    assert outcome.events[-1].event_type is EventType.RUN_COMPLETED
    assert effector.calls == [("a", 1), ("b", 1), ("c", 1), ("d", 1)]


def test_permanent_failure_blocks_dependents() -> None:
    effector = _ScriptedEffector({("b", 1): EffectorResult(ok=False, error="exit 2")})
    loop = RunLoop(effector, ManualClock(_BASE_TS))

    outcome = loop.run(_plan(*_diamond()))

    assert not outcome.succeeded
    assert outcome.failed == ("b",)
    assert outcome.completed == ("a", "c")
    assert outcome.blocked == ("d",)
    final = outcome.events[-1]
    assert final.event_type is EventType.RUN_FAILED
    assert final.details["blocked"] == ["d"]
    assert outcome.run_id.startswith("run-")


def test_failed_attempt_is_retried_within_budget() -> None:
    effector = _ScriptedEffector({("a", 1): EffectorResult(ok=False, error="flaky")})
    loop = RunLoop(effector, ManualClock(_BASE_TS))

    with capture_logs() as logs:
        outcome = loop.run(_plan(_node("a", max_attempts=2), _node("b", "a")))

    assert outcome.succeeded
    assert effector.calls == [("a", 1), ("a", 2), ("b", 1)]
    events = [entry["event"] for entry in logs]
    assert events[0] == "run_started"
    assert "node_retry" in events
    assert events[-1] == "run_finished"
    retry = next(entry for entry in logs if entry["event"] == "node_retry")
    assert retry["node_id"] == "a"
    assert retry["attempt"] == 2


def test_exhausted_budget_is_logged_as_warning() -> None:
    effector = _ScriptedEffector(
        {
            ("a", 1): EffectorResult(ok=False, error="down"),
            ("a", 2): EffectorResult(ok=False, error="down"),
        }
    )
    loop = RunLoop(effector, ManualClock(_BASE_TS))

    with capture_logs() as logs:
        outcome = loop.run(_plan(_node("a", max_attempts=2)))

    assert outcome.failed == ("a",)
    exhausted = [entry for entry in logs if entry["event"] == "node_retry_budget_exhausted"]
    assert len(exhausted) == 1
    assert exhausted[0]["log_level"] == "warning"
    assert exhausted[0]["max_attempts"] == 2


def test_effector_exception_becomes_node_failure() -> None:
    class _Exploding:
        def execute(self, work_item: WorkItem, attempt: int) -> EffectorResult:
            raise RuntimeError("boom")

    outcome = RunLoop(_Exploding(), ManualClock(_BASE_TS)).run(_plan(_node("a")))

    assert outcome.failed == ("a",)
    changed = [
        event for event in outcome.events if event.event_type is EventType.RUN_STATE_CHANGED
    ]
    assert changed[-1].details["last_error"] == "RuntimeError: boom"


def test_elapsed_time_past_timeout_fails_node() -> None:
    effector = _ScriptedEffector({("a", 1): EffectorResult(ok=True, elapsed_minutes=30)})

    outcome = RunLoop(effector, ManualClock(_BASE_TS)).run(_plan(_node("a", timeout=10)))

    assert outcome.failed == ("a",)


def test_unapproved_plan_is_rejected_unless_disabled() -> None:
    plan = _plan(_node("a"), approved=False)

    with pytest.raises(PlanNotApprovedError, match="has not been approved"):
        RunLoop(_ScriptedEffector(), ManualClock(_BASE_TS)).run(plan)

    outcome = RunLoop(_ScriptedEffector(), ManualClock(_BASE_TS), require_approval=False).run(plan)
    assert outcome.succeeded


def test_invalid_route_is_rejected_before_running() -> None:
    effector = _ScriptedEffector()

    with pytest.raises(RouteValidationError, match="cycle detected"):
        RunLoop(effector, ManualClock(_BASE_TS)).run(_plan(_node("a", "b"), _node("b", "a")))
    assert effector.calls == []


def test_parallelism_comes_from_plan_metadata_then_constructor() -> None:
    nodes = tuple(_node(name) for name in ("a", "b", "c"))

    from_metadata = RunLoop(_ScriptedEffector(), ManualClock(_BASE_TS)).run(
        _plan(*nodes, metadata={"parallelism": "3"})
    )
    from_ctor = RunLoop(_ScriptedEffector(), ManualClock(_BASE_TS), parallelism=1).run(
        _plan(*nodes, metadata={"parallelism": "3"})
    )

    assert from_metadata.waves == (("a", "b", "c"),)
    assert from_ctor.waves == (("a",), ("b",), ("c",))


def test_constructor_and_result_validation() -> None:
    with pytest.raises(ValueError, match="parallelism must be an integer >= 1"):
        RunLoop(_ScriptedEffector(), parallelism=0)
    with pytest.raises(ValueError, match="elapsed_minutes"):
        EffectorResult(ok=True, elapsed_minutes=-1)
