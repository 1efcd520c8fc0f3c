"""Unit tests for admission constraints, decisions, and plan approval."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from structlog.testing import capture_logs

from recovery_planner.admission_plane.policy_gate import (
    AdmissionDeniedError,
    AutoApproveLimits,
    PolicyGate,
    admission_event,
    approve_plan,
    composite_risk,
    evaluate,
    risk_bucket,
)
from recovery_planner.domain import ids
from recovery_planner.domain.events import EventType
from recovery_planner.domain.models import (
    ConstraintKind,
    IncidentRecord,
    IncidentScope,
    IncidentSignal,
    RecoveryPlan,
    RiskBucket,
    Route,
    RouteNode,
    SeverityBand,
    SloTarget,
    WorkItem,
)

_BASE_TS = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _fixed_bytes(size: int) -> bytes:
    return b"\x05" * size


def _incident(*signals: IncidentSignal) -> IncidentRecord:
    return IncidentRecord(
        id="inc-gate",
        title="Queue backlog",
        scope=IncidentScope(tenant_id="acme", service_name="queue"),
        severity=SeverityBand.MEDIUM,
        opened_at=_BASE_TS,
        signals=signals,
    )


def _chain_plan(
    length: int, *, timeout: int = 10, metadata: dict[str, str] | None = None
) -> RecoveryPlan:
    nodes = tuple(
        RouteNode(
            WorkItem(f"n{index}", f"step {index}", "sre", timeout),
            (f"n{index - 1}",) if index else (),
        )
        for index in range(length)
    )
    return _plan(nodes, metadata)


def _plan(
    nodes: tuple[RouteNode, ...], metadata: dict[str, str] | None = None
) -> RecoveryPlan:
    return RecoveryPlan(
        id=ids.generate_plan_id(timestamp_ms=1_700_000_000_000, randbytes=_fixed_bytes),
        incident_id="inc-gate",
        title="gate plan",
        route=Route(
            id="route-gate", name="gate", owner_id="inc-gate", nodes=nodes, created_at=_BASE_TS
        ),
        windows=(),
        risk_score=0.0,
        created_at=_BASE_TS,
        metadata=metadata or {},
    )


def test_risk_over_slo_fails_risk_constraint_with_observed_value() -> None:
    incident = _incident(IncidentSignal(name="errors", value=62.0, threshold=100.0))

    decision = evaluate(_chain_plan(3), incident, SloTarget(max_risk=0.5))

    risk = decision.profile.constraint(ConstraintKind.RISK)
    assert risk.passed is False
    assert risk.observed == 0.62
    assert risk.threshold == 0.5
    assert risk.reasons == ("risk 0.62 exceeds max_risk 0.5",)
    assert decision.approved is False
    assert decision.can_auto_approve is False
    assert decision.score == 0.75
    assert decision.profile.risk_bucket is RiskBucket.MEDIUM


def test_all_constraints_pass_for_small_calm_plan() -> None:
    decision = evaluate(_chain_plan(4), _incident(IncidentSignal("cpu", 10.0, 100.0)))

    assert decision.approved
    assert decision.can_auto_approve
    assert decision.score == 1.0
    assert decision.reasons == ()
    assert [item.kind for item in decision.profile.constraints] == [
        ConstraintKind.RISK,
        ConstraintKind.DURATION,
        ConstraintKind.DEPENDENCY,
        ConstraintKind.PARALLELISM,
    ]
    assert decision.profile.batch_count == 2
    assert decision.profile.total_duration_minutes == 40


def test_duration_dependency_and_parallelism_failures_are_data() -> None:
    slo = SloTarget(max_route_length=3, max_batch_count=1, max_critical_path_minutes=30)

    decision = evaluate(_chain_plan(4, timeout=10), _incident(), slo, batch_size=2)

    assert decision.approved is False
    assert decision.score == 0.25
    assert decision.reasons == (
        "total duration 40m exceeds 30m",
        "route length 4 exceeds max_route_length 3",
        "batch count 2 at batch size 2 exceeds max_batch_count 1",
    )


def test_unresolved_route_fails_dependency_constraint() -> None:
    plan = _chain_plan(2)
    broken = RecoveryPlan(
        id=plan.id,
        incident_id=plan.incident_id,
        title=plan.title,
        route=Route(
            id="route-broken",
            name="broken",
            owner_id="inc-gate",
            nodes=(RouteNode(WorkItem("x", "x", "sre", 5), ("ghost",)),),
            created_at=_BASE_TS,
        ),
        windows=(),
        risk_score=0.0,
        created_at=_BASE_TS,
    )

    dependency = evaluate(broken, _incident()).profile.constraint("dependency")

    assert dependency.passed is False
    assert dependency.reasons == ("dependency resolution incomplete: 0 of 1 nodes ordered",)


def test_auto_approval_respects_shape_limits() -> None:
    decision = evaluate(
        _chain_plan(4),
        _incident(),
        auto_approve_limits=AutoApproveLimits(max_route_length=3),
    )

    assert decision.approved
    assert decision.can_auto_approve is False


def test_composite_risk_and_buckets() -> None:
    signals = (
        IncidentSignal("errors", 50.0, 100.0, weight=1.0),
        IncidentSignal("latency", 500.0, 100.0, weight=3.0),
    )

    assert composite_risk(signals) == 0.875
    assert composite_risk(()) == 0.0
    assert composite_risk((IncidentSignal("muted", 10.0, 1.0, weight=0.0),)) == 0.0
    assert risk_bucket(0.8) is RiskBucket.HIGH
    assert risk_bucket(0.45) is RiskBucket.MEDIUM
    assert risk_bucket(0.44) is RiskBucket.LOW


def test_policy_gate_logs_decision_and_uses_plan_batch_size() -> None:
    gate = PolicyGate(SloTarget(max_batch_count=1))
    plan = _chain_plan(4, metadata={"batch_size": "4"})

    with capture_logs() as logs:
        decision = gate.evaluate(plan, _incident())

    assert decision.approved
    assert logs == [
        {
            "event": "admission_decision",
            "log_level": "info",
            "plan_id": plan.id,
            "approved": True,
            "score": 1.0,
            "can_auto_approve": True,
            "reasons": [],
            "risk_signal": 0.0,
            "risk_bucket": "low",
            "route_length": 4,
            "batch_count": 1,
            "batch_size": 4,
            "limits": {
                "max_risk": 0.78,
                "max_route_length": 12,
                "max_batch_count": 1,
                "max_critical_path_minutes": 240,
            },
        }
    ]


def test_policy_gate_from_config() -> None:
    gate = PolicyGate.from_config(
        {
            "slo": {"max_risk": 0.6, "max_route_length": 8},
            "admission": {"auto_approve_max_route_length": 5},
        }
    )

    assert gate.slo.max_risk == 0.6
    assert gate.slo.max_route_length == 8
    assert gate.auto_approve_limits.max_route_length == 5
    assert gate.auto_approve_limits.max_batch_count == 10


def test_approve_plan_requires_matching_admitted_decision() -> None:
    plan = _chain_plan(2)
    denied = evaluate(plan, _incident(IncidentSignal("x", 10.0, 1.0)), SloTarget(max_risk=0.5))

    with pytest.raises(AdmissionDeniedError, match="was denied: risk 1.0 exceeds"):
        approve_plan(plan, denied)
    assert plan.approved is False

    other = _chain_plan(2)
    other.id = ids.generate_plan_id(timestamp_ms=1, randbytes=_fixed_bytes)
    with pytest.raises(AdmissionDeniedError, match="cannot approve plan"):
        approve_plan(other, evaluate(plan, _incident()))

    assert approve_plan(plan, evaluate(plan, _incident())).approved is True


def test_admission_event_type_follows_decision() -> None:
    plan = _chain_plan(2)
    admitted = admission_event(plan, evaluate(plan, _incident()), timestamp=_BASE_TS)
    denied = admission_event(
        plan,
        evaluate(plan, _incident(IncidentSignal("x", 10.0, 1.0)), SloTarget(max_risk=0.1)),
        timestamp=_BASE_TS,
    )

    assert admitted.event_type is EventType.PLAN_ADMITTED
    assert denied.event_type is EventType.PLAN_DENIED
    assert denied.details["reasons"] == ["risk 1.0 exceeds max_risk 0.1"]


@settings(max_examples=60, deadline=None)
@given(
    value=st.floats(min_value=0.0, max_value=500.0, allow_nan=False),
    low=st.floats(min_value=0.0, max_value=1.0, allow_nan=False),
    high=st.floats(min_value=0.0, max_value=1.0, allow_nan=False),
)
def test_raising_max_risk_never_turns_a_pass_into_a_fail(
    value: float, low: float, high: float
) -> None:
    strict, loose = sorted((low, high))
    plan = _chain_plan(3)
    incident = _incident(IncidentSignal("load", value, 100.0))

    strict_risk = evaluate(plan, incident, SloTarget(max_risk=strict)).profile.constraint("risk")
    loose_risk = evaluate(plan, incident, SloTarget(max_risk=loose)).profile.constraint("risk")

    if strict_risk.passed:
        assert loose_risk.passed


@st.composite
def _dag_plans(draw: st.DrawFn) -> RecoveryPlan:
    count = draw(st.integers(min_value=1, max_value=9))
    nodes: list[RouteNode] = []
    for index in range(count):
        parents: set[int] = set()
        if index:
            parents = draw(st.sets(st.integers(min_value=0, max_value=index - 1), max_size=3))
        timeout = draw(st.integers(min_value=1, max_value=90))
        nodes.append(
            RouteNode(
                WorkItem(f"n{index}", f"step {index}", "sre", timeout),
                tuple(f"n{parent}" for parent in sorted(parents)),
            )
        )
    return _plan(tuple(nodes))


def _constraint_passes(
    plan: RecoveryPlan, kind: ConstraintKind, *, batch_size: int = 3, **limits: int
) -> bool:
    decision = evaluate(plan, _incident(), SloTarget(**limits), batch_size=batch_size)
    return decision.profile.constraint(kind).passed


@settings(max_examples=60, deadline=None)
@given(
    plan=_dag_plans(),
    low=st.integers(min_value=1, max_value=12),
    high=st.integers(min_value=1, max_value=12),
)
def test_tightening_max_route_length_never_turns_a_fail_into_a_pass(
    plan: RecoveryPlan, low: int, high: int
) -> None:
    strict, loose = sorted((low, high))

    if not _constraint_passes(plan, ConstraintKind.DEPENDENCY, max_route_length=loose):
        assert not _constraint_passes(plan, ConstraintKind.DEPENDENCY, max_route_length=strict)


@settings(max_examples=60, deadline=None)
@given(
    plan=_dag_plans(),
    batch_size=st.integers(min_value=1, max_value=4),
    low=st.integers(min_value=1, max_value=10),
    high=st.integers(min_value=1, max_value=10),
)
def test_tightening_max_batch_count_never_turns_a_fail_into_a_pass(
    plan: RecoveryPlan, batch_size: int, low: int, high: int
) -> None:
    strict, loose = sorted((low, high))
    kind = ConstraintKind.PARALLELISM

    if not _constraint_passes(plan, kind, batch_size=batch_size, max_batch_count=loose):
        assert not _constraint_passes(plan, kind, batch_size=batch_size, max_batch_count=strict)


@settings(max_examples=60, deadline=None)
@given(
    plan=_dag_plans(),
    low=st.integers(min_value=1, max_value=900),
    high=st.integers(min_value=1, max_value=900),
)
def test_tightening_max_critical_path_minutes_never_turns_a_fail_into_a_pass(
    plan: RecoveryPlan, low: int, high: int
) -> None:
    strict, loose = sorted((low, high))
    kind = ConstraintKind.DURATION

    if not _constraint_passes(plan, kind, max_critical_path_minutes=loose):
        assert not _constraint_passes(plan, kind, max_critical_path_minutes=strict)
