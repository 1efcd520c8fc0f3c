"""Unit tests for core domain models."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from recovery_planner.domain import ids, models


def _fixed_bytes(size: int) -> bytes:
    return b"\x01" * size


def _utc_dt() -> datetime:
    return datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _route() -> models.Route:
    policy = models.RetryPolicy(max_attempts=2, interval_minutes=1, backoff_multiplier=1.5)
    triage = models.WorkItem(
        id="plan:0:triage",
        command="triage",
        owner="oncall",
        timeout_minutes=12,
        retry_policy=policy,
        parameters=models.WorkItemParameters(
            command_index=0,
            template="stability-first",
            owner="oncall",
            escalation_window_minutes=12,
            extensions={"runbook": "rb-17", "tags": ["db", "eu"]},
        ),
    )
    close = models.WorkItem(id="plan:1:close", command="close", owner="oncall", timeout_minutes=8)
    return models.Route(
        id=ids.generate_route_id(timestamp_ms=100, randbytes=_fixed_bytes),
        name="stability-first route",
        owner_id="inc-1",
        nodes=(
            models.RouteNode(triage),
            models.RouteNode(close, ("plan:0:triage",)),
        ),
        created_at=_utc_dt(),
    )


def _plan() -> models.RecoveryPlan:
    route = _route()
    return models.RecoveryPlan(
        id=ids.generate_plan_id(timestamp_ms=101, randbytes=_fixed_bytes),
        incident_id="inc-1",
        title="stability-first: db outage",
        route=route,
        windows=(
            models.SchedulingWindow(
                start_at=_utc_dt(), end_at=_utc_dt() + timedelta(minutes=15)
            ),
        ),
        risk_score=0.4,
        created_at=_utc_dt(),
        metadata={"template": "stability-first"},
    )


def test_recovery_plan_json_roundtrip_is_canonical() -> None:
    plan = _plan()

    encoded = plan.to_json()
    decoded = models.RecoveryPlan.from_json(encoded)

    assert decoded == plan
    assert decoded.to_json() == encoded
    payload = json.loads(encoded)
    assert payload["created_at"] == "2026-02-01T12:00:00.000000Z"
    assert payload["route"]["nodes"][0]["work_item"]["parameters"]["extensions"] == {
        "runbook": "rb-17",
        "tags": ["db", "eu"],
    }


def test_work_item_parameters_keep_unknown_keys_in_extensions() -> None:
    parsed = models.WorkItemParameters.from_dict(
        {"command_index": 2, "template": "t", "dry_run": True, "extensions": {"x": 1}}
    )

    assert parsed.command_index == 2
    assert parsed.extensions == {"x": 1, "dry_run": True}
    with pytest.raises(ValueError, match="typed parameters must not be shadowed"):
        models.WorkItemParameters(extensions={"owner": "me"})


def test_retry_policy_clamps_and_computes_delay() -> None:
    assert models.RetryPolicy(max_attempts=20).max_attempts == 8
    assert models.RetryPolicy(max_attempts=0).max_attempts == 1
    policy = models.RetryPolicy.clamped(3.9, 0.2, 0.5)
    assert (policy.max_attempts, policy.interval_minutes, policy.backoff_multiplier) == (3, 1, 1.0)

    backoff = models.RetryPolicy(max_attempts=4, interval_minutes=2, backoff_multiplier=2.0)
    assert [backoff.delay_minutes(attempt) for attempt in range(3)] == [2.0, 4.0, 8.0]
    assert backoff.capped(2).max_attempts == 2
    with pytest.raises(ValueError, match="non-negative integer"):
        backoff.delay_minutes(-1)
    with pytest.raises(ValueError, match="must be finite"):
        models.RetryPolicy(max_attempts=float("nan"))  # type: ignore[arg-type]


def test_retry_policy_clamps_integers_too_large_for_float() -> None:
    huge = 10**400

    assert models.RetryPolicy(max_attempts=huge).max_attempts == 8
    assert models.RetryPolicy(max_attempts=-huge).max_attempts == 1
    wide = models.RetryPolicy(interval_minutes=huge)
    assert wide.interval_minutes == huge
    assert wide.delay_minutes(1) == float("inf")
    with pytest.raises(ValueError, match="RetryPolicy.backoff_multiplier: must be finite"):
        models.RetryPolicy(backoff_multiplier=huge)


@given(attempts=st.integers(), interval=st.integers())
def test_retry_policy_clamps_any_integer_bounds(attempts: int, interval: int) -> None:
    policy = models.RetryPolicy(max_attempts=attempts, interval_minutes=interval)

    assert 1 <= policy.max_attempts <= 8
    assert policy.interval_minutes >= 1


def test_route_rejects_duplicate_node_ids_and_exposes_lookup() -> None:
    route = _route()

    assert route.node_ids == ("plan:0:triage", "plan:1:close")
    assert route.node("plan:1:close").depends_on == ("plan:0:triage",)
    assert set(route.nodes_by_id()) == set(route.node_ids)
    assert len(route) == 2
    with pytest.raises(KeyError):
        route.node("missing")

    with pytest.raises(ValueError, match=r"Route.nodes\[1\]: duplicate node id"):
        models.Route(
            id="route-x",
            name="dup",
            owner_id="inc-1",
            nodes=(route.nodes[0], route.nodes[0]),
            created_at=_utc_dt(),
        )


def test_route_node_rejects_duplicate_dependencies() -> None:
    work_item = models.WorkItem(id="a", command="a", owner="sre", timeout_minutes=1)

    with pytest.raises(ValueError, match="contains duplicate values"):
        models.RouteNode(work_item, ("b", "b"))


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"timeout_minutes": 0}, r"WorkItem.timeout_minutes: must be >= 1"),
        ({"command": "  "}, r"WorkItem.command: must not be empty"),
        ({"timeout_minutes": True}, r"expected integer, got bool"),
    ],
)
def test_work_item_validation(kwargs: dict[str, object], message: str) -> None:
    params: dict[str, object] = {
        "id": "wi",
        "command": "triage",
        "owner": "sre",
        "timeout_minutes": 5,
    }
    params.update(kwargs)

    with pytest.raises(ValueError, match=message):
        models.WorkItem(**params)  # type: ignore[arg-type]


def test_incident_signal_normalization_and_bounds() -> None:
    assert models.IncidentSignal("errors", 150.0, 100.0).normalized == 1.0
    assert models.IncidentSignal("errors", 25.0, 100.0).normalized == 0.25

    with pytest.raises(ValueError, match="IncidentSignal.threshold: must be > 0"):
        models.IncidentSignal("errors", 1.0, 0.0)
    with pytest.raises(ValueError, match="IncidentSignal.value: must be >= 0.0"):
        models.IncidentSignal("errors", -1.0, 1.0)
    with pytest.raises(ValueError, match="must be finite"):
        models.IncidentSignal("errors", float("inf"), 1.0)


def test_incident_record_roundtrip_and_time_ordering() -> None:
    incident = models.IncidentRecord(
        id="inc-1",
        title="db outage",
        scope=models.IncidentScope(tenant_id="acme", service_name="db"),
        severity=models.SeverityBand.CRITICAL,
        opened_at=_utc_dt(),
        signals=(models.IncidentSignal("errors", 5.0, 10.0, weight=2.0),),
        labels=("compliance",),
    )

    assert models.IncidentRecord.from_json(incident.to_json()) == incident
    with pytest.raises(ValueError, match="resolved_at: must be >= IncidentRecord.opened_at"):
        models.IncidentRecord(
            id="inc-1",
            title="db outage",
            scope=incident.scope,
            severity="high",  # type: ignore[arg-type]
            opened_at=_utc_dt(),
            resolved_at=_utc_dt() - timedelta(minutes=1),
        )


def test_recovery_plan_validation() -> None:
    plan = _plan()

    with pytest.raises(ValueError, match="RecoveryPlan.id"):
        models.RecoveryPlan(
            id="not-a-plan",
            incident_id="inc-1",
            title="x",
            route=plan.route,
            windows=(),
            risk_score=0.1,
            created_at=_utc_dt(),
        )
    with pytest.raises(ValueError, match="RecoveryPlan.risk_score: must be <= 1"):
        models.RecoveryPlan(
            id=plan.id,
            incident_id="inc-1",
            title="x",
            route=plan.route,
            windows=(),
            risk_score=1.2,
            created_at=_utc_dt(),
        )
    with pytest.raises(ValueError, match="timezone-aware"):
        models.RecoveryPlan(
            id=plan.id,
            incident_id="inc-1",
            title="x",
            route=plan.route,
            windows=(),
            risk_score=0.1,
            created_at=datetime(2026, 2, 1, 12, 0, 0),
        )


def test_scheduling_window_must_not_end_before_start() -> None:
    with pytest.raises(ValueError, match="SchedulingWindow.end_at"):
        models.SchedulingWindow(start_at=_utc_dt(), end_at=_utc_dt() - timedelta(seconds=1))


def test_from_dict_rejects_unknown_and_missing_fields() -> None:
    with pytest.raises(ValueError, match=r"SloTarget: unexpected fields: \['max_cost'\]"):
        models.SloTarget.from_dict({"max_cost": 3})
    with pytest.raises(ValueError, match=r"missing required fields: \['owner'"):
        models.WorkItem.from_dict({"id": "a", "command": "a", "timeout_minutes": 1})


def test_slo_target_defaults_and_config() -> None:
    default = models.SloTarget()
    assert (default.max_risk, default.max_route_length) == (0.78, 12)
    assert (default.max_batch_count, default.max_critical_path_minutes) == (10, 240)

    configured = models.SloTarget.from_config({"slo": {"max_risk": 0.5}})
    assert configured.max_risk == 0.5
    assert configured.max_route_length == 12
    with pytest.raises(ValueError, match="SloTarget.max_risk: must be <= 1"):
        models.SloTarget(max_risk=1.01)


def test_admission_decision_invariants() -> None:
    profile = models.PolicyExecutionProfile(
        plan_id="plan-x",
        risk_signal=0.2,
        risk_bucket=models.RiskBucket.LOW,
        constraints=(
            models.PolicyConstraint(models.ConstraintKind.RISK, 0.5, 0.2, True),
        ),
        critical_path=3,
        critical_path_nodes=("a", "b"),
        total_duration_minutes=30,
        route_length=2,
        batch_count=1,
    )

    decision = models.AdmissionDecision(
        plan_id="plan-x",
        approved=True,
        score=1.0,
        can_auto_approve=True,
        reasons=(),
        profile=profile,
    )

    assert models.AdmissionDecision.from_json(decision.to_json()) == decision
    assert profile.constraint("risk").passed
    with pytest.raises(KeyError, match="'duration' was not evaluated"):
        profile.constraint(models.ConstraintKind.DURATION)
    with pytest.raises(ValueError, match="requires an approved decision"):
        models.AdmissionDecision(
            plan_id="plan-x",
            approved=False,
            score=0.5,
            can_auto_approve=True,
            reasons=("risk",),
            profile=profile,
        )


def test_node_run_state_reports_inconsistencies() -> None:
    running = models.NodeRunState(
        node_id="n", state=models.NodeState.RUNNING, started_at=_utc_dt()
    )
    failed = models.NodeRunState(
        node_id="n",
        state=models.NodeState.FAILED,
        started_at=_utc_dt(),
        finished_at=_utc_dt() - timedelta(minutes=1),
    )

    assert running.issues() == ()
    assert not running.is_terminal
    assert failed.is_terminal
    assert failed.issues() == (
        "finished_at precedes started_at",
        "failed record is missing last_error",
    )
    assert models.NodeRunState.from_dict(failed.to_dict()) == failed
