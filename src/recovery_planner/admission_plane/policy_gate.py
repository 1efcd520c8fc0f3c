"""
Admission control for recovery plans.

This module evaluates a plan against SLO-derived constraints:
- risk: composite incident signal pressure against ``max_risk``
- duration: summed node timeouts against ``max_critical_path_minutes``
- dependency: full route resolution and route length against ``max_route_length``
- parallelism: wave count at the plan's batch size against ``max_batch_count``

Constraint failures are data (``PolicyConstraint.passed=False`` with reasons),
never exceptions. ``PolicyGate`` adds ``structlog`` decision logs on top of the
pure ``evaluate`` function.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, cast

import structlog

from recovery_planner.constants import (
    AUTO_APPROVE_MAX_BATCH_COUNT,
    AUTO_APPROVE_MAX_ROUTE_LENGTH,
    DEFAULT_BATCH_SIZE,
    RISK_BUCKET_HIGH,
    RISK_BUCKET_MEDIUM,
)
from recovery_planner.control_plane.scheduler import batches, topological_order
from recovery_planner.domain.events import EventType, RecoveryEvent
from recovery_planner.domain.models import (
    AdmissionDecision,
    ConstraintKind,
    IncidentRecord,
    IncidentSignal,
    PolicyConstraint,
    PolicyExecutionProfile,
    RecoveryPlan,
    RiskBucket,
    SloTarget,
)
from recovery_planner.planning.estimator import estimate


class AdmissionDeniedError(ValueError):
    """Raised when approving a plan whose admission decision does not allow it."""


@dataclass(frozen=True, slots=True)
class AutoApproveLimits:
    """Route-shape ceilings under which an approved plan may skip human review."""

    max_route_length: int = AUTO_APPROVE_MAX_ROUTE_LENGTH
    max_batch_count: int = AUTO_APPROVE_MAX_BATCH_COUNT

    def __post_init__(self) -> None:
        for name in ("max_route_length", "max_batch_count"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"AutoApproveLimits.{name}: must be an integer >= 1")

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> AutoApproveLimits:
        """Build from a validated config mapping (uses the ``[admission]`` section)."""
        section = config.get("admission", {})
        if not isinstance(section, Mapping):
            raise ValueError("config.admission: expected table")
        return cls(
            max_route_length=cast(
                "int",
                section.get("auto_approve_max_route_length", AUTO_APPROVE_MAX_ROUTE_LENGTH),
            ),
            max_batch_count=cast(
                "int",
                section.get("auto_approve_max_batch_count", AUTO_APPROVE_MAX_BATCH_COUNT),
            ),
        )


def composite_risk(signals: Sequence[IncidentSignal]) -> float:
    """Weighted mean of ``min(1, value / threshold)``, rounded to 4 decimals."""
    total_weight = sum(signal.weight for signal in signals)
    if not signals or total_weight <= 0:
        return 0.0
    weighted = sum(signal.normalized * signal.weight for signal in signals)
    return round(weighted / total_weight, 4)


def risk_bucket(score: float) -> RiskBucket:
    if score >= RISK_BUCKET_HIGH:
        return RiskBucket.HIGH
    if score >= RISK_BUCKET_MEDIUM:
        return RiskBucket.MEDIUM
    return RiskBucket.LOW


def evaluate(
    plan: RecoveryPlan,
    incident: IncidentRecord,
    slo: SloTarget | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    auto_approve_limits: AutoApproveLimits | None = None,
) -> AdmissionDecision:
    """Evaluate every constraint and aggregate them into one admission decision."""
    target = slo if slo is not None else SloTarget()
    limits = auto_approve_limits if auto_approve_limits is not None else AutoApproveLimits()
    route = plan.route

    risk = composite_risk(incident.signals)
    durations = estimate(route)
    ordering = topological_order(route)
    waves = batches(route, batch_size)
    route_length = len(route.nodes)

    constraints = (
        _risk_constraint(risk, target),
        _duration_constraint(durations.total_duration_minutes, target),
        _dependency_constraint(ordering.order, ordering.unresolved, route_length, target),
        _parallelism_constraint(len(waves), batch_size, target),
    )
    passing = sum(1 for item in constraints if item.passed)
    approved = passing == len(constraints)

    profile = PolicyExecutionProfile(
        plan_id=plan.id,
        risk_signal=risk,
        risk_bucket=risk_bucket(risk),
        constraints=constraints,
        critical_path=durations.critical_path,
        critical_path_nodes=durations.critical_path_nodes,
        total_duration_minutes=durations.total_duration_minutes,
        route_length=route_length,
        batch_count=len(waves),
    )
    return AdmissionDecision(
        plan_id=plan.id,
        approved=approved,
        score=passing / len(constraints),
        can_auto_approve=(
            approved
            and route_length <= limits.max_route_length
            and len(waves) <= limits.max_batch_count
        ),
        reasons=tuple(reason for item in constraints for reason in item.reasons),
        profile=profile,
    )


class PolicyGate:
    """Evaluates plans against one SLO target and logs every decision."""

    def __init__(
        self,
        slo: SloTarget | None = None,
        auto_approve_limits: AutoApproveLimits | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._slo = slo if slo is not None else SloTarget()
        self._limits = (
            auto_approve_limits if auto_approve_limits is not None else AutoApproveLimits()
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(cls, config: Mapping[str, object], *, logger: Any | None = None) -> PolicyGate:
        return cls(
            SloTarget.from_config(config),
            AutoApproveLimits.from_config(config),
            logger=logger,
        )

    @property
    def slo(self) -> SloTarget:
        return self._slo

    @property
    def auto_approve_limits(self) -> AutoApproveLimits:
        return self._limits

    def evaluate(
        self,
        plan: RecoveryPlan,
        incident: IncidentRecord,
        *,
        batch_size: int | None = None,
    ) -> AdmissionDecision:
        """Evaluate with ``batch_size`` defaulting to the plan's recorded batch size."""
        width = batch_size if batch_size is not None else _plan_batch_size(plan)
        decision = evaluate(
            plan,
            incident,
            self._slo,
            batch_size=width,
            auto_approve_limits=self._limits,
        )
        self._log_decision(decision, batch_size=width)
        return decision

    def _log_decision(self, decision: AdmissionDecision, *, batch_size: int) -> None:
        self._logger.info(
            "admission_decision",
            plan_id=decision.plan_id,
            approved=decision.approved,
            score=decision.score,
            can_auto_approve=decision.can_auto_approve,
            reasons=list(decision.reasons),
            risk_signal=decision.profile.risk_signal,
            risk_bucket=decision.profile.risk_bucket.value,
            route_length=decision.profile.route_length,
            batch_count=decision.profile.batch_count,
            batch_size=batch_size,
            limits={
                "max_risk": self._slo.max_risk,
                "max_route_length": self._slo.max_route_length,
                "max_batch_count": self._slo.max_batch_count,
                "max_critical_path_minutes": self._slo.max_critical_path_minutes,
            },
        )


def approve_plan(plan: RecoveryPlan, decision: AdmissionDecision) -> RecoveryPlan:
    """Flip ``plan.approved`` when ``decision`` admits this plan."""
    if decision.plan_id != plan.id:
        raise AdmissionDeniedError(
            f"decision for plan {decision.plan_id!r} cannot approve plan {plan.id!r}"
        )
    if not decision.approved:
        rendered = "; ".join(decision.reasons) if decision.reasons else "no reasons recorded"
        raise AdmissionDeniedError(f"plan {plan.id!r} was denied: {rendered}")
    plan.approved = True
    return plan


def admission_event(
    plan: RecoveryPlan,
    decision: AdmissionDecision,
    *,
    timestamp: datetime,
) -> RecoveryEvent:
    """``PlanAdmitted`` or ``PlanDenied`` payload for ``decision``."""
    return RecoveryEvent.create(
        EventType.PLAN_ADMITTED if decision.approved else EventType.PLAN_DENIED,
        incident_id=plan.incident_id,
        details={
            "plan_id": plan.id,
            "score": decision.score,
            "can_auto_approve": decision.can_auto_approve,
            "reasons": list(decision.reasons),
        },
        timestamp=timestamp,
    )


def _risk_constraint(risk: float, slo: SloTarget) -> PolicyConstraint:
    passed = risk <= slo.max_risk
    return PolicyConstraint(
        kind=ConstraintKind.RISK,
        threshold=slo.max_risk,
        observed=risk,
        passed=passed,
        reasons=() if passed else (f"risk {risk} exceeds max_risk {slo.max_risk}",),
    )


def _duration_constraint(total_minutes: int, slo: SloTarget) -> PolicyConstraint:
    limit = slo.max_critical_path_minutes
    passed = total_minutes <= limit
    return PolicyConstraint(
        kind=ConstraintKind.DURATION,
        threshold=float(limit),
        observed=float(total_minutes),
        passed=passed,
        reasons=() if passed else (f"total duration {total_minutes}m exceeds {limit}m",),
    )


def _dependency_constraint(
    order: Sequence[str],
    unresolved: Sequence[str],
    route_length: int,
    slo: SloTarget,
) -> PolicyConstraint:
    reasons: list[str] = []
    if unresolved or len(order) != route_length:
        reasons.append(
            f"dependency resolution incomplete: {len(order)} of {route_length} nodes ordered"
        )
    if route_length > slo.max_route_length:
        reasons.append(
            f"route length {route_length} exceeds max_route_length {slo.max_route_length}"
        )
    return PolicyConstraint(
        kind=ConstraintKind.DEPENDENCY,
        threshold=float(slo.max_route_length),
        observed=float(route_length),
        passed=not reasons,
        reasons=tuple(reasons),
    )


def _parallelism_constraint(batch_count: int, batch_size: int, slo: SloTarget) -> PolicyConstraint:
    passed = batch_count <= slo.max_batch_count
    return PolicyConstraint(
        kind=ConstraintKind.PARALLELISM,
        threshold=float(slo.max_batch_count),
        observed=float(batch_count),
        passed=passed,
        reasons=()
        if passed
        else (
            f"batch count {batch_count} at batch size {batch_size} exceeds "
            f"max_batch_count {slo.max_batch_count}",
        ),
    )


def _plan_batch_size(plan: RecoveryPlan) -> int:
    raw = plan.metadata.get("batch_size")
    if raw is None:
        return DEFAULT_BATCH_SIZE
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(
            f"plan {plan.id!r} metadata.batch_size is not an integer: {raw!r}"
        ) from exc
    return value


__all__ = [
    "AdmissionDeniedError",
    "AutoApproveLimits",
    "PolicyGate",
    "admission_event",
    "approve_plan",
    "composite_risk",
    "evaluate",
    "risk_bucket",
]
