"""Domain layer: identifiers, data models, and event payloads."""

from recovery_planner.domain.events import EventType, RecoveryEvent, redact_sensitive
from recovery_planner.domain.models import (
    AdmissionDecision,
    CanonicalModel,
    ConstraintKind,
    IncidentRecord,
    IncidentScope,
    IncidentSignal,
    NodeRunState,
    NodeState,
    PolicyConstraint,
    PolicyExecutionProfile,
    RecoveryPlan,
    RetryPolicy,
    RiskBucket,
    Route,
    RouteNode,
    SchedulingWindow,
    SeverityBand,
    SloTarget,
    WorkItem,
    WorkItemParameters,
)

__all__ = [
    "AdmissionDecision",
    "CanonicalModel",
    "ConstraintKind",
    "EventType",
    "IncidentRecord",
    "IncidentScope",
    "IncidentSignal",
    "NodeRunState",
    "NodeState",
    "PolicyConstraint",
    "PolicyExecutionProfile",
    "RecoveryEvent",
    "RecoveryPlan",
    "RetryPolicy",
    "RiskBucket",
    "Route",
    "RouteNode",
    "SchedulingWindow",
    "SeverityBand",
    "SloTarget",
    "WorkItem",
    "WorkItemParameters",
    "redact_sensitive",
]
