"""Admission plane: SLO policy evaluation and plan approval."""

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
