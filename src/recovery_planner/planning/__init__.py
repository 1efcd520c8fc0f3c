"""
Planning layer: dependency graphs, duration estimates, templates, and plan building.

Every plan this layer returns is structurally valid: closed over its node ids
and acyclic.
"""

from recovery_planner.planning.dag import (
    CycleError,
    DagResolution,
    DagValidation,
    RouteValidationError,
    closure,
    detect_cycles,
    missing_dependencies,
    require_order,
    require_valid,
    resolve_levels,
    validate,
)
from recovery_planner.planning.estimator import (
    DurationEstimate,
    critical_path,
    critical_path_minutes,
    critical_path_nodes,
    estimate,
    total_duration,
)
from recovery_planner.planning.plan_builder import (
    PlanBuilder,
    PlanOptions,
    build_route_nodes,
    plan_created_event,
    signal_risk,
)
from recovery_planner.planning.stages import Stage, StageRegistry
from recovery_planner.planning.templates import (
    PlanTemplate,
    TemplateCatalog,
    TemplateStep,
    UnknownTemplateError,
    default_catalog,
    load_template_catalog,
)

__all__ = [
    "CycleError",
    "DagResolution",
    "DagValidation",
    "DurationEstimate",
    "PlanBuilder",
    "PlanOptions",
    "PlanTemplate",
    "RouteValidationError",
    "Stage",
    "StageRegistry",
    "TemplateCatalog",
    "TemplateStep",
    "UnknownTemplateError",
    "build_route_nodes",
    "closure",
    "critical_path",
    "critical_path_minutes",
    "critical_path_nodes",
    "default_catalog",
    "detect_cycles",
    "estimate",
    "load_template_catalog",
    "missing_dependencies",
    "plan_created_event",
    "require_order",
    "require_valid",
    "resolve_levels",
    "signal_risk",
    "total_duration",
    "validate",
]
