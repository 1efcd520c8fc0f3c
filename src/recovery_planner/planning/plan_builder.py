"""
Expand an incident into an unapproved recovery plan.

The builder selects a template, turns each step into a route node with a
derived id, attaches scheduling windows, and scores risk from incident
signals. Every plan it returns has passed structural route validation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import cast

from recovery_planner.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_PARALLELISM,
    DEFAULT_PLAN_MAX_ATTEMPTS,
    DEFAULT_TIMEZONE,
    DEFAULT_WINDOW_MINUTES,
    RETRY_MAX_ATTEMPTS,
    RETRY_MIN_ATTEMPTS,
)
from recovery_planner.domain import ids
from recovery_planner.domain.events import EventType, RecoveryEvent
from recovery_planner.domain.models import (
    IncidentRecord,
    IncidentSignal,
    RecoveryPlan,
    Route,
    RouteNode,
    SchedulingWindow,
    WorkItem,
    WorkItemParameters,
)
from recovery_planner.planning.dag import require_valid
from recovery_planner.planning.templates import (
    PlanTemplate,
    TemplateCatalog,
    default_catalog,
    load_template_catalog,
)
from recovery_planner.utils.clock import Clock, system_clock


@dataclass(frozen=True, slots=True)
class PlanOptions:
    window_minutes: int = DEFAULT_WINDOW_MINUTES
    batch_size: int = DEFAULT_BATCH_SIZE
    parallelism: int = DEFAULT_PARALLELISM
    max_attempts: int = DEFAULT_PLAN_MAX_ATTEMPTS
    timezone: str = DEFAULT_TIMEZONE

    def __post_init__(self) -> None:
        for name in ("window_minutes", "batch_size", "parallelism", "max_attempts"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(
                    f"PlanOptions.{name}: expected integer, got {type(value).__name__}"
                )
            if value < 1:
                raise ValueError(f"PlanOptions.{name}: must be >= 1")
        if not RETRY_MIN_ATTEMPTS <= self.max_attempts <= RETRY_MAX_ATTEMPTS:
            raise ValueError(
                f"PlanOptions.max_attempts: must be between {RETRY_MIN_ATTEMPTS} "
                f"and {RETRY_MAX_ATTEMPTS}"
            )
        if not isinstance(self.timezone, str) or not self.timezone.strip():
            raise ValueError("PlanOptions.timezone: must be a non-empty string")

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> PlanOptions:
        """Build from a validated config mapping (uses the ``[planning]`` section)."""
        section = config.get("planning", {})
        if not isinstance(section, Mapping):
            raise ValueError("config.planning: expected table")

        return cls(
            window_minutes=cast("int", section.get("window_minutes", DEFAULT_WINDOW_MINUTES)),
            batch_size=cast("int", section.get("batch_size", DEFAULT_BATCH_SIZE)),
            parallelism=cast("int", section.get("parallelism", DEFAULT_PARALLELISM)),
            max_attempts=cast("int", section.get("max_attempts", DEFAULT_PLAN_MAX_ATTEMPTS)),
            timezone=cast("str", section.get("timezone", DEFAULT_TIMEZONE)),
        )


class PlanBuilder:
    """Builds recovery plans from incidents using a template catalog and a clock."""

    __slots__ = ("_catalog", "_clock")

    def __init__(self, catalog: TemplateCatalog | None = None, clock: Clock | None = None) -> None:
        self._catalog = catalog if catalog is not None else default_catalog()
        self._clock: Clock = clock if clock is not None else system_clock

    @classmethod
    def from_config(cls, config: Mapping[str, object], clock: Clock | None = None) -> PlanBuilder:
        """Use ``planning.template_catalog`` when configured, else the built-in catalog."""
        section = config.get("planning", {})
        catalog_path = section.get("template_catalog") if isinstance(section, Mapping) else None
        if catalog_path is None:
            return cls(default_catalog(), clock)
        return cls(load_template_catalog(str(catalog_path)), clock)

    @property
    def catalog(self) -> TemplateCatalog:
        return self._catalog

    def create_plan(
        self,
        incident: IncidentRecord,
        seed: str,
        options: PlanOptions | None = None,
    ) -> RecoveryPlan:
        opts = options if options is not None else PlanOptions()
        template = self._catalog.select(incident.labels, seed)
        created_at = self._clock()
        timestamp_ms = int(created_at.timestamp() * 1000)

        plan_id = ids.generate_plan_id(timestamp_ms=timestamp_ms)
        route = Route(
            id=ids.generate_route_id(timestamp_ms=timestamp_ms),
            name=f"{template.label} route",
            owner_id=incident.id,
            nodes=build_route_nodes(incident, template, plan_id, max_attempts=opts.max_attempts),
            created_at=created_at,
        )
        require_valid(route)

        window = timedelta(minutes=opts.window_minutes)
        windows = tuple(
            SchedulingWindow(
                start_at=created_at + window * slot,
                end_at=created_at + window * (slot + 1),
                timezone=opts.timezone,
            )
            for slot in range(len(route.nodes))
        )

        return RecoveryPlan(
            id=plan_id,
            incident_id=incident.id,
            title=f"{template.label}: {incident.title}",
            route=route,
            windows=windows,
            risk_score=signal_risk(incident.signals),
            created_at=created_at,
            approved=False,
            metadata={
                "template": template.label,
                "seed": seed,
                "batch_size": str(opts.batch_size),
                "parallelism": str(opts.parallelism),
                "max_attempts": str(opts.max_attempts),
            },
        )


def build_route_nodes(
    incident: IncidentRecord,
    template: PlanTemplate,
    plan_id: str,
    *,
    max_attempts: int = RETRY_MAX_ATTEMPTS,
) -> tuple[RouteNode, ...]:
    """Expand template steps into route nodes; step dependencies become node ids."""
    node_ids = {
        step.command: ids.derive_node_id(plan_id, index, step.command)
        for index, step in enumerate(template.steps)
    }

    nodes: list[RouteNode] = []
    for index, step in enumerate(template.steps):
        minutes = max(1, step.minutes)
        work_item = WorkItem(
            id=node_ids[step.command],
            command=step.command,
            owner=step.owner,
            timeout_minutes=minutes,
            retry_policy=step.retry_policy.capped(max_attempts),
            parameters=WorkItemParameters(
                command_index=index,
                template=template.label,
                incident_id=incident.id,
                owner=step.owner,
                escalation_window_minutes=minutes,
            ),
        )
        nodes.append(
            RouteNode(
                work_item=work_item,
                depends_on=tuple(node_ids.get(name, name) for name in step.depends_on),
            )
        )
    return tuple(nodes)


def signal_risk(signals: tuple[IncidentSignal, ...]) -> float:
    """Unweighted mean signal pressure, rounded to 4 decimals; 0 without signals."""
    if not signals:
        return 0.0
    return round(sum(signal.normalized for signal in signals) / len(signals), 4)


def plan_created_event(plan: RecoveryPlan) -> RecoveryEvent:
    return RecoveryEvent.create(
        EventType.PLAN_CREATED,
        incident_id=plan.incident_id,
        details={
            "plan_id": plan.id,
            "route_id": plan.route.id,
            "template": plan.metadata.get("template", ""),
            "node_count": len(plan.route.nodes),
            "risk_score": plan.risk_score,
        },
        timestamp=plan.created_at,
    )


__all__ = [
    "PlanBuilder",
    "PlanOptions",
    "build_route_nodes",
    "plan_created_event",
    "signal_risk",
]
