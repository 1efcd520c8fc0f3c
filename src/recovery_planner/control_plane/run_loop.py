"""
Synchronous reference execution loop for approved recovery plans.

The loop never runs commands itself. Each node's work item is handed to an
``Effector`` collaborator; the loop only sequences nodes wave by wave, feeds
outcomes into a :class:`RunStateMachine`, retries within budget, and reports
which nodes could not run because an upstream node failed for good.

Retry backoff is advisory here: the loop records each ``RetryTicket`` in its
logs and retries immediately.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from recovery_planner.constants import DEFAULT_PARALLELISM
from recovery_planner.control_plane.run_state import RunStateMachine
from recovery_planner.control_plane.scheduler import ready_nodes, topological_order
from recovery_planner.domain import ids
from recovery_planner.domain.events import EventType, RecoveryEvent
from recovery_planner.domain.models import NodeState, RecoveryPlan, WorkItem
from recovery_planner.planning.dag import require_valid
from recovery_planner.utils.clock import Clock, system_clock


class PlanNotApprovedError(ValueError):
    """Raised when running a plan that has not passed admission."""


@dataclass(frozen=True, slots=True)
class EffectorResult:
    ok: bool
    error: str | None = None
    elapsed_minutes: float = 0.0

    def __post_init__(self) -> None:
        if self.elapsed_minutes < 0:
            raise ValueError("EffectorResult.elapsed_minutes: must be >= 0")


class Effector(Protocol):
    """Executes one attempt of a work item outside the planner."""

    def execute(self, work_item: WorkItem, attempt: int) -> EffectorResult: ...


@dataclass(frozen=True, slots=True)
class RunOutcome:
    run_id: str
    plan_id: str
    completed: tuple[str, ...]
    failed: tuple[str, ...]
    blocked: tuple[str, ...]
    waves: tuple[tuple[str, ...], ...]
    events: tuple[RecoveryEvent, ...]

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.blocked


class RunLoop:
    """Drives one plan to a terminal outcome through an :class:`Effector`."""

    def __init__(
        self,
        effector: Effector,
        clock: Clock | None = None,
        *,
        parallelism: int | None = None,
        require_approval: bool = True,
        logger: Any | None = None,
    ) -> None:
        if parallelism is not None and (
            isinstance(parallelism, bool) or not isinstance(parallelism, int) or parallelism < 1
        ):
            raise ValueError("parallelism must be an integer >= 1")
        self._effector = effector
        self._clock: Clock = clock if clock is not None else system_clock
        self._parallelism = parallelism
        self._require_approval = require_approval
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def run(self, plan: RecoveryPlan, *, run_id: str | None = None) -> RunOutcome:
        if self._require_approval and not plan.approved:
            raise PlanNotApprovedError(f"plan {plan.id!r} has not been approved")
        route = plan.route
        require_valid(route)
        topological_order(route).require_complete(route)

        started_at = self._clock()
        resolved_run_id = (
            run_id
            if run_id is not None
            else ids.generate_run_id(timestamp_ms=int(started_at.timestamp() * 1000))
        )
        width = self._resolve_parallelism(plan)
        log = self._logger.bind(run_id=resolved_run_id, plan_id=plan.id, route_id=route.id)

        events: list[RecoveryEvent] = [
            RecoveryEvent.create(
                EventType.RUN_STARTED,
                incident_id=plan.incident_id,
                details={
                    "run_id": resolved_run_id,
                    "plan_id": plan.id,
                    "node_count": len(route.nodes),
                    "parallelism": width,
                },
                timestamp=started_at,
            )
        ]
        log.info("run_started", node_count=len(route.nodes), parallelism=width)

        machine = RunStateMachine(route, resolved_run_id, self._clock)
        completed: list[str] = []
        failed: list[str] = []
        waves: list[tuple[str, ...]] = []
        try:
            while True:
                ready = tuple(
                    node_id
                    for node_id in ready_nodes(route, set(completed))
                    if machine.state_of(node_id) is NodeState.PENDING
                )
                if not ready:
                    break
                for start in range(0, len(ready), width):
                    wave = ready[start : start + width]
                    waves.append(wave)
                    for node_id in wave:
                        if self._drive_node(machine, node_id, log):
                            completed.append(node_id)
                        else:
                            failed.append(node_id)

            blocked = tuple(
                node.id
                for node in route.nodes
                if machine.state_of(node.id) is NodeState.PENDING
            )
            events.extend(machine.drain_events())
        finally:
            machine.close()

        outcome_type = EventType.RUN_FAILED if failed or blocked else EventType.RUN_COMPLETED
        events.append(
            RecoveryEvent.create(
                outcome_type,
                incident_id=plan.incident_id,
                details={
                    "run_id": resolved_run_id,
                    "plan_id": plan.id,
                    "completed": list(completed),
                    "failed": list(failed),
                    "blocked": list(blocked),
                },
                timestamp=self._clock(),
            )
        )
        log.info(
            "run_finished",
            outcome=outcome_type.value,
            completed=len(completed),
            failed=list(failed),
            blocked=list(blocked),
            wave_count=len(waves),
        )
        return RunOutcome(
            run_id=resolved_run_id,
            plan_id=plan.id,
            completed=tuple(completed),
            failed=tuple(failed),
            blocked=blocked,
            waves=tuple(waves),
            events=tuple(events),
        )

    def _drive_node(self, machine: RunStateMachine, node_id: str, log: Any) -> bool:
        """Run a node until it is done or out of retry budget; return whether it is done."""
        work_item = machine.route.node(node_id).work_item
        record = machine.start(node_id)
        while True:
            result = self._attempt(work_item, record.attempt)
            self._advance_clock(result.elapsed_minutes)
            if result.ok:
                record = machine.complete(node_id)
            else:
                record = machine.fail(node_id, result.error or "effector reported failure")

            log.info(
                "node_transition",
                node_id=node_id,
                state=record.state.value,
                attempt=record.attempt,
                elapsed_minutes=result.elapsed_minutes,
                last_error=record.last_error,
            )
            if record.state is NodeState.DONE:
                return True
            if not machine.can_retry(node_id):
                log.warning(
                    "node_retry_budget_exhausted",
                    node_id=node_id,
                    attempt=record.attempt,
                    max_attempts=work_item.retry_policy.max_attempts,
                )
                return False

            ticket = machine.retry(node_id)
            log.info(
                "node_retry",
                node_id=node_id,
                attempt=ticket.attempt,
                delay_minutes=ticket.delay_minutes,
                not_before=ticket.not_before,
            )
            current = machine.record(node_id)
            if current is None:
                raise RuntimeError(f"node {node_id!r} lost its run record after retry")
            record = current

    def _attempt(self, work_item: WorkItem, attempt: int) -> EffectorResult:
        try:
            result = self._effector.execute(work_item, attempt)
        except Exception as exc:
            return EffectorResult(ok=False, error=f"{type(exc).__name__}: {exc}")
        if not isinstance(result, EffectorResult):
            return EffectorResult(
                ok=False,
                error=f"effector returned {type(result).__name__}, expected EffectorResult",
            )
        return result

    def _advance_clock(self, minutes: float) -> None:
        advance: Callable[..., object] | None = getattr(self._clock, "advance", None)
        if advance is not None and minutes > 0:
            advance(minutes=minutes)

    def _resolve_parallelism(self, plan: RecoveryPlan) -> int:
        if self._parallelism is not None:
            return self._parallelism
        raw = plan.metadata.get("parallelism")
        if raw is None:
            return DEFAULT_PARALLELISM
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(
                f"plan {plan.id!r} metadata.parallelism is not an integer: {raw!r}"
            ) from exc
        if value < 1:
            raise ValueError(f"plan {plan.id!r} metadata.parallelism must be >= 1")
        return value


__all__ = [
    "Effector",
    "EffectorResult",
    "PlanNotApprovedError",
    "RunLoop",
    "RunOutcome",
]
