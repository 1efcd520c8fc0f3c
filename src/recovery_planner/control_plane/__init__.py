"""Control-plane public API: scheduling, node run state, and the reference run loop."""

from recovery_planner.control_plane.run_loop import (
    Effector,
    EffectorResult,
    PlanNotApprovedError,
    RunLoop,
    RunOutcome,
)
from recovery_planner.control_plane.run_state import (
    IllegalTransitionError,
    RetryBudgetExhaustedError,
    RetryTicket,
    RunStateMachine,
)
from recovery_planner.control_plane.scheduler import (
    ExecutionSchedule,
    Scheduler,
    TopologicalOrder,
    batches,
    ready_nodes,
    schedule_route,
    split_by_owner,
    topological_order,
)

__all__ = [
    "Effector",
    "EffectorResult",
    "ExecutionSchedule",
    "IllegalTransitionError",
    "PlanNotApprovedError",
    "RetryBudgetExhaustedError",
    "RetryTicket",
    "RunLoop",
    "RunOutcome",
    "RunStateMachine",
    "Scheduler",
    "TopologicalOrder",
    "batches",
    "ready_nodes",
    "schedule_route",
    "split_by_owner",
    "topological_order",
]
