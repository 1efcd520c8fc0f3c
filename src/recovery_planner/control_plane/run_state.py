"""
Per-node execution lifecycle for one run of a recovery route.

States follow ``pending -> running -> {done, failed}``; a failed node may
re-enter ``running`` while its retry budget allows. Pending is implicit: a
declared node without a record is pending. Records are owned by the machine
and discarded by :meth:`RunStateMachine.close`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from recovery_planner.constants import TIMEOUT_ERROR
from recovery_planner.domain.events import EventType, RecoveryEvent
from recovery_planner.domain.models import NodeRunState, NodeState, RetryPolicy, Route
from recovery_planner.utils.clock import Clock, system_clock


# Edges an external report may take; pending has no record to report.
_REPORTABLE_TRANSITIONS: frozenset[tuple[NodeState, NodeState]] = frozenset(
    {
        (NodeState.PENDING, NodeState.RUNNING),
        (NodeState.RUNNING, NodeState.DONE),
        (NodeState.RUNNING, NodeState.FAILED),
        (NodeState.FAILED, NodeState.RUNNING),
    }
)


class IllegalTransitionError(ValueError):
    """Raised when a node is asked to move along an edge the lifecycle forbids."""


class RetryBudgetExhaustedError(IllegalTransitionError):
    """Raised when a failed node has no retry attempts left."""

    def __init__(self, node_id: str, attempt: int, max_attempts: int) -> None:
        self.node_id = node_id
        self.attempt = attempt
        self.max_attempts = max_attempts
        super().__init__(
            f"retry budget exhausted for node {node_id!r}: attempt {attempt} of {max_attempts}"
        )


@dataclass(frozen=True, slots=True)
class RetryTicket:
    """Advisory retry schedule returned alongside a granted retry."""

    node_id: str
    attempt: int
    delay_minutes: float
    not_before: datetime | None


class RunStateMachine:
    """Owns the ``NodeRunState`` records of one run, keyed by node id."""

    def __init__(self, route: Route, run_id: str, clock: Clock | None = None) -> None:
        self._route = route
        self._run_id = run_id
        self._clock: Clock = clock if clock is not None else system_clock
        self._nodes = route.nodes_by_id()
        self._records: dict[str, NodeRunState] = {}
        self._events: list[RecoveryEvent] = []
        self._closed = False

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def route(self) -> Route:
        return self._route

    @property
    def closed(self) -> bool:
        return self._closed

    def state_of(self, node_id: str) -> NodeState:
        self._require_open()
        self._require_node(node_id)
        record = self._records.get(node_id)
        return NodeState.PENDING if record is None else record.state

    def record(self, node_id: str) -> NodeRunState | None:
        """Return a copy of the node's record, or ``None`` while pending."""
        self._require_node(node_id)
        record = self._records.get(node_id)
        return None if record is None else record.copy()

    def start(self, node_id: str) -> NodeRunState:
        self._require_open()
        current = self.state_of(node_id)
        if current is not NodeState.PENDING:
            raise _illegal(node_id, current, NodeState.RUNNING)

        record = NodeRunState(node_id=node_id, state=NodeState.RUNNING, started_at=self._clock())
        self._records[node_id] = record
        self._emit(node_id, NodeState.PENDING, record)
        return record.copy()

    def complete(self, node_id: str) -> NodeRunState:
        """Finish a running node; overrunning its timeout fails it instead."""
        record = self._require_running(node_id, NodeState.DONE)
        now = self._clock()
        if self._overran(record, now):
            return self._finish(record, NodeState.FAILED, now, TIMEOUT_ERROR)
        return self._finish(record, NodeState.DONE, now, None)

    def fail(self, node_id: str, error: str) -> NodeRunState:
        if not isinstance(error, str) or not error.strip():
            raise ValueError("error must be a non-empty string")
        record = self._require_running(node_id, NodeState.FAILED)
        return self._finish(record, NodeState.FAILED, self._clock(), error)

    def enforce_timeout(self, node_id: str) -> bool:
        """Fail a running node that has exceeded its timeout; return whether it fired."""
        self._require_open()
        if self.state_of(node_id) is not NodeState.RUNNING:
            return False
        record = self._records[node_id]
        now = self._clock()
        if not self._overran(record, now):
            return False
        self._finish(record, NodeState.FAILED, now, TIMEOUT_ERROR)
        return True

    def can_retry(self, node_id: str) -> bool:
        if self.state_of(node_id) is not NodeState.FAILED:
            return False
        return self._records[node_id].attempt < self._policy(node_id).max_attempts

    def retry(self, node_id: str) -> RetryTicket:
        self._require_open()
        current = self.state_of(node_id)
        if current is not NodeState.FAILED:
            raise _illegal(node_id, current, NodeState.RUNNING)

        record = self._records[node_id]
        policy = self._policy(node_id)
        if record.attempt >= policy.max_attempts:
            raise RetryBudgetExhaustedError(node_id, record.attempt, policy.max_attempts)

        delay = policy.delay_minutes(record.attempt)
        failed_at = record.finished_at if record.finished_at is not None else self._clock()
        try:
            not_before: datetime | None = failed_at + timedelta(minutes=delay)
        except OverflowError:
            not_before = None

        previous = record.state
        record.state = NodeState.RUNNING
        record.attempt += 1
        record.started_at = self._clock()
        record.finished_at = None
        record.last_error = None
        self._emit(node_id, previous, record)
        return RetryTicket(
            node_id=node_id,
            attempt=record.attempt,
            delay_minutes=delay,
            not_before=not_before,
        )

    def apply_report(self, report: NodeRunState) -> NodeRunState:
        """
        Adopt an externally produced record for a declared node.

        A well-formed report must follow the same lifecycle edges as the
        direct operations, carrying the attempt number that edge implies;
        anything else raises :class:`IllegalTransitionError` and leaves the
        node untouched. Structurally invalid reports are not adopted as-is:
        the node is forced to ``failed`` with the problems recorded in
        ``last_error``.
        """
        self._require_open()
        if not isinstance(report, NodeRunState):
            raise TypeError("report must be NodeRunState")
        previous = self.state_of(report.node_id)
        existing = self._records.get(report.node_id)

        problems = report.issues()
        if problems:
            now = self._clock()
            adopted = NodeRunState(
                node_id=report.node_id,
                state=NodeState.FAILED,
                started_at=min(report.started_at, now),
                attempt=max(report.attempt, existing.attempt if existing is not None else 1),
                finished_at=now,
                last_error="invalid run record: " + "; ".join(problems),
            )
        else:
            self._check_report(report, previous, existing)
            adopted = report.copy()

        self._records[report.node_id] = adopted
        self._emit(report.node_id, previous, adopted)
        return adopted.copy()

    def is_terminal(self, node_id: str) -> bool:
        """Done, or failed with no retry budget left."""
        state = self.state_of(node_id)
        if state is NodeState.DONE:
            return True
        return state is NodeState.FAILED and not self.can_retry(node_id)

    def snapshot(self) -> dict[str, NodeRunState]:
        return {node_id: record.copy() for node_id, record in self._records.items()}

    def drain_events(self) -> tuple[RecoveryEvent, ...]:
        events = tuple(self._events)
        self._events.clear()
        return events

    def close(self) -> None:
        self._records.clear()
        self._closed = True

    def _policy(self, node_id: str) -> RetryPolicy:
        return self._nodes[node_id].work_item.retry_policy

    def _overran(self, record: NodeRunState, now: datetime) -> bool:
        limit = timedelta(minutes=self._nodes[record.node_id].work_item.timeout_minutes)
        return now - record.started_at > limit

    def _finish(
        self,
        record: NodeRunState,
        state: NodeState,
        now: datetime,
        error: str | None,
    ) -> NodeRunState:
        previous = record.state
        record.state = state
        record.finished_at = max(now, record.started_at)
        record.last_error = error
        self._emit(record.node_id, previous, record)
        return record.copy()

    def _check_report(
        self, report: NodeRunState, current: NodeState, existing: NodeRunState | None
    ) -> None:
        node_id = report.node_id
        if existing is not None and report.attempt < existing.attempt:
            raise IllegalTransitionError(
                f"report for node {node_id!r} rolls attempt back "
                f"from {existing.attempt} to {report.attempt}"
            )
        if (current, report.state) not in _REPORTABLE_TRANSITIONS:
            raise _illegal(node_id, current, report.state)

        if existing is None:
            expected = 1
        elif current is NodeState.FAILED:
            max_attempts = self._policy(node_id).max_attempts
            if existing.attempt >= max_attempts:
                raise RetryBudgetExhaustedError(node_id, existing.attempt, max_attempts)
            expected = existing.attempt + 1
        else:
            expected = existing.attempt
        if report.attempt != expected:
            raise IllegalTransitionError(
                f"report for node {node_id!r} carries attempt {report.attempt}; "
                f"{current.value} -> {report.state.value} requires attempt {expected}"
            )

    def _require_running(self, node_id: str, requested: NodeState) -> NodeRunState:
        self._require_open()
        current = self.state_of(node_id)
        if current is not NodeState.RUNNING:
            raise _illegal(node_id, current, requested)
        return self._records[node_id]

    def _require_node(self, node_id: str) -> None:
        if node_id not in self._nodes:
            raise KeyError(f"unknown node {node_id!r} in route {self._route.id!r}")

    def _require_open(self) -> None:
        if self._closed:
            raise IllegalTransitionError(f"run {self._run_id!r} is closed")

    def _emit(self, node_id: str, previous: NodeState, record: NodeRunState) -> None:
        details: dict[str, object] = {
            "run_id": self._run_id,
            "route_id": self._route.id,
            "node_id": node_id,
            "from": previous.value,
            "to": record.state.value,
            "attempt": record.attempt,
        }
        if record.last_error is not None:
            details["last_error"] = record.last_error
        self._events.append(
            RecoveryEvent.create(
                EventType.RUN_STATE_CHANGED,
                incident_id=self._route.owner_id,
                details=details,
                timestamp=self._clock(),
            )
        )


def _illegal(node_id: str, current: NodeState, requested: NodeState) -> IllegalTransitionError:
    return IllegalTransitionError(
        f"illegal transition for node {node_id!r}: {current.value} -> {requested.value}"
    )


__all__ = [
    "IllegalTransitionError",
    "RetryBudgetExhaustedError",
    "RetryTicket",
    "RunStateMachine",
]
