"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from recovery_planner.constants import (
    DEFAULT_MAX_BATCH_COUNT,
    DEFAULT_MAX_CRITICAL_PATH_MINUTES,
    DEFAULT_MAX_RISK,
    DEFAULT_MAX_ROUTE_LENGTH,
    DEFAULT_TIMEZONE,
    MODEL_SCHEMA_VERSION,
    RETRY_MAX_ATTEMPTS,
    RETRY_MIN_ATTEMPTS,
    RETRY_MIN_BACKOFF_MULTIPLIER,
    RETRY_MIN_INTERVAL_MINUTES,
)
from recovery_planner.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_ID = 512
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512


class SeverityBand(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    EXTREME = "extreme"


class NodeState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class ConstraintKind(StrEnum):
    RISK = "risk"
    DURATION = "duration"
    DEPENDENCY = "dependency"
    PARALLELISM = "parallelism"


class RiskBucket(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


# ---------------------------------------------------------------------------
# Work items and routes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetryPolicy(CanonicalModel):
    """Per-node retry budget, clamped into supported bounds at construction."""

    max_attempts: int = RETRY_MIN_ATTEMPTS
    interval_minutes: int = RETRY_MIN_INTERVAL_MINUTES
    backoff_multiplier: float = RETRY_MIN_BACKOFF_MULTIPLIER

    def __post_init__(self) -> None:
        attempts = _as_whole_number(self.max_attempts, "RetryPolicy.max_attempts")
        interval = _as_whole_number(self.interval_minutes, "RetryPolicy.interval_minutes")
        backoff = _as_float(self.backoff_multiplier, "RetryPolicy.backoff_multiplier")
        object.__setattr__(
            self, "max_attempts", min(RETRY_MAX_ATTEMPTS, max(RETRY_MIN_ATTEMPTS, attempts))
        )
        object.__setattr__(self, "interval_minutes", max(RETRY_MIN_INTERVAL_MINUTES, interval))
        object.__setattr__(
            self, "backoff_multiplier", max(RETRY_MIN_BACKOFF_MULTIPLIER, backoff)
        )

    @classmethod
    def clamped(
        cls,
        max_attempts: float,
        interval_minutes: float,
        backoff_multiplier: float,
    ) -> RetryPolicy:
        return cls(
            max_attempts=cast("int", max_attempts),
            interval_minutes=cast("int", interval_minutes),
            backoff_multiplier=backoff_multiplier,
        )

    def delay_minutes(self, attempt: int) -> float:
        """Advisory backoff before the retry that follows ``attempt``."""
        if isinstance(attempt, bool) or not isinstance(attempt, int) or attempt < 0:
            raise ValueError(f"attempt must be a non-negative integer, got {attempt!r}")
        try:
            return self.interval_minutes * self.backoff_multiplier**attempt
        except OverflowError:
            return math.inf

    def capped(self, max_attempts: int) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=min(self.max_attempts, max_attempts),
            interval_minutes=self.interval_minutes,
            backoff_multiplier=self.backoff_multiplier,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RetryPolicy:
        parsed = _expect_object(
            data,
            "RetryPolicy",
            required=set(),
            optional={"max_attempts", "interval_minutes", "backoff_multiplier"},
        )
        return cls(
            max_attempts=cast("int", parsed.get("max_attempts", RETRY_MIN_ATTEMPTS)),
            interval_minutes=cast(
                "int", parsed.get("interval_minutes", RETRY_MIN_INTERVAL_MINUTES)
            ),
            backoff_multiplier=cast(
                "float", parsed.get("backoff_multiplier", RETRY_MIN_BACKOFF_MULTIPLIER)
            ),
        )


_WORK_ITEM_PARAMETER_FIELDS = frozenset(
    {"command_index", "template", "incident_id", "owner", "escalation_window_minutes"}
)


@dataclass(frozen=True, slots=True)
class WorkItemParameters(CanonicalModel):
    """Typed work-item parameters; keys outside the record live in ``extensions``."""

    command_index: int = 0
    template: str | None = None
    incident_id: str | None = None
    owner: str | None = None
    escalation_window_minutes: int | None = None
    extensions: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        path = "WorkItemParameters"
        object.__setattr__(
            self,
            "command_index",
            _as_int(self.command_index, f"{path}.command_index", minimum=0),
        )
        object.__setattr__(self, "template", _as_optional_str(self.template, f"{path}.template"))
        object.__setattr__(
            self, "incident_id", _as_optional_str(self.incident_id, f"{path}.incident_id")
        )
        object.__setattr__(self, "owner", _as_optional_str(self.owner, f"{path}.owner"))
        if self.escalation_window_minutes is not None:
            object.__setattr__(
                self,
                "escalation_window_minutes",
                _as_int(
                    self.escalation_window_minutes,
                    f"{path}.escalation_window_minutes",
                    minimum=1,
                ),
            )
        extensions = _as_json_object(self.extensions, f"{path}.extensions")
        typed = _WORK_ITEM_PARAMETER_FIELDS & set(extensions)
        if typed:
            _fail(f"{path}.extensions", f"typed parameters must not be shadowed: {sorted(typed)}")
        object.__setattr__(self, "extensions", extensions)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItemParameters:
        if not isinstance(data, Mapping):
            _fail("WorkItemParameters", f"expected object, got {type(data).__name__}")

        extensions: dict[str, object] = {}
        raw_extensions = data.get("extensions")
        if raw_extensions is not None:
            extensions.update(_as_json_object(raw_extensions, "WorkItemParameters.extensions"))
        for key, value in data.items():
            if not isinstance(key, str):
                _fail("WorkItemParameters", "object keys must be strings")
            if key not in _WORK_ITEM_PARAMETER_FIELDS and key != "extensions":
                extensions[key] = value

        escalation = data.get("escalation_window_minutes")
        return cls(
            command_index=cast("int", data.get("command_index", 0)),
            template=cast("str | None", data.get("template")),
            incident_id=cast("str | None", data.get("incident_id")),
            owner=cast("str | None", data.get("owner")),
            escalation_window_minutes=cast("int | None", escalation),
            extensions=_as_json_object(extensions, "WorkItemParameters.extensions"),
        )


@dataclass(frozen=True, slots=True)
class WorkItem(CanonicalModel):
    id: str
    command: str
    owner: str
    timeout_minutes: int
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    parameters: WorkItemParameters = field(default_factory=WorkItemParameters)

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "WorkItem.id", max_len=_MAX_ID))
        object.__setattr__(self, "command", _as_str(self.command, "WorkItem.command"))
        object.__setattr__(self, "owner", _as_str(self.owner, "WorkItem.owner"))
        object.__setattr__(
            self,
            "timeout_minutes",
            _as_int(self.timeout_minutes, "WorkItem.timeout_minutes", minimum=1),
        )
        if not isinstance(self.retry_policy, RetryPolicy):
            _fail("WorkItem.retry_policy", "must be RetryPolicy")
        if not isinstance(self.parameters, WorkItemParameters):
            _fail("WorkItem.parameters", "must be WorkItemParameters")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        parsed = _expect_object(
            data,
            "WorkItem",
            required={"id", "command", "owner", "timeout_minutes"},
            optional={"retry_policy", "parameters"},
        )
        return cls(
            id=_as_str(parsed["id"], "WorkItem.id", max_len=_MAX_ID),
            command=_as_str(parsed["command"], "WorkItem.command"),
            owner=_as_str(parsed["owner"], "WorkItem.owner"),
            timeout_minutes=_as_int(parsed["timeout_minutes"], "WorkItem.timeout_minutes"),
            retry_policy=RetryPolicy.from_dict(
                _as_mapping(parsed.get("retry_policy", {}), "WorkItem.retry_policy")
            ),
            parameters=WorkItemParameters.from_dict(
                _as_mapping(parsed.get("parameters", {}), "WorkItem.parameters")
            ),
        )


@dataclass(frozen=True, slots=True)
class RouteNode(CanonicalModel):
    work_item: WorkItem
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.work_item, WorkItem):
            _fail("RouteNode.work_item", "must be WorkItem")
        object.__setattr__(
            self,
            "depends_on",
            _as_str_tuple(
                self.depends_on,
                f"RouteNode[{self.work_item.id}].depends_on",
                allow_empty=True,
                unique=True,
                max_len=_MAX_ID,
            ),
        )

    @property
    def id(self) -> str:
        return self.work_item.id

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RouteNode:
        parsed = _expect_object(
            data, "RouteNode", required={"work_item"}, optional={"depends_on"}
        )
        return cls(
            work_item=WorkItem.from_dict(_as_mapping(parsed["work_item"], "RouteNode.work_item")),
            depends_on=_as_str_tuple(
                parsed.get("depends_on", ()),
                "RouteNode.depends_on",
                allow_empty=True,
                unique=True,
                max_len=_MAX_ID,
            ),
        )


@dataclass(frozen=True, slots=True)
class Route(CanonicalModel):
    """Named dependency graph of work items owned by an incident or run.

    Construction rejects duplicate node ids only; dependency closure and
    acyclicity are reported by ``recovery_planner.planning.dag.validate``.
    """

    id: str
    name: str
    owner_id: str
    nodes: tuple[RouteNode, ...]
    created_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "Route.id", max_len=_MAX_ID))
        object.__setattr__(self, "name", _as_str(self.name, "Route.name"))
        object.__setattr__(
            self, "owner_id", _as_str(self.owner_id, "Route.owner_id", max_len=_MAX_ID)
        )
        nodes = tuple(_as_sequence(self.nodes, "Route.nodes"))
        seen: set[str] = set()
        for index, node in enumerate(nodes):
            if not isinstance(node, RouteNode):
                _fail(f"Route.nodes[{index}]", f"expected RouteNode, got {type(node).__name__}")
            if node.id in seen:
                _fail(f"Route.nodes[{index}]", f"duplicate node id {node.id!r}")
            seen.add(node.id)
        object.__setattr__(self, "nodes", cast("tuple[RouteNode, ...]", nodes))
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "Route.created_at"))

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(node.id for node in self.nodes)

    def node(self, node_id: str) -> RouteNode:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"Unknown route node: {node_id}")

    def nodes_by_id(self) -> dict[str, RouteNode]:
        return {node.id: node for node in self.nodes}

    def __len__(self) -> int:
        return len(self.nodes)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Route:
        parsed = _expect_object(
            data,
            "Route",
            required={"id", "name", "owner_id", "nodes", "created_at"},
        )
        return cls(
            id=_as_str(parsed["id"], "Route.id", max_len=_MAX_ID),
            name=_as_str(parsed["name"], "Route.name"),
            owner_id=_as_str(parsed["owner_id"], "Route.owner_id", max_len=_MAX_ID),
            nodes=tuple(
                RouteNode.from_dict(_as_mapping(item, f"Route.nodes[{index}]"))
                for index, item in enumerate(_as_sequence(parsed["nodes"], "Route.nodes"))
            ),
            created_at=_as_datetime(parsed["created_at"], "Route.created_at"),
        )


@dataclass(frozen=True, slots=True)
class SchedulingWindow(CanonicalModel):
    start_at: datetime
    end_at: datetime
    timezone: str = DEFAULT_TIMEZONE

    def __post_init__(self) -> None:
        start = _as_datetime(self.start_at, "SchedulingWindow.start_at")
        end = _as_datetime(self.end_at, "SchedulingWindow.end_at")
        if end < start:
            _fail("SchedulingWindow.end_at", "must be >= SchedulingWindow.start_at")
        object.__setattr__(self, "start_at", start)
        object.__setattr__(self, "end_at", end)
        object.__setattr__(
            self, "timezone", _as_str(self.timezone, "SchedulingWindow.timezone", max_len=64)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SchedulingWindow:
        parsed = _expect_object(
            data, "SchedulingWindow", required={"start_at", "end_at"}, optional={"timezone"}
        )
        return cls(
            start_at=_as_datetime(parsed["start_at"], "SchedulingWindow.start_at"),
            end_at=_as_datetime(parsed["end_at"], "SchedulingWindow.end_at"),
            timezone=_as_str(parsed.get("timezone", DEFAULT_TIMEZONE), "SchedulingWindow.timezone"),
        )


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IncidentSignal(CanonicalModel):
    name: str
    value: float
    threshold: float
    weight: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "IncidentSignal.name"))
        object.__setattr__(
            self, "value", _as_float(self.value, "IncidentSignal.value", minimum=0.0)
        )
        threshold = _as_float(self.threshold, "IncidentSignal.threshold")
        if threshold <= 0.0:
            _fail("IncidentSignal.threshold", "must be > 0")
        object.__setattr__(self, "threshold", threshold)
        object.__setattr__(
            self, "weight", _as_float(self.weight, "IncidentSignal.weight", minimum=0.0)
        )

    @property
    def normalized(self) -> float:
        """Signal pressure as ``min(1, value / threshold)``."""
        return min(1.0, self.value / self.threshold)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> IncidentSignal:
        parsed = _expect_object(
            data,
            "IncidentSignal",
            required={"name", "value", "threshold"},
            optional={"weight"},
        )
        return cls(
            name=_as_str(parsed["name"], "IncidentSignal.name"),
            value=_as_float(parsed["value"], "IncidentSignal.value"),
            threshold=_as_float(parsed["threshold"], "IncidentSignal.threshold"),
            weight=_as_float(parsed.get("weight", 1.0), "IncidentSignal.weight"),
        )


@dataclass(frozen=True, slots=True)
class IncidentScope(CanonicalModel):
    tenant_id: str
    service_name: str
    region: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tenant_id", _as_str(self.tenant_id, "IncidentScope.tenant_id"))
        object.__setattr__(
            self, "service_name", _as_str(self.service_name, "IncidentScope.service_name")
        )
        object.__setattr__(self, "region", _as_optional_str(self.region, "IncidentScope.region"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> IncidentScope:
        parsed = _expect_object(
            data,
            "IncidentScope",
            required={"tenant_id", "service_name"},
            optional={"region"},
        )
        return cls(
            tenant_id=_as_str(parsed["tenant_id"], "IncidentScope.tenant_id"),
            service_name=_as_str(parsed["service_name"], "IncidentScope.service_name"),
            region=_as_optional_str(parsed.get("region"), "IncidentScope.region"),
        )


@dataclass(frozen=True, slots=True)
class IncidentRecord(CanonicalModel):
    id: str
    title: str
    scope: IncidentScope
    severity: SeverityBand
    opened_at: datetime
    signals: tuple[IncidentSignal, ...] = ()
    labels: tuple[str, ...] = ()
    resolved_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "IncidentRecord.id", max_len=_MAX_ID))
        object.__setattr__(self, "title", _as_str(self.title, "IncidentRecord.title"))
        if not isinstance(self.scope, IncidentScope):
            _fail("IncidentRecord.scope", "must be IncidentScope")
        object.__setattr__(
            self, "severity", _as_enum(SeverityBand, self.severity, "IncidentRecord.severity")
        )
        opened_at = _as_datetime(self.opened_at, "IncidentRecord.opened_at")
        object.__setattr__(self, "opened_at", opened_at)
        signals = tuple(_as_sequence(self.signals, "IncidentRecord.signals"))
        for index, signal in enumerate(signals):
            if not isinstance(signal, IncidentSignal):
                _fail(f"IncidentRecord.signals[{index}]", "must be IncidentSignal")
        object.__setattr__(self, "signals", signals)
        object.__setattr__(
            self,
            "labels",
            _as_str_tuple(self.labels, "IncidentRecord.labels", allow_empty=True, unique=True),
        )
        if self.resolved_at is not None:
            resolved_at = _as_datetime(self.resolved_at, "IncidentRecord.resolved_at")
            if resolved_at < opened_at:
                _fail("IncidentRecord.resolved_at", "must be >= IncidentRecord.opened_at")
            object.__setattr__(self, "resolved_at", resolved_at)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> IncidentRecord:
        parsed = _expect_object(
            data,
            "IncidentRecord",
            required={"id", "title", "scope", "severity", "opened_at"},
            optional={"signals", "labels", "resolved_at"},
        )
        return cls(
            id=_as_str(parsed["id"], "IncidentRecord.id", max_len=_MAX_ID),
            title=_as_str(parsed["title"], "IncidentRecord.title"),
            scope=IncidentScope.from_dict(_as_mapping(parsed["scope"], "IncidentRecord.scope")),
            severity=_as_enum(SeverityBand, parsed["severity"], "IncidentRecord.severity"),
            opened_at=_as_datetime(parsed["opened_at"], "IncidentRecord.opened_at"),
            signals=tuple(
                IncidentSignal.from_dict(_as_mapping(item, f"IncidentRecord.signals[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed.get("signals", ()), "IncidentRecord.signals")
                )
            ),
            labels=_as_str_tuple(
                parsed.get("labels", ()), "IncidentRecord.labels", allow_empty=True, unique=True
            ),
            resolved_at=(
                _as_datetime(parsed["resolved_at"], "IncidentRecord.resolved_at")
                if parsed.get("resolved_at") is not None
                else None
            ),
        )


# ---------------------------------------------------------------------------
# Plans and admission
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RecoveryPlan(CanonicalModel):
    """Unapproved-by-default recovery plan; ``approved`` is the only mutable field."""

    id: str
    incident_id: str
    title: str
    route: Route
    windows: tuple[SchedulingWindow, ...]
    risk_score: float
    created_at: datetime
    approved: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    schema_version: int = MODEL_SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_int(
            self.schema_version, "RecoveryPlan.schema_version", minimum=1
        )
        self.id = _validate_prefixed(
            _as_str(self.id, "RecoveryPlan.id"), domain_ids.validate_plan_id, "RecoveryPlan.id"
        )
        self.incident_id = _as_str(self.incident_id, "RecoveryPlan.incident_id", max_len=_MAX_ID)
        self.title = _as_str(self.title, "RecoveryPlan.title")
        if not isinstance(self.route, Route):
            _fail("RecoveryPlan.route", "must be Route")
        windows = tuple(_as_sequence(self.windows, "RecoveryPlan.windows"))
        for index, window in enumerate(windows):
            if not isinstance(window, SchedulingWindow):
                _fail(f"RecoveryPlan.windows[{index}]", "must be SchedulingWindow")
        self.windows = cast("tuple[SchedulingWindow, ...]", windows)
        risk = _as_float(self.risk_score, "RecoveryPlan.risk_score", minimum=0.0)
        if risk > 1.0:
            _fail("RecoveryPlan.risk_score", "must be <= 1")
        self.risk_score = risk
        self.created_at = _as_datetime(self.created_at, "RecoveryPlan.created_at")
        self.approved = _as_bool(self.approved, "RecoveryPlan.approved")
        self.metadata = _as_str_dict(self.metadata, "RecoveryPlan.metadata")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RecoveryPlan:
        parsed = _expect_object(
            data,
            "RecoveryPlan",
            required={"id", "incident_id", "title", "route", "windows", "risk_score", "created_at"},
            optional={"approved", "metadata", "schema_version"},
        )
        return cls(
            id=_as_str(parsed["id"], "RecoveryPlan.id"),
            incident_id=_as_str(parsed["incident_id"], "RecoveryPlan.incident_id"),
            title=_as_str(parsed["title"], "RecoveryPlan.title"),
            route=Route.from_dict(_as_mapping(parsed["route"], "RecoveryPlan.route")),
            windows=tuple(
                SchedulingWindow.from_dict(_as_mapping(item, f"RecoveryPlan.windows[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed["windows"], "RecoveryPlan.windows")
                )
            ),
            risk_score=_as_float(parsed["risk_score"], "RecoveryPlan.risk_score"),
            created_at=_as_datetime(parsed["created_at"], "RecoveryPlan.created_at"),
            approved=_as_bool(parsed.get("approved", False), "RecoveryPlan.approved"),
            metadata=_as_str_dict(parsed.get("metadata", {}), "RecoveryPlan.metadata"),
            schema_version=_as_int(
                parsed.get("schema_version", MODEL_SCHEMA_VERSION), "RecoveryPlan.schema_version"
            ),
        )


@dataclass(frozen=True, slots=True)
class PolicyConstraint(CanonicalModel):
    kind: ConstraintKind
    threshold: float
    observed: float
    passed: bool
    reasons: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "kind", _as_enum(ConstraintKind, self.kind, "PolicyConstraint.kind")
        )
        object.__setattr__(
            self, "threshold", _as_float(self.threshold, "PolicyConstraint.threshold")
        )
        object.__setattr__(self, "observed", _as_float(self.observed, "PolicyConstraint.observed"))
        object.__setattr__(self, "passed", _as_bool(self.passed, "PolicyConstraint.passed"))
        object.__setattr__(
            self,
            "reasons",
            _as_str_tuple(self.reasons, "PolicyConstraint.reasons", allow_empty=True, unique=False),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PolicyConstraint:
        parsed = _expect_object(
            data,
            "PolicyConstraint",
            required={"kind", "threshold", "observed", "passed"},
            optional={"reasons"},
        )
        return cls(
            kind=_as_enum(ConstraintKind, parsed["kind"], "PolicyConstraint.kind"),
            threshold=_as_float(parsed["threshold"], "PolicyConstraint.threshold"),
            observed=_as_float(parsed["observed"], "PolicyConstraint.observed"),
            passed=_as_bool(parsed["passed"], "PolicyConstraint.passed"),
            reasons=_as_str_tuple(
                parsed.get("reasons", ()),
                "PolicyConstraint.reasons",
                allow_empty=True,
                unique=False,
            ),
        )


@dataclass(frozen=True, slots=True)
class SloTarget(CanonicalModel):
    max_risk: float = DEFAULT_MAX_RISK
    max_route_length: int = DEFAULT_MAX_ROUTE_LENGTH
    max_batch_count: int = DEFAULT_MAX_BATCH_COUNT
    max_critical_path_minutes: int = DEFAULT_MAX_CRITICAL_PATH_MINUTES

    def __post_init__(self) -> None:
        max_risk = _as_float(self.max_risk, "SloTarget.max_risk", minimum=0.0)
        if max_risk > 1.0:
            _fail("SloTarget.max_risk", "must be <= 1")
        object.__setattr__(self, "max_risk", max_risk)
        object.__setattr__(
            self,
            "max_route_length",
            _as_int(self.max_route_length, "SloTarget.max_route_length", minimum=1),
        )
        object.__setattr__(
            self,
            "max_batch_count",
            _as_int(self.max_batch_count, "SloTarget.max_batch_count", minimum=1),
        )
        object.__setattr__(
            self,
            "max_critical_path_minutes",
            _as_int(
                self.max_critical_path_minutes, "SloTarget.max_critical_path_minutes", minimum=1
            ),
        )

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> SloTarget:
        """Build from a validated config mapping (uses the ``[slo]`` section)."""
        section = config.get("slo", {})
        return cls.from_dict(_as_mapping(section, "config.slo"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SloTarget:
        parsed = _expect_object(
            data,
            "SloTarget",
            required=set(),
            optional={
                "max_risk",
                "max_route_length",
                "max_batch_count",
                "max_critical_path_minutes",
            },
        )
        return cls(
            max_risk=_as_float(parsed.get("max_risk", DEFAULT_MAX_RISK), "SloTarget.max_risk"),
            max_route_length=_as_int(
                parsed.get("max_route_length", DEFAULT_MAX_ROUTE_LENGTH),
                "SloTarget.max_route_length",
            ),
            max_batch_count=_as_int(
                parsed.get("max_batch_count", DEFAULT_MAX_BATCH_COUNT),
                "SloTarget.max_batch_count",
            ),
            max_critical_path_minutes=_as_int(
                parsed.get("max_critical_path_minutes", DEFAULT_MAX_CRITICAL_PATH_MINUTES),
                "SloTarget.max_critical_path_minutes",
            ),
        )


@dataclass(frozen=True, slots=True)
class PolicyExecutionProfile(CanonicalModel):
    """Admission evidence for one plan: risk signal, constraints, and route shape."""

    plan_id: str
    risk_signal: float
    risk_bucket: RiskBucket
    constraints: tuple[PolicyConstraint, ...]
    critical_path: int
    critical_path_nodes: tuple[str, ...]
    total_duration_minutes: int
    route_length: int
    batch_count: int

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "plan_id", _as_str(self.plan_id, "PolicyExecutionProfile.plan_id")
        )
        object.__setattr__(
            self,
            "risk_signal",
            _as_float(self.risk_signal, "PolicyExecutionProfile.risk_signal", minimum=0.0),
        )
        object.__setattr__(
            self,
            "risk_bucket",
            _as_enum(RiskBucket, self.risk_bucket, "PolicyExecutionProfile.risk_bucket"),
        )
        constraints = tuple(_as_sequence(self.constraints, "PolicyExecutionProfile.constraints"))
        for index, item in enumerate(constraints):
            if not isinstance(item, PolicyConstraint):
                _fail(f"PolicyExecutionProfile.constraints[{index}]", "must be PolicyConstraint")
        object.__setattr__(self, "constraints", constraints)
        object.__setattr__(
            self,
            "critical_path",
            _as_int(self.critical_path, "PolicyExecutionProfile.critical_path", minimum=1),
        )
        object.__setattr__(
            self,
            "critical_path_nodes",
            _as_str_tuple(
                self.critical_path_nodes,
                "PolicyExecutionProfile.critical_path_nodes",
                allow_empty=True,
                unique=True,
                max_len=_MAX_ID,
            ),
        )
        for name in ("total_duration_minutes", "route_length", "batch_count"):
            object.__setattr__(
                self,
                name,
                _as_int(getattr(self, name), f"PolicyExecutionProfile.{name}", minimum=0),
            )

    def constraint(self, kind: ConstraintKind | str) -> PolicyConstraint:
        wanted = _as_enum(ConstraintKind, kind, "PolicyExecutionProfile.constraint")
        for item in self.constraints:
            if item.kind is wanted:
                return item
        raise KeyError(f"constraint {wanted.value!r} was not evaluated")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PolicyExecutionProfile:
        required = {
            "plan_id",
            "risk_signal",
            "risk_bucket",
            "constraints",
            "critical_path",
            "critical_path_nodes",
            "total_duration_minutes",
            "route_length",
            "batch_count",
        }
        parsed = _expect_object(data, "PolicyExecutionProfile", required=required)
        return cls(
            plan_id=_as_str(parsed["plan_id"], "PolicyExecutionProfile.plan_id"),
            risk_signal=_as_float(parsed["risk_signal"], "PolicyExecutionProfile.risk_signal"),
            risk_bucket=_as_enum(
                RiskBucket, parsed["risk_bucket"], "PolicyExecutionProfile.risk_bucket"
            ),
            constraints=tuple(
                PolicyConstraint.from_dict(
                    _as_mapping(item, f"PolicyExecutionProfile.constraints[{index}]")
                )
                for index, item in enumerate(
                    _as_sequence(parsed["constraints"], "PolicyExecutionProfile.constraints")
                )
            ),
            critical_path=_as_int(parsed["critical_path"], "PolicyExecutionProfile.critical_path"),
            critical_path_nodes=_as_str_tuple(
                parsed["critical_path_nodes"],
                "PolicyExecutionProfile.critical_path_nodes",
                allow_empty=True,
                unique=True,
            ),
            total_duration_minutes=_as_int(
                parsed["total_duration_minutes"], "PolicyExecutionProfile.total_duration_minutes"
            ),
            route_length=_as_int(parsed["route_length"], "PolicyExecutionProfile.route_length"),
            batch_count=_as_int(parsed["batch_count"], "PolicyExecutionProfile.batch_count"),
        )


@dataclass(frozen=True, slots=True)
class AdmissionDecision(CanonicalModel):
    plan_id: str
    approved: bool
    score: float
    can_auto_approve: bool
    reasons: tuple[str, ...]
    profile: PolicyExecutionProfile

    def __post_init__(self) -> None:
        object.__setattr__(self, "plan_id", _as_str(self.plan_id, "AdmissionDecision.plan_id"))
        object.__setattr__(self, "approved", _as_bool(self.approved, "AdmissionDecision.approved"))
        score = _as_float(self.score, "AdmissionDecision.score", minimum=0.0)
        if score > 1.0:
            _fail("AdmissionDecision.score", "must be <= 1")
        object.__setattr__(self, "score", score)
        object.__setattr__(
            self,
            "can_auto_approve",
            _as_bool(self.can_auto_approve, "AdmissionDecision.can_auto_approve"),
        )
        if self.can_auto_approve and not self.approved:
            _fail("AdmissionDecision.can_auto_approve", "requires an approved decision")
        object.__setattr__(
            self,
            "reasons",
            _as_str_tuple(
                self.reasons, "AdmissionDecision.reasons", allow_empty=True, unique=False
            ),
        )
        if not isinstance(self.profile, PolicyExecutionProfile):
            _fail("AdmissionDecision.profile", "must be PolicyExecutionProfile")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AdmissionDecision:
        parsed = _expect_object(
            data,
            "AdmissionDecision",
            required={"plan_id", "approved", "score", "can_auto_approve", "reasons", "profile"},
        )
        return cls(
            plan_id=_as_str(parsed["plan_id"], "AdmissionDecision.plan_id"),
            approved=_as_bool(parsed["approved"], "AdmissionDecision.approved"),
            score=_as_float(parsed["score"], "AdmissionDecision.score"),
            can_auto_approve=_as_bool(
                parsed["can_auto_approve"], "AdmissionDecision.can_auto_approve"
            ),
            reasons=_as_str_tuple(
                parsed["reasons"], "AdmissionDecision.reasons", allow_empty=True, unique=False
            ),
            profile=PolicyExecutionProfile.from_dict(
                _as_mapping(parsed["profile"], "AdmissionDecision.profile")
            ),
        )


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class NodeRunState(CanonicalModel):
    """Runtime record for one node within one run.

    Field types are validated at construction; cross-field consistency is
    reported by :meth:`issues` so externally produced records can be rejected
    without raising.
    """

    node_id: str
    state: NodeState
    started_at: datetime
    attempt: int = 1
    finished_at: datetime | None = None
    last_error: str | None = None

    def __post_init__(self) -> None:
        self.node_id = _as_str(self.node_id, "NodeRunState.node_id", max_len=_MAX_ID)
        self.state = _as_enum(NodeState, self.state, "NodeRunState.state")
        self.started_at = _as_datetime(self.started_at, "NodeRunState.started_at")
        self.attempt = _as_int(self.attempt, "NodeRunState.attempt", minimum=1)
        if self.finished_at is not None:
            self.finished_at = _as_datetime(self.finished_at, "NodeRunState.finished_at")
        self.last_error = _as_optional_str(self.last_error, "NodeRunState.last_error")

    @property
    def is_terminal(self) -> bool:
        return self.state in (NodeState.DONE, NodeState.FAILED)

    def issues(self) -> tuple[str, ...]:
        found: list[str] = []
        if self.state is NodeState.PENDING:
            found.append("pending nodes have no run record")
        if self.is_terminal and self.finished_at is None:
            found.append(f"{self.state.value} record is missing finished_at")
        if self.state is NodeState.RUNNING and self.finished_at is not None:
            found.append("running record must not have finished_at")
        if self.finished_at is not None and self.finished_at < self.started_at:
            found.append("finished_at precedes started_at")
        if self.state is NodeState.FAILED and self.last_error is None:
            found.append("failed record is missing last_error")
        return tuple(found)

    def copy(self) -> NodeRunState:
        return NodeRunState(
            node_id=self.node_id,
            state=self.state,
            started_at=self.started_at,
            attempt=self.attempt,
            finished_at=self.finished_at,
            last_error=self.last_error,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> NodeRunState:
        parsed = _expect_object(
            data,
            "NodeRunState",
            required={"node_id", "state", "started_at"},
            optional={"attempt", "finished_at", "last_error"},
        )
        return cls(
            node_id=_as_str(parsed["node_id"], "NodeRunState.node_id", max_len=_MAX_ID),
            state=_as_enum(NodeState, parsed["state"], "NodeRunState.state"),
            started_at=_as_datetime(parsed["started_at"], "NodeRunState.started_at"),
            attempt=_as_int(parsed.get("attempt", 1), "NodeRunState.attempt"),
            finished_at=(
                _as_datetime(parsed["finished_at"], "NodeRunState.finished_at")
                if parsed.get("finished_at") is not None
                else None
            ),
            last_error=_as_optional_str(parsed.get("last_error"), "NodeRunState.last_error"),
        )


# ---------------------------------------------------------------------------
# Validation and serialization helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    parsed = _as_mapping(value, path)
    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_mapping(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item
    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    try:
        parsed = float(value)
    except OverflowError:
        _fail(path, "must be finite")
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_whole_number(value: object, path: str) -> int:
    """Integers pass through exactly; other finite numbers are floored."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return math.floor(_as_float(value, path))


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
    max_len: int = _MAX_TEXT,
) -> tuple[str, ...]:
    values = _as_sequence(value, path)
    if not allow_empty and not values:
        _fail(path, "must not be empty")
    parsed = [
        _as_str(item, f"{path}[{index}]", max_len=max_len) for index, item in enumerate(values)
    ]
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return tuple(parsed)


def _as_str_dict(value: object, path: str) -> dict[str, str]:
    parsed = _as_mapping(value, path)
    return {
        _as_str(key, f"{path}.<key>"): _as_str(item, f"{path}.{key}")
        for key, item in parsed.items()
    }


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _validate_prefixed(value: str, validator: Callable[[str], None], path: str) -> str:
    try:
        validator(value)
    except ValueError as exc:
        _fail(path, str(exc))
    return value


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: _serialize_value(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "AdmissionDecision",
    "CanonicalModel",
    "ConstraintKind",
    "IncidentRecord",
    "IncidentScope",
    "IncidentSignal",
    "JSONScalar",
    "JSONValue",
    "NodeRunState",
    "NodeState",
    "PolicyConstraint",
    "PolicyExecutionProfile",
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
]
