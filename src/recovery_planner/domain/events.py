"""Plan and run event payloads.

The planner never publishes these itself; it only builds the values an
eventing collaborator ships.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from recovery_planner.domain import ids
from recovery_planner.domain.models import (
    JSONValue,
    _as_datetime,
    _as_enum,
    _as_json_object,
    _as_str,
    _datetime_to_iso8601z,
    _expect_object,
)

_SENSITIVE_KEY_TERMS = ("secret", "password", "token", "credential")
_REDACTED_VALUE = "***REDACTED***"


class EventType(StrEnum):
    """Lifecycle notifications produced by planning, admission, and execution."""

    PLAN_CREATED = "PlanCreated"
    PLAN_ADMITTED = "PlanAdmitted"
    PLAN_DENIED = "PlanDenied"

    RUN_STARTED = "RunStarted"
    RUN_STATE_CHANGED = "RunStateChanged"
    RUN_COMPLETED = "RunCompleted"
    RUN_FAILED = "RunFailed"


@dataclass(frozen=True, slots=True)
class RecoveryEvent:
    """Serializable event envelope: ``(id, incident_id, type, details, timestamp)``."""

    id: str
    incident_id: str
    event_type: EventType
    details: dict[str, JSONValue]
    timestamp: datetime

    def __post_init__(self) -> None:
        try:
            ids.validate_event_id(self.id)
        except ValueError as exc:
            raise ValueError(f"RecoveryEvent.id: {exc}") from exc
        object.__setattr__(
            self, "incident_id", _as_str(self.incident_id, "RecoveryEvent.incident_id")
        )
        object.__setattr__(
            self, "event_type", _as_enum(EventType, self.event_type, "RecoveryEvent.event_type")
        )
        object.__setattr__(self, "details", _as_json_object(self.details, "RecoveryEvent.details"))
        object.__setattr__(
            self, "timestamp", _as_datetime(self.timestamp, "RecoveryEvent.timestamp")
        )

    @classmethod
    def create(
        cls,
        event_type: EventType | str,
        *,
        incident_id: str,
        details: Mapping[str, object],
        timestamp: datetime,
    ) -> RecoveryEvent:
        at = _as_datetime(timestamp, "RecoveryEvent.timestamp")
        return cls(
            id=ids.generate_event_id(timestamp_ms=int(at.timestamp() * 1000)),
            incident_id=incident_id,
            event_type=_as_enum(EventType, event_type, "RecoveryEvent.event_type"),
            details=_as_json_object(details, "RecoveryEvent.details"),
            timestamp=at,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "event_type": self.event_type.value,
            "details": self.details,
            "timestamp": _datetime_to_iso8601z(self.timestamp),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RecoveryEvent:
        parsed = _expect_object(
            data,
            "RecoveryEvent",
            required={"id", "incident_id", "event_type", "details", "timestamp"},
        )
        return cls(
            id=_as_str(parsed["id"], "RecoveryEvent.id"),
            incident_id=_as_str(parsed["incident_id"], "RecoveryEvent.incident_id"),
            event_type=_as_enum(EventType, parsed["event_type"], "RecoveryEvent.event_type"),
            details=_as_json_object(parsed["details"], "RecoveryEvent.details"),
            timestamp=_as_datetime(parsed["timestamp"], "RecoveryEvent.timestamp"),
        )

    @classmethod
    def from_json(cls, raw: str) -> RecoveryEvent:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"RecoveryEvent: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("RecoveryEvent: JSON root must be an object")
        return cls.from_dict(parsed)


def redact_sensitive(event: RecoveryEvent) -> RecoveryEvent:
    """Return a copy whose sensitive detail keys are deeply redacted."""
    redacted = _redact_value(event.details, key_context=None)
    if not isinstance(redacted, dict):
        raise ValueError("redacted details must remain a JSON object")
    return RecoveryEvent(
        id=event.id,
        incident_id=event.incident_id,
        event_type=event.event_type,
        details=redacted,
        timestamp=event.timestamp,
    )


def _redact_value(value: JSONValue, key_context: str | None) -> JSONValue:
    if key_context is not None and any(
        term in key_context.lower() for term in _SENSITIVE_KEY_TERMS
    ):
        return _REDACTED_VALUE
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


__all__ = ["EventType", "RecoveryEvent", "redact_sensitive"]
