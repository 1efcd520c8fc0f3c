"""Explicit clock capability for timestamping plans and run state."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Return the current wall-clock time in UTC."""
    return datetime.now(tz=UTC)


class FixedClock:
    """Clock that always returns the same instant."""

    __slots__ = ("_now",)

    def __init__(self, now: datetime) -> None:
        self._now = _require_aware(now)

    def __call__(self) -> datetime:
        return self._now


class ManualClock:
    """Clock advanced explicitly by tests and simulated runtimes."""

    __slots__ = ("_now",)

    def __init__(self, start: datetime) -> None:
        self._now = _require_aware(start)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, *, minutes: float = 0.0, seconds: float = 0.0) -> datetime:
        if minutes < 0 or seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._now = self._now + timedelta(minutes=minutes, seconds=seconds)
        return self._now

    def set(self, now: datetime) -> None:
        candidate = _require_aware(now)
        if candidate < self._now:
            raise ValueError("clock cannot move backwards")
        self._now = candidate


def _require_aware(value: datetime) -> datetime:
    if not isinstance(value, datetime):
        raise ValueError(f"clock value must be datetime, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("clock value must be timezone-aware")
    return value.astimezone(UTC)


__all__ = ["Clock", "FixedClock", "ManualClock", "system_clock"]
