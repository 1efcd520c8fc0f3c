"""Named planning stages ordered by their declared dependencies."""

from __future__ import annotations

from collections.abc import Callable, Iterable, MutableMapping
from dataclasses import dataclass
from typing import Any

from recovery_planner.planning.dag import require_order

StageContext = MutableMapping[str, Any]
StageHandler = Callable[[StageContext], object]


@dataclass(frozen=True, slots=True)
class Stage:
    id: str
    handler: StageHandler
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("stage_id must be a non-empty string")
        if not callable(self.handler):
            raise ValueError(f"stage {self.id!r}: handler must be callable")
        depends_on = tuple(self.depends_on)
        if any(not isinstance(item, str) or not item for item in depends_on):
            raise ValueError(f"stage {self.id!r}: depends_on must contain non-empty strings")
        if self.id in depends_on:
            raise ValueError(f"stage {self.id!r}: must not depend on itself")
        object.__setattr__(self, "depends_on", tuple(dict.fromkeys(depends_on)))


class StageRegistry:
    """Registry of stage handlers run in dependency order.

    The order is resolved lazily and cached until the next registration.
    Missing dependencies raise ``RouteValidationError``; cycles raise
    ``CycleError``.
    """

    __slots__ = ("_order", "_stages")

    def __init__(self, stages: Iterable[Stage] = ()) -> None:
        self._stages: dict[str, Stage] = {}
        self._order: tuple[str, ...] | None = None
        for stage in stages:
            self._add(stage, replace=False)

    @property
    def stages(self) -> tuple[Stage, ...]:
        return tuple(self._stages.values())

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def register(
        self,
        stage_id: str,
        handler: StageHandler,
        depends_on: Iterable[str] = (),
        *,
        replace: bool = False,
    ) -> Stage:
        stage = Stage(id=stage_id, handler=handler, depends_on=tuple(depends_on))
        self._add(stage, replace=replace)
        return stage

    def execution_order(self) -> tuple[str, ...]:
        if self._order is None:
            self._order = require_order(tuple(self._stages.values()))
        return self._order

    def run(self, context: StageContext | None = None) -> dict[str, object]:
        """Invoke every handler in order with the shared ``context``.

        Returns handler results keyed by stage id, in execution order. A
        handler exception stops the run and propagates.
        """
        shared: StageContext = context if context is not None else {}
        results: dict[str, object] = {}
        for stage_id in self.execution_order():
            results[stage_id] = self._stages[stage_id].handler(shared)
        return results

    def _add(self, stage: Stage, *, replace: bool) -> None:
        if stage.id in self._stages and not replace:
            raise ValueError(f"stage already exists: {stage.id!r}")
        self._stages[stage.id] = stage
        self._order = None


__all__ = ["Stage", "StageContext", "StageHandler", "StageRegistry"]
