"""
Response-template catalog and deterministic template selection.

A template is an ordered list of named steps; step dependencies reference
other steps of the same template by command name. Catalogs can be loaded
from YAML files shaped like::

    templates:
      - label: stability-first
        selector_labels: []
        steps:
          - command: triage
            owner: oncall
            minutes: 12
            depends_on: []
            retry_policy: {max_attempts: 2, interval_minutes: 1, backoff_multiplier: 1.5}
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final, cast

import yaml

from recovery_planner.constants import COMPLIANCE_LABEL
from recovery_planner.domain.models import RetryPolicy
from recovery_planner.planning.dag import validate

_CATALOG_FIELDS: Final[frozenset[str]] = frozenset({"templates"})
_TEMPLATE_REQUIRED: Final[frozenset[str]] = frozenset({"label", "steps"})
_TEMPLATE_ALLOWED: Final[frozenset[str]] = _TEMPLATE_REQUIRED | frozenset({"selector_labels"})
_STEP_REQUIRED: Final[frozenset[str]] = frozenset({"command", "owner", "minutes"})
_STEP_ALLOWED: Final[frozenset[str]] = _STEP_REQUIRED | frozenset({"depends_on", "retry_policy"})

_StepRow = tuple[str, str, int, tuple[str, ...], tuple[int, int, float]]

# (command, owner, minutes, depends_on, (max_attempts, interval_minutes, backoff_multiplier))
_DEFAULT_TEMPLATES: Final[tuple[tuple[str, tuple[str, ...], tuple[_StepRow, ...]], ...]] = (
    (
        "stability-first",
        (),
        (
            ("triage", "oncall", 12, (), (2, 1, 1.5)),
            ("stabilize", "platform", 25, ("triage",), (2, 1, 1.4)),
            ("verify", "qa", 18, ("stabilize",), (1, 1, 1.2)),
            ("mitigate", "security", 40, ("stabilize",), (2, 2, 2.0)),
            ("close", "oncall", 8, ("verify", "mitigate"), (1, 1, 1.0)),
        ),
    ),
    (
        "evidence-first",
        (COMPLIANCE_LABEL,),
        (
            ("triage", "incident", 10, (), (2, 1, 1.2)),
            ("verify", "sre", 20, ("triage",), (2, 1, 1.6)),
            ("mitigate", "ops", 60, ("triage",), (3, 2, 1.3)),
            ("close", "incident", 12, ("verify", "mitigate"), (1, 1, 1.0)),
        ),
    ),
)


class UnknownTemplateError(KeyError):
    """Raised when a template label is not present in the catalog."""


@dataclass(frozen=True, slots=True)
class TemplateStep:
    command: str
    owner: str
    minutes: int
    depends_on: tuple[str, ...] = ()
    retry_policy: RetryPolicy = RetryPolicy()

    def __post_init__(self) -> None:
        object.__setattr__(self, "command", _coerce_non_empty_str(self.command, "step.command"))
        object.__setattr__(self, "owner", _coerce_non_empty_str(self.owner, "step.owner"))
        if isinstance(self.minutes, bool) or not isinstance(self.minutes, int):
            raise ValueError(f"step.minutes: expected integer, got {type(self.minutes).__name__}")
        depends_on = tuple(
            _coerce_non_empty_str(item, f"step.depends_on[{index}]")
            for index, item in enumerate(self.depends_on)
        )
        if len(set(depends_on)) != len(depends_on):
            raise ValueError(f"step {self.command!r}: depends_on contains duplicates")
        object.__setattr__(self, "depends_on", depends_on)
        if not isinstance(self.retry_policy, RetryPolicy):
            raise ValueError("step.retry_policy: expected RetryPolicy")

    @property
    def id(self) -> str:
        return self.command


@dataclass(frozen=True, slots=True)
class PlanTemplate:
    """Named step list; ``selector_labels`` force selection for matching incidents."""

    label: str
    steps: tuple[TemplateStep, ...]
    selector_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "label", _coerce_non_empty_str(self.label, "template.label"))
        steps = tuple(self.steps)
        if not steps:
            raise ValueError(f"template {self.label!r}: must declare at least one step")
        object.__setattr__(self, "steps", steps)
        object.__setattr__(self, "selector_labels", tuple(self.selector_labels))

        seen: set[str] = set()
        for step in steps:
            if step.command in seen:
                raise ValueError(f"template {self.label!r}: duplicate step {step.command!r}")
            seen.add(step.command)
        result = validate(steps)
        if not result.ok:
            raise ValueError(f"template {self.label!r}: " + "; ".join(result.issues))

    def step_index(self, command: str) -> int:
        for index, step in enumerate(self.steps):
            if step.command == command:
                return index
        raise KeyError(f"template {self.label!r} has no step {command!r}")


class TemplateCatalog:
    """Ordered, label-unique collection of plan templates."""

    __slots__ = ("_templates",)

    def __init__(self, templates: Iterable[PlanTemplate]) -> None:
        ordered = tuple(templates)
        if not ordered:
            raise ValueError("template catalog must contain at least one template")
        labels = [template.label for template in ordered]
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            raise ValueError(f"template catalog has duplicate labels: {duplicates}")
        self._templates = ordered

    @property
    def templates(self) -> tuple[PlanTemplate, ...]:
        return self._templates

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(template.label for template in self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    def __iter__(self) -> Iterator[PlanTemplate]:
        return iter(self._templates)

    def get(self, label: str) -> PlanTemplate:
        for template in self._templates:
            if template.label == label:
                return template
        raise UnknownTemplateError(label)

    def select(self, labels: Sequence[str], seed: str) -> PlanTemplate:
        """
        Pick a template deterministically.

        The first template whose selector labels intersect ``labels`` wins;
        otherwise a seed ending in ``"A"`` picks the second entry (when the
        catalog has one) and anything else picks the first.
        """
        incident_labels = set(labels)
        for template in self._templates:
            if incident_labels.intersection(template.selector_labels):
                return template
        if seed.endswith("A") and len(self._templates) > 1:
            return self._templates[1]
        return self._templates[0]


def default_catalog() -> TemplateCatalog:
    """Built-in catalog: ``stability-first`` then ``evidence-first``."""
    return TemplateCatalog(
        PlanTemplate(
            label=label,
            selector_labels=selectors,
            steps=tuple(
                TemplateStep(command, owner, minutes, depends_on, RetryPolicy(*policy))
                for command, owner, minutes, depends_on, policy in steps
            ),
        )
        for label, selectors, steps in _DEFAULT_TEMPLATES
    )


def load_template_catalog(path: str | Path) -> TemplateCatalog:
    """Load and validate a YAML template catalog."""
    source = Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise ValueError(f"{source}: invalid YAML ({exc})") from exc

    root = _as_string_key_mapping(loaded, str(source))
    unknown = sorted(set(root) - _CATALOG_FIELDS)
    if unknown:
        raise ValueError(f"{source}: unexpected fields: {unknown}")
    raw_templates = root.get("templates")
    if not isinstance(raw_templates, list):
        raise ValueError(f"{source}.templates: expected sequence of templates")

    templates = [
        _parse_template(item, location=f"{source.name}.templates[{index}]")
        for index, item in enumerate(raw_templates)
    ]
    try:
        return TemplateCatalog(templates)
    except ValueError as exc:
        raise ValueError(f"{source}: {exc}") from exc


def _parse_template(value: object, *, location: str) -> PlanTemplate:
    parsed = _as_string_key_mapping(value, location)
    _check_fields(parsed, _TEMPLATE_REQUIRED, _TEMPLATE_ALLOWED, location)

    raw_steps = parsed["steps"]
    if not isinstance(raw_steps, list):
        raise ValueError(f"{location}.steps: expected sequence of steps")
    steps = tuple(
        _parse_step(item, location=f"{location}.steps[{index}]")
        for index, item in enumerate(raw_steps)
    )
    selector_labels = _coerce_str_list(
        parsed.get("selector_labels", []), f"{location}.selector_labels"
    )

    try:
        return PlanTemplate(
            label=_coerce_non_empty_str(parsed["label"], f"{location}.label"),
            steps=steps,
            selector_labels=selector_labels,
        )
    except ValueError as exc:
        raise ValueError(f"{location}: {exc}") from exc


def _parse_step(value: object, *, location: str) -> TemplateStep:
    parsed = _as_string_key_mapping(value, location)
    _check_fields(parsed, _STEP_REQUIRED, _STEP_ALLOWED, location)

    raw_policy = parsed.get("retry_policy", {})
    policy_mapping = _as_string_key_mapping(raw_policy, f"{location}.retry_policy")
    try:
        retry_policy = RetryPolicy.from_dict(policy_mapping)
        return TemplateStep(
            command=_coerce_non_empty_str(parsed["command"], f"{location}.command"),
            owner=_coerce_non_empty_str(parsed["owner"], f"{location}.owner"),
            minutes=cast("int", parsed["minutes"]),
            depends_on=_coerce_str_list(parsed.get("depends_on", []), f"{location}.depends_on"),
            retry_policy=retry_policy,
        )
    except ValueError as exc:
        raise ValueError(f"{location}: {exc}") from exc


def _check_fields(
    parsed: Mapping[str, object],
    required: frozenset[str],
    allowed: frozenset[str],
    location: str,
) -> None:
    missing = sorted(required - set(parsed))
    if missing:
        raise ValueError(f"{location}: missing required fields: {missing}")
    unknown = sorted(set(parsed) - allowed)
    if unknown:
        raise ValueError(
            f"{location}: unexpected fields: {unknown}; allowed fields: {sorted(allowed)}"
        )


def _as_string_key_mapping(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ValueError(f"{path}: object keys must be strings, got {type(key).__name__}")
        parsed[key] = item
    return parsed


def _coerce_non_empty_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{path}: must not be empty")
    return normalized


def _coerce_str_list(value: object, path: str) -> tuple[str, ...]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes, bytearray)):
        raise ValueError(f"{path}: expected array of strings")
    return tuple(
        _coerce_non_empty_str(item, f"{path}[{index}]") for index, item in enumerate(value)
    )


__all__ = [
    "PlanTemplate",
    "TemplateCatalog",
    "TemplateStep",
    "UnknownTemplateError",
    "default_catalog",
    "load_template_catalog",
]
