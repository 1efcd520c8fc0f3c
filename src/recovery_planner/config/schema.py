"""
recovery-planner: configuration schema and validation.

Every setting is described once in ``_RULES``; validation walks that table and
reports each problem as a dotted path plus message rather than stopping at the
first one. Profiles are partial overlays checked against the same rules and
deep-merged over the base sections when selected.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from recovery_planner.constants import (
    AUTO_APPROVE_MAX_BATCH_COUNT,
    AUTO_APPROVE_MAX_ROUTE_LENGTH,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_BATCH_COUNT,
    DEFAULT_MAX_CRITICAL_PATH_MINUTES,
    DEFAULT_MAX_RISK,
    DEFAULT_MAX_ROUTE_LENGTH,
    DEFAULT_PARALLELISM,
    DEFAULT_PLAN_MAX_ATTEMPTS,
    DEFAULT_TIMEZONE,
    DEFAULT_WINDOW_MINUTES,
    RETRY_MAX_ATTEMPTS,
    RETRY_MIN_ATTEMPTS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

# Settings holding filesystem paths; the loader resolves them against the config file.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("planning", "template_catalog"),
    ("observability", "log_dir"),
)

REDACTED: Final[str] = "<redacted>"

_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_WORD_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_WORD = re.compile(r"[^a-z0-9]+")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)


class MetaConfig(TypedDict):
    schema_version: int


class PlanningConfig(TypedDict):
    window_minutes: int
    batch_size: int
    parallelism: int
    max_attempts: int
    timezone: str
    template_catalog: NotRequired[str]


class SloConfig(TypedDict):
    max_risk: float
    max_route_length: int
    max_batch_count: int
    max_critical_path_minutes: int


class AdmissionConfig(TypedDict):
    auto_approve_max_route_length: int
    auto_approve_max_batch_count: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool
    log_to_stdout: bool


class ProfileOverlay(TypedDict, total=False):
    planning: dict[str, object]
    slo: dict[str, object]
    admission: dict[str, object]
    observability: dict[str, object]


class PlannerConfig(TypedDict):
    meta: MetaConfig
    planning: PlanningConfig
    slo: SloConfig
    admission: AdmissionConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[PlannerConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "planning": {
        "window_minutes": DEFAULT_WINDOW_MINUTES,
        "batch_size": DEFAULT_BATCH_SIZE,
        "parallelism": DEFAULT_PARALLELISM,
        "max_attempts": DEFAULT_PLAN_MAX_ATTEMPTS,
        "timezone": DEFAULT_TIMEZONE,
    },
    "slo": {
        "max_risk": DEFAULT_MAX_RISK,
        "max_route_length": DEFAULT_MAX_ROUTE_LENGTH,
        "max_batch_count": DEFAULT_MAX_BATCH_COUNT,
        "max_critical_path_minutes": DEFAULT_MAX_CRITICAL_PATH_MINUTES,
    },
    "admission": {
        "auto_approve_max_route_length": AUTO_APPROVE_MAX_ROUTE_LENGTH,
        "auto_approve_max_batch_count": AUTO_APPROVE_MAX_BATCH_COUNT,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "redact_secrets": True,
        "log_to_stdout": False,
    },
    "profiles": {
        "strict": {
            "planning": {"max_attempts": 2},
            "slo": {
                "max_risk": 0.6,
                "max_route_length": 8,
                "max_batch_count": 6,
                "max_critical_path_minutes": 180,
            },
            "admission": {
                "auto_approve_max_route_length": 6,
                "auto_approve_max_batch_count": 4,
            },
        },
        "permissive": {
            "slo": {"max_risk": 0.9, "max_critical_path_minutes": 480},
        },
    },
}


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: type
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    required: bool = True
    is_path: bool = False


_COUNT: Final[_Rule] = _Rule(int, minimum=1)

_RULES: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _COUNT},
    "planning": {
        "window_minutes": _COUNT,
        "batch_size": _COUNT,
        "parallelism": _COUNT,
        "max_attempts": _Rule(int, minimum=RETRY_MIN_ATTEMPTS, maximum=RETRY_MAX_ATTEMPTS),
        "timezone": _Rule(str),
        "template_catalog": _Rule(str, required=False, is_path=True),
    },
    "slo": {
        "max_risk": _Rule(float, minimum=0.0, maximum=1.0),
        "max_route_length": _COUNT,
        "max_batch_count": _COUNT,
        "max_critical_path_minutes": _COUNT,
    },
    "admission": {
        "auto_approve_max_route_length": _COUNT,
        "auto_approve_max_batch_count": _COUNT,
    },
    "observability": {
        "log_level": _Rule(str, choices=LOG_LEVELS),
        "log_dir": _Rule(str, is_path=True),
        "redact_secrets": _Rule(bool),
        "log_to_stdout": _Rule(bool),
    },
}

# A profile may override any section except ``meta``.
_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(_RULES) - {"meta"}

# Auto-approval limits may not exceed the matching SLO ceiling.
_AUTO_APPROVE_CEILINGS: Final[tuple[tuple[str, str], ...]] = (
    ("auto_approve_max_route_length", "max_route_length"),
    ("auto_approve_max_batch_count", "max_batch_count"),
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One validation problem, located by dotted path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Config failed validation; ``issues`` holds every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


class _Rejected(ValueError):
    pass


def default_config() -> PlannerConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Tell the operator which side to upgrade when schema versions differ."""
    if found_version == ConfigSchemaVersion:
        return "schema version is current"
    if found_version < ConfigSchemaVersion:
        relation, action = "older", "upgrade recovery_planner.toml to the current schema"
    else:
        relation, action = "newer", "upgrade the recovery-planner package"
    return (
        f"schema version {found_version} is {relation} than supported "
        f"{ConfigSchemaVersion}; {action}"
    )


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""
    merged: dict[str, Any] = {key: _copy_value(base[key]) for key in sorted(base)}
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = _copy_value(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result.

    ``None`` or a blank name returns an unmodified copy.
    """
    selected = (profile or "").strip()
    if not selected:
        return merge_config({}, config)

    overlay, problem = _find_profile(config.get("profiles"), selected)
    if problem is not None:
        raise ConfigValidationError((problem,))
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check ``config`` and return its normalized form, or every issue found.

    With ``active_profile`` the config must also stay valid once that
    profile is merged over it.
    """
    issues = _Issues()
    root = _as_mapping(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized = _validate_root(root, issues)
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected:
        overlay, problem = _find_profile(normalized.get("profiles"), selected)
        if problem is not None:
            issues.append(problem)
        else:
            _validate_root(merge_config(normalized, overlay), issues)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys masked, for logs."""
    if not isinstance(config, Mapping):
        return {}
    return _redact(config)


def _validate_root(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    _check_keys(payload, "", allowed={*_RULES, "profiles"}, required=set(_RULES), issues=issues)

    out: dict[str, Any] = {}
    for section, rules in _RULES.items():
        if payload.get(section) is None:
            continue
        parsed = _validate_section(payload[section], rules, section, issues, partial=False)
        if parsed is None:
            continue
        out[section] = parsed
        version = parsed.get("schema_version") if section == "meta" else None
        if version is not None and version != ConfigSchemaVersion:
            issues.add("meta.schema_version", migration_guidance(version))

    if payload.get("profiles") is not None:
        profiles = _as_mapping(payload["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, issues)

    slo, admission = out.get("slo"), out.get("admission")
    if slo is not None and admission is not None:
        for limit_key, ceiling_key in _AUTO_APPROVE_CEILINGS:
            limit, ceiling = admission.get(limit_key), slo.get(ceiling_key)
            if limit is not None and ceiling is not None and limit > ceiling:
                issues.add(
                    f"admission.{limit_key}", f"must be <= slo.{ceiling_key} ({ceiling})"
                )
    return out


def _validate_profiles(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        path = f"profiles.{name}"
        if not _PROFILE_NAME.fullmatch(name):
            issues.add(path, f"profile name must match ^{_PROFILE_NAME.pattern}$")
            continue
        overlay = _as_mapping(payload[name], path, issues)
        if overlay is None:
            continue
        _check_keys(overlay, path, allowed=_OVERLAY_SECTIONS, required=set(), issues=issues)
        sections: dict[str, Any] = {}
        for section in sorted(_OVERLAY_SECTIONS & set(overlay)):
            if overlay[section] is None:
                continue
            parsed = _validate_section(
                overlay[section], _RULES[section], f"{path}.{section}", issues, partial=True
            )
            if parsed is not None:
                sections[section] = parsed
        out[name] = sections
    return out


def _validate_section(
    raw: object,
    rules: Mapping[str, _Rule],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any] | None:
    payload = _as_mapping(raw, path, issues)
    if payload is None:
        return None
    required = set() if partial else {key for key, rule in rules.items() if rule.required}
    _check_keys(payload, path, allowed=set(rules), required=required, issues=issues)

    out: dict[str, Any] = {}
    for key, rule in rules.items():
        if key not in payload:
            continue
        try:
            out[key] = _coerce(rule, payload[key])
        except _Rejected as exc:
            issues.add(f"{path}.{key}", str(exc))
    return out


def _coerce(rule: _Rule, value: object) -> object:
    """Return ``value`` normalized for ``rule`` or raise ``_Rejected``."""
    found = type(value).__name__
    if rule.kind is bool:
        if not isinstance(value, bool):
            raise _Rejected(f"expected boolean, got {found}")
        return value

    if rule.kind is str:
        if not isinstance(value, str):
            raise _Rejected(f"expected string, got {found}")
        text = value.strip()
        if not text:
            raise _Rejected("must not be empty")
        if rule.is_path and "\x00" in text:
            raise _Rejected("must not contain NUL bytes")
        if rule.choices and text not in rule.choices:
            expected = ", ".join(sorted(rule.choices))
            raise _Rejected(f"invalid value {text!r}; expected one of: {expected}")
        return text

    accepted = (int,) if rule.kind is int else (int, float)
    if isinstance(value, bool) or not isinstance(value, accepted):
        raise _Rejected(f"expected {'integer' if rule.kind is int else 'number'}, got {found}")
    number = rule.kind(value)
    if not math.isfinite(number):
        raise _Rejected("must be finite")
    if rule.minimum is not None and number < rule.minimum:
        raise _Rejected(f"must be >= {rule.minimum}")
    if rule.maximum is not None and number > rule.maximum:
        raise _Rejected(f"must be <= {rule.maximum}")
    return number


def _check_keys(
    payload: Mapping[str, object],
    path: str,
    *,
    allowed: set[str] | frozenset[str],
    required: set[str],
    issues: _Issues,
) -> None:
    prefix = f"{path}." if path else ""
    for key in sorted(set(payload) - allowed):
        if _is_secret_key(key):
            issues.add(prefix + key, "embedded secret values are forbidden in planner config")
        else:
            issues.add(prefix + key, "unknown field")
    for key in sorted(required - set(payload)):
        issues.add(prefix + key, "missing required field")


def _as_mapping(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.add(path, f"object key must be string, got {type(key).__name__}")
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _find_profile(
    profiles: object, name: str
) -> tuple[Mapping[str, object], ConfigValidationIssue | None]:
    if not isinstance(profiles, Mapping):
        return {}, ConfigValidationIssue("profiles", "profiles section is required")
    overlay = profiles.get(name)
    if overlay is None:
        return {}, ConfigValidationIssue("profiles", f"profile {name!r} is not defined")
    if not isinstance(overlay, Mapping):
        return {}, ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")
    return overlay, None


def _is_secret_key(key: str) -> bool:
    words = _NON_WORD.sub("_", _WORD_BOUNDARY.sub(r"\1_\2", key.strip()).lower()).strip("_")
    if any(phrase in words for phrase in _SECRET_PHRASES):
        return True
    return not _SECRET_WORDS.isdisjoint(words.split("_"))


def _copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return merge_config({}, value)
    return copy.deepcopy(value)


def _redact(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _is_secret_key(key) else _redact(value[key]) for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PlannerConfig",
    "ProfileOverlay",
    "REDACTED",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
