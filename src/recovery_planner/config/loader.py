"""
recovery-planner: runtime config loader.

Precedence, lowest to highest: built-in defaults, ``recovery_planner.toml``,
the selected profile overlay, ``RECOVERY_PLANNER_<SECTION>_<KEY>`` environment
variables, then CLI overrides. Path settings are resolved against the config
file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from recovery_planner.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "recovery_planner.toml"
ENV_PREFIX: Final[str] = "RECOVERY_PLANNER_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Sections that cannot be addressed from the environment.
_ENV_SKIPPED_SECTIONS: Final[frozenset[str]] = frozenset({"profiles", "meta"})
# String settings with no default value that the environment may still set.
_ENV_ONLY_SETTINGS: Final[tuple[tuple[str, ...], ...]] = (("planning", "template_catalog"),)

_SettingPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Config file unreadable, or an override cannot be coerced to its setting's type."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``config_path`` defaults to ``./recovery_planner.toml``, which may be
    absent; an explicit path must exist. The profile comes from ``profile``,
    else the CLI ``profile`` key, else ``RECOVERY_PLANNER_PROFILE``.
    """
    path = _config_file(config_path)
    env = os.environ if environ is None else environ
    cli = dict(cli_overrides or {})

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(path, required=config_path is not None))
    )
    active_profile = _select_profile(profile, cli, env)
    if active_profile is not None:
        config = apply_profile_overlay(config, active_profile)

    config = merge_config(config, _env_overlay(config, env))
    config = merge_config(config, _cli_overlay(cli))
    config = assert_valid_config(config, active_profile=active_profile)
    return assert_valid_config(
        normalize_paths(config, base_dir=path.parent), active_profile=active_profile
    )


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve path settings, including those inside profile overlays, against ``base_dir``."""
    normalized = merge_config({}, config)
    targets: list[_SettingPath] = list(PATH_FIELDS)
    profiles = normalized.get("profiles")
    if isinstance(profiles, Mapping):
        targets.extend(
            ("profiles", name, *setting) for name in sorted(profiles) for setting in PATH_FIELDS
        )

    for setting in targets:
        raw = _lookup(normalized, setting)
        if isinstance(raw, str):
            _assign(normalized, setting, _resolve_path_text(raw, base_dir))
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Sorted, compact JSON of the redacted config."""
    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as stream:
            return tomllib.load(stream)
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, cli: Mapping[str, object], environ: Mapping[str, str]
) -> str | None:
    for candidate in (explicit, cli.get("profile"), environ.get(PROFILE_ENV_VAR)):
        if candidate is None:
            continue
        if not isinstance(candidate, str):
            raise ConfigLoadError(f"profile must be a string, got {type(candidate).__name__}")
        return candidate.strip() or None
    return None


def _env_overlay(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``RECOVERY_PLANNER_*`` values, typed like the settings they replace."""
    settings: dict[_SettingPath, type] = {setting: str for setting in _ENV_ONLY_SETTINGS}
    for setting, current in _leaves(config):
        if setting[0] in _ENV_SKIPPED_SECTIONS:
            continue
        if isinstance(current, (bool, int, float, str)):
            settings[setting] = type(current)

    overlay: dict[str, Any] = {}
    for setting in sorted(settings):
        env_name = ENV_PREFIX + "_".join(part.upper() for part in setting)
        raw = environ.get(env_name)
        if raw is not None:
            _assign(overlay, setting, _coerce(raw.strip(), settings[setting], env_name, setting))
    return overlay


def _coerce(raw: str, kind: type, env_name: str, setting: _SettingPath) -> object:
    dotted = ".".join(setting)
    if kind is bool:
        lowered = raw.lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
        raise ConfigLoadError(
            f"{env_name}: {dotted} must be a boolean (true/false/1/0/yes/no/on/off), got {raw!r}"
        )
    if kind is int or kind is float:
        try:
            return kind(raw)
        except ValueError as exc:
            noun = "an integer" if kind is int else "a number"
            raise ConfigLoadError(f"{env_name}: {dotted} must be {noun}, got {raw!r}") from exc
    return raw


def _cli_overlay(cli: Mapping[str, object]) -> dict[str, Any]:
    """Accept dotted keys (``slo.max_risk``) or whole section mappings (``slo``)."""
    overlay: dict[str, Any] = {}
    for key in sorted(cli):
        if key == "profile":
            continue
        setting = tuple(part for part in key.split(".") if part)
        if not setting:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = cli[key]
        if isinstance(value, Mapping):
            existing = _lookup(overlay, setting)
            value = merge_config(existing if isinstance(existing, Mapping) else {}, value)
        _assign(overlay, setting, value)
    return overlay


def _leaves(
    payload: Mapping[str, object], prefix: _SettingPath = ()
) -> Iterator[tuple[_SettingPath, object]]:
    for key, value in payload.items():
        setting = (*prefix, key)
        if isinstance(value, Mapping):
            yield from _leaves(value, setting)
        else:
            yield setting, value


def _lookup(payload: Mapping[str, object], setting: _SettingPath) -> object:
    node: object = payload
    for part in setting:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _assign(target: dict[str, Any], setting: _SettingPath, value: object) -> None:
    *parents, leaf = setting
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


def _resolve_path_text(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
