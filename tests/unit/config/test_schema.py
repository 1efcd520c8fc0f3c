"""
recovery-planner: unit tests for config schema validation.

Purpose
- Validate defaults, dotted-path issues, profile overlays, and redaction.

What this test file should cover
- Unknown keys and embedded secrets are rejected with exact paths.
- Type and range violations report the offending field.
- Profile overlays deep-merge and re-validate.
"""

from __future__ import annotations

import pytest

from recovery_planner.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_defaults_validate_and_are_copied() -> None:
    config = default_config()

    result = validate_config(config)

    assert result.is_valid
    assert result.config is not None
    assert result.config["slo"]["max_risk"] == 0.78
    assert result.config["planning"]["parallelism"] == 2
    config["slo"]["max_risk"] = 0.1
    assert default_config()["slo"]["max_risk"] == 0.78
    assert set(BUILTIN_PROFILE_NAMES) <= set(config["profiles"])


def test_unknown_key_and_embedded_secret_rejection() -> None:
    config = default_config()
    config["planning"]["colour"] = "blue"  # type: ignore[typeddict-unknown-key]
    config["observability"]["api_token"] = "abc"  # type: ignore[typeddict-unknown-key]

    issues = {issue.path: issue.message for issue in validate_config(config).issues}

    assert issues["planning.colour"] == "unknown field"
    assert issues["observability.api_token"] == (
        "embedded secret values are forbidden in planner config"
    )


def test_type_and_range_violations_report_exact_paths() -> None:
    config = default_config()
    config["slo"]["max_risk"] = 1.5
    config["planning"]["parallelism"] = 0
    config["planning"]["max_attempts"] = 9
    config["observability"]["log_level"] = "LOUD"  # type: ignore[typeddict-item]
    config["observability"]["log_to_stdout"] = "yes"  # type: ignore[typeddict-item]

    issues = {issue.path: issue.message for issue in validate_config(config).issues}

    assert issues["slo.max_risk"] == "must be <= 1.0"
    assert issues["planning.parallelism"] == "must be >= 1"
    assert issues["planning.max_attempts"] == "must be <= 8"
    assert issues["observability.log_level"].startswith("invalid value 'LOUD'")
    assert issues["observability.log_to_stdout"] == "expected boolean, got str"


def test_missing_section_and_field_are_reported() -> None:
    config = default_config()
    del config["slo"]["max_batch_count"]  # type: ignore[misc]
    del config["admission"]  # type: ignore[misc]

    assert _issue_paths(config) == ["admission", "slo.max_batch_count"]


def test_auto_approve_limits_must_fit_under_slo_ceilings() -> None:
    config = default_config()
    config["slo"]["max_route_length"] = 5

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert [issue.path for issue in excinfo.value.issues] == [
        "admission.auto_approve_max_route_length"
    ]
    assert "must be <= slo.max_route_length (5)" in str(excinfo.value)


def test_schema_version_mismatch_gives_migration_guidance() -> None:
    config = default_config()
    config["meta"]["schema_version"] = ConfigSchemaVersion + 1

    issues = validate_config(config).issues

    assert issues[0].path == "meta.schema_version"
    assert "upgrade the recovery-planner package" in issues[0].message
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_strict_profile_overlay_tightens_limits() -> None:
    effective = apply_profile_overlay(default_config(), "strict")

    assert effective["slo"]["max_risk"] == 0.6
    assert effective["slo"]["max_route_length"] == 8
    assert effective["planning"]["max_attempts"] == 2
    assert effective["planning"]["batch_size"] == 3
    assert effective["admission"]["auto_approve_max_batch_count"] == 4


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="profile 'turbo' is not defined"):
        apply_profile_overlay(default_config(), "turbo")

    assert apply_profile_overlay(default_config(), "  ") == merge_config({}, default_config())


def test_profile_overlays_are_partially_validated() -> None:
    config = default_config()
    config["profiles"]["fast"] = {"slo": {"max_risk": "high"}}
    config["profiles"]["Bad Name"] = {}

    paths = _issue_paths(config)

    assert "profiles.fast.slo.max_risk" in paths
    assert "profiles.Bad Name" in paths


def test_merge_config_is_deep_and_leaves_inputs_untouched() -> None:
    base = {"slo": {"max_risk": 0.5, "max_route_length": 4}, "keep": [1, 2]}
    overlay = {"slo": {"max_risk": 0.7}}

    merged = merge_config(base, overlay)

    assert merged == {"keep": [1, 2], "slo": {"max_risk": 0.7, "max_route_length": 4}}
    assert base["slo"]["max_risk"] == 0.5
    merged["keep"].append(3)
    assert base["keep"] == [1, 2]


def test_redact_config_masks_sensitive_keys_recursively() -> None:
    redacted = redact_config(
        {"observability": {"log_dir": "logs/", "nested": [{"clientSecret": "s3cr3t"}]}}
    )

    assert redacted == {
        "observability": {"log_dir": "logs/", "nested": [{"clientSecret": "<redacted>"}]}
    }
    assert redact_config("not a mapping") == {}
