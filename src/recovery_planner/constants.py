"""Stable constants shared across planning, scheduling, and admission planes."""

from __future__ import annotations

from typing import Final

# Schema versions for serialized contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
MODEL_SCHEMA_VERSION: Final[int] = 1

# Critical-path depth quantum: one depth unit per started block of minutes.
CRITICAL_PATH_QUANTUM_MINUTES: Final[int] = 10

# Retry policy clamp bounds.
RETRY_MIN_ATTEMPTS: Final[int] = 1
RETRY_MAX_ATTEMPTS: Final[int] = 8
RETRY_MIN_INTERVAL_MINUTES: Final[int] = 1
RETRY_MIN_BACKOFF_MULTIPLIER: Final[float] = 1.0

# Plans larger than this always require manual approval.
AUTO_APPROVE_MAX_ROUTE_LENGTH: Final[int] = 12
AUTO_APPROVE_MAX_BATCH_COUNT: Final[int] = 10

# Default SLO thresholds for admission.
DEFAULT_MAX_RISK: Final[float] = 0.78
DEFAULT_MAX_ROUTE_LENGTH: Final[int] = 12
DEFAULT_MAX_BATCH_COUNT: Final[int] = 10
DEFAULT_MAX_CRITICAL_PATH_MINUTES: Final[int] = 240

# Risk bucket lower bounds.
RISK_BUCKET_HIGH: Final[float] = 0.8
RISK_BUCKET_MEDIUM: Final[float] = 0.45

# Default plan options.
DEFAULT_WINDOW_MINUTES: Final[int] = 15
DEFAULT_BATCH_SIZE: Final[int] = 3
DEFAULT_PARALLELISM: Final[int] = 2
DEFAULT_PLAN_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_TIMEZONE: Final[str] = "UTC"

COMPLIANCE_LABEL: Final[str] = "compliance"
TIMEOUT_ERROR: Final[str] = "timeout"

__all__ = [
    "AUTO_APPROVE_MAX_BATCH_COUNT",
    "AUTO_APPROVE_MAX_ROUTE_LENGTH",
    "COMPLIANCE_LABEL",
    "CONFIG_SCHEMA_VERSION",
    "CRITICAL_PATH_QUANTUM_MINUTES",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_BATCH_COUNT",
    "DEFAULT_MAX_CRITICAL_PATH_MINUTES",
    "DEFAULT_MAX_RISK",
    "DEFAULT_MAX_ROUTE_LENGTH",
    "DEFAULT_PARALLELISM",
    "DEFAULT_PLAN_MAX_ATTEMPTS",
    "DEFAULT_TIMEZONE",
    "DEFAULT_WINDOW_MINUTES",
    "MODEL_SCHEMA_VERSION",
    "RETRY_MAX_ATTEMPTS",
    "RETRY_MIN_ATTEMPTS",
    "RETRY_MIN_BACKOFF_MULTIPLIER",
    "RETRY_MIN_INTERVAL_MINUTES",
    "RISK_BUCKET_HIGH",
    "RISK_BUCKET_MEDIUM",
    "TIMEOUT_ERROR",
]
