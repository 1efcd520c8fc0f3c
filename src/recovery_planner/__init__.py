"""
recovery-planner: package root

File: src/recovery_planner/__init__.py
Last updated: 2026-10-19

Purpose
- Package root for deterministic recovery-route planning, scheduling, and admission control.

What should be included in this file
- Version export and a minimal public API surface.
- No heavy imports at import time.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
