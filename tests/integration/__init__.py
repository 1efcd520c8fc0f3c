"""
recovery-planner: integration tests

File: tests/integration/__init__.py
Last updated: 2026-10-19

Purpose
- Test package marker for end-to-end planning, admission, and run-loop flows.

Functional requirements
- Must not import heavy modules at import time; keep test collection fast.
- Must not touch the network or real effectors.
"""
