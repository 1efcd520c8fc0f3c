"""Utility exports for clock capabilities."""

from recovery_planner.utils.clock import Clock, FixedClock, ManualClock, system_clock

__all__ = ["Clock", "FixedClock", "ManualClock", "system_clock"]
