# src/bgsched/engine/constraints.py
from __future__ import annotations

from bgsched.domain.models import Constraints, Environment, TaskDefinition
from bgsched.domain.states import NetworkState

_MINUTES_PER_DAY = 24 * 60


def minute_of_day(now_ms: int) -> int:
    return (now_ms // 60_000) % _MINUTES_PER_DAY


def in_window(start: int, end: int, minute: int) -> bool:
    """Half-open [start, end); start > end wraps past midnight, start == end means all day."""
    if start == end:
        return True
    if start < end:
        return start <= minute < end
    return minute >= start or minute < end


class ConstraintEvaluator:
    """
    Decides whether a task may run given an environment snapshot.

    Pure: nothing is mutated, and an unknown environment value simply makes
    the constraint that depends on it unmet.
    """

    def is_runnable(self, definition: TaskDefinition, environment: Environment, now_ms: int) -> bool:
        return not self.unmet(definition, environment, now_ms)

    def unmet(self, definition: TaskDefinition, environment: Environment, now_ms: int) -> list[str]:
        c: Constraints = definition.constraints
        env = environment
        reasons: list[str] = []

        if c.requires_unmetered_network:
            if env.network != NetworkState.UNMETERED:
                reasons.append("unmetered_network")
        elif c.requires_network and env.network == NetworkState.NONE:
            reasons.append("network")

        if c.requires_charging and env.charging is not True:
            reasons.append("charging")

        if c.requires_device_idle and env.device_idle is not True:
            reasons.append("device_idle")

        if c.min_battery_level is not None:
            if env.battery_level is None or env.battery_level < c.min_battery_level:
                reasons.append("battery_level")

        if c.window_start_minute is not None and c.window_end_minute is not None:
            if not in_window(c.window_start_minute, c.window_end_minute, minute_of_day(now_ms)):
                reasons.append("time_window")

        return reasons
