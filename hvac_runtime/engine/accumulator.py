"""
Session accumulation: decides the session transition for one observation
and computes clamped elapsed time.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from hvac_runtime.engine.classifier import ClassifiedStatus
from hvac_runtime.engine.state import DeviceRuntimeState


class SessionAction(str, Enum):
    NOOP = "noop"
    START = "start"
    TICK = "tick"
    MODE_SWITCH = "mode_switch"
    END = "end"


@dataclass(frozen=True)
class SessionDecision:
    """What the accumulator decided for one observation"""
    action: SessionAction
    delta_seconds: int = 0
    total_seconds: int = 0  # accumulated seconds of the session being ticked or closed


def clamped_delta(last_tick_at: Optional[datetime], now: datetime, max_accumulate: int) -> int:
    """Seconds since the last tick, clamped to [0, max_accumulate].

    A missing tick reference counts as "now" so the delta is 0.
    """
    if last_tick_at is None:
        return 0
    elapsed = round((now - last_tick_at).total_seconds())
    return min(max(0, elapsed), max_accumulate)


def mode_changed(state: DeviceRuntimeState, classified: ClassifiedStatus, split_on_fan_change: bool = True) -> bool:
    """Whether an active observation belongs to a different session than the running one"""
    if not state.is_running:
        return False
    if split_on_fan_change:
        return state.last_equipment_status != classified.standardized_state
    return state.last_running_mode != classified.mode


def decide(
    state: DeviceRuntimeState,
    classified: ClassifiedStatus,
    now: datetime,
    max_accumulate: int,
    split_on_fan_change: bool = True,
) -> SessionDecision:
    """Decision table over (was_running, is_active_now, mode_changed)"""
    was_running = state.is_running
    is_active = classified.is_active

    if not was_running and not is_active:
        return SessionDecision(SessionAction.NOOP)

    if not was_running and is_active:
        return SessionDecision(SessionAction.START)

    delta = clamped_delta(state.last_tick_at, now, max_accumulate)
    total = (state.current_session_seconds or 0) + delta

    if not is_active:
        return SessionDecision(SessionAction.END, delta_seconds=delta, total_seconds=total)

    if mode_changed(state, classified, split_on_fan_change):
        return SessionDecision(SessionAction.MODE_SWITCH, delta_seconds=delta, total_seconds=total)

    return SessionDecision(SessionAction.TICK, delta_seconds=delta, total_seconds=total)
