"""
Adaptive poll interval recommendation
"""

from dataclasses import dataclass
from typing import Optional

from hvac_runtime.engine.state import DeviceRuntimeState


@dataclass(frozen=True)
class PollPolicy:
    min_seconds: int = 60
    max_seconds: int = 900
    offline_seconds: int = 900
    idle_seconds: int = 600
    active_seconds: int = 120
    long_running_seconds: int = 300
    fresh_seconds: int = 90
    transition_seconds: int = 60
    fresh_window_seconds: int = 300
    long_running_threshold_seconds: int = 3600


def recommend_delay(
    state: DeviceRuntimeState,
    seconds_since_change: Optional[float],
    policy: PollPolicy = PollPolicy(),
    transitioning: bool = False,
) -> int:
    """Seconds to wait before polling this device again.

    Offline devices wait longest, a suspected mode change is confirmed
    fastest, and long continuous sessions are checked less often than fresh
    ones. The result is advisory and always within [min_seconds, max_seconds].
    """
    if not state.is_reachable:
        delay = policy.offline_seconds
    elif transitioning:
        delay = policy.transition_seconds
    elif seconds_since_change is not None and seconds_since_change < policy.fresh_window_seconds:
        delay = policy.fresh_seconds
    elif state.is_running and state.current_session_seconds >= policy.long_running_threshold_seconds:
        delay = policy.long_running_seconds
    elif state.is_running:
        delay = policy.active_seconds
    else:
        delay = policy.idle_seconds
    return int(min(max(delay, policy.min_seconds), policy.max_seconds))
