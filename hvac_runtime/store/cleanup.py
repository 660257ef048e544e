"""
Reset runtime sessions that can no longer be trusted

A session is reset when its device is offline, when it has accumulated more
than STALE_SESSION_MAX_HOURS of runtime, or when it started more than
STALE_SESSION_MAX_AGE_HOURS ago. Reset sessions are discarded, not recorded.
"""

from datetime import datetime
from typing import List

import structlog

from hvac_runtime.core.config import settings
from hvac_runtime.engine.state import DeviceRuntimeState, utcnow
from hvac_runtime.store.runtime_store import RuntimeStore

logger = structlog.get_logger(__name__)


def should_reset(state: DeviceRuntimeState, now: datetime, max_hours: int, max_age_hours: int) -> bool:
    if not state.is_reachable:
        return True
    if (state.current_session_seconds or 0) > max_hours * 3600:
        return True
    if state.current_session_started_at is not None:
        started_hours_ago = (now - state.current_session_started_at).total_seconds() / 3600
        if started_hours_ago > max_age_hours:
            return True
    return False


def cleanup_stale_sessions(store: RuntimeStore, now: datetime = None, dry_run: bool = False,
                           max_hours: int = None, max_age_hours: int = None) -> List[str]:
    """Reset stale running sessions. Returns the ids of the devices that were (or would be) reset"""
    now = now or utcnow()
    max_hours = max_hours or settings.stale_session_max_hours
    max_age_hours = max_age_hours or settings.stale_session_max_age_hours

    running = store.running_states()
    logger.info("Checking running sessions", count=len(running))

    reset = []
    for state in running:
        context = {
            "device_id": state.device_id,
            "reachable": state.is_reachable,
            "runtime_hours": round((state.current_session_seconds or 0) / 3600, 1),
            "started_at": state.current_session_started_at.isoformat() if state.current_session_started_at else None,
        }
        if not should_reset(state, now, max_hours, max_age_hours):
            logger.info("Session looks OK", **context)
            continue

        if not dry_run:
            store.reset_state(state.device_id)
        reset.append(state.device_id)
        logger.info("Stale session reset", dry_run=dry_run, **context)

    logger.info("Cleanup complete", reset=len(reset), dry_run=dry_run)
    return reset
