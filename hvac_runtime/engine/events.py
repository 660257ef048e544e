"""
Event decision layer

Builds outbound event payloads and decides whether a steady-state update has
to be emitted. Deduplication is done on a content fingerprint of the device's
discrete view (equipment state, activity, reachability, mode, setpoints);
continuous readings are compared against tolerances instead so sensor jitter
does not produce events.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from hvac_runtime.schemas.events import EventPayload, EventType, Telemetry
from hvac_runtime.store.runtime_store import LastEmitted

# Reasons a steady-state update is emitted
REASON_INITIAL = "initial"
REASON_CHANGED = "state_changed"
REASON_HEARTBEAT = "heartbeat"
REASON_SIGNIFICANT = "significant_change"

# Telemetry fields compared against tolerances, and which tolerance applies
TEMPERATURE_FIELDS = ("temperature_f", "outdoor_temperature_f")
HUMIDITY_FIELDS = ("humidity",)


@dataclass(frozen=True)
class EmissionPolicy:
    heartbeat_seconds: int = 43200
    temperature_tolerance_f: float = 0.5
    humidity_tolerance: float = 2.0


def generate_event_id() -> str:
    return str(uuid.uuid4())


def merge_telemetry(current: Telemetry, previous: Optional[Dict[str, Any]]) -> Telemetry:
    """Fill readings missing from the current sample with the last emitted ones"""
    if not previous:
        return current
    merged = current.model_dump()
    for field, value in merged.items():
        if value is None and previous.get(field) is not None:
            merged[field] = previous[field]
    return Telemetry(**merged)


def steady_view(
    equipment_state: str,
    is_active: bool,
    is_reachable: bool,
    mode: Optional[str],
    telemetry: Telemetry,
) -> Dict[str, Any]:
    """The discrete part of a device's state that the fingerprint covers"""
    return {
        "equipment_state": equipment_state,
        "is_active": is_active,
        "is_reachable": is_reachable,
        "mode": mode,
        "heat_setpoint_f": telemetry.heat_setpoint_f,
        "cool_setpoint_f": telemetry.cool_setpoint_f,
        "hvac_mode": telemetry.hvac_mode,
    }


def fingerprint(view: Dict[str, Any]) -> str:
    encoded = json.dumps(view, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def telemetry_crossed(current: Telemetry, previous: Optional[Dict[str, Any]], policy: EmissionPolicy) -> bool:
    """Whether any reading moved by at least its tolerance since the last emission"""
    previous = previous or {}
    checks = [(f, policy.temperature_tolerance_f) for f in TEMPERATURE_FIELDS]
    checks += [(f, policy.humidity_tolerance) for f in HUMIDITY_FIELDS]
    for field, tolerance in checks:
        value = getattr(current, field)
        if value is None:
            continue
        last = previous.get(field)
        if last is None or abs(value - last) >= tolerance:
            return True
    return False


def state_update_reason(
    view_fingerprint: str,
    sample_telemetry: Telemetry,
    last: Optional[LastEmitted],
    now: datetime,
    policy: EmissionPolicy,
    revision_unchanged: bool = False,
) -> Optional[str]:
    """Decide whether a non-transition observation must be emitted.

    Returns the reason, or None when the update is suppressed. An unchanged
    revision token means the remote side reports nothing new, so only the
    heartbeat can force an emission.
    """
    if last is None:
        return REASON_INITIAL
    if (now - last.emitted_at).total_seconds() >= policy.heartbeat_seconds:
        return REASON_HEARTBEAT
    if revision_unchanged:
        return None
    if view_fingerprint != last.fingerprint:
        return REASON_CHANGED
    if telemetry_crossed(sample_telemetry, last.payload.get("telemetry"), policy):
        return REASON_SIGNIFICANT
    return None


def build_event(
    event_type: EventType,
    device_id: str,
    user_id: Optional[str],
    equipment_state: str,
    previous_state: Optional[str],
    is_active: bool,
    is_reachable: bool,
    mode: Optional[str],
    telemetry: Telemetry,
    observed_at: datetime,
    runtime_seconds: Optional[int] = None,
    reason: Optional[str] = None,
) -> EventPayload:
    if event_type == EventType.SESSION_TICK:
        raise ValueError("SESSION_TICK events are internal and never emitted")
    # runtime_seconds is only meaningful once a session has completed
    if event_type != EventType.SESSION_END:
        runtime_seconds = None
    return EventPayload(
        event_id=generate_event_id(),
        device_id=device_id,
        user_id=user_id,
        event_type=event_type,
        equipment_state=equipment_state,
        previous_state=previous_state,
        is_active=is_active,
        is_reachable=is_reachable,
        mode=mode,
        runtime_seconds=runtime_seconds,
        telemetry=telemetry,
        observed_at=observed_at,
        reason=reason,
    )
