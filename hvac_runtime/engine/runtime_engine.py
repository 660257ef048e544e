"""
Runtime & connectivity state engine

One call to RuntimeEngine.process_sample handles one poll observation for one
device: connectivity first, then session accounting, then event decisions,
and finally the next-poll recommendation. State mutations are committed
before events are delivered; a failed delivery is reported back to the caller
and never rolls state back.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Tuple

import structlog

from hvac_runtime.core.config import Settings
from hvac_runtime.engine.accumulator import SessionAction, SessionDecision, decide
from hvac_runtime.engine.classifier import IDLE, ClassificationPolicy, ClassifiedStatus, classify_equipment_status
from hvac_runtime.engine.connectivity import OFFLINE, ONLINE, ConnectivityTracker
from hvac_runtime.engine.errors import DeliveryError
from hvac_runtime.engine.events import (
    EmissionPolicy,
    build_event,
    fingerprint,
    merge_telemetry,
    state_update_reason,
    steady_view,
)
from hvac_runtime.engine.scheduler_hint import PollPolicy, recommend_delay
from hvac_runtime.engine.state import RESET_FIELDS, DeviceRuntimeState, utcnow
from hvac_runtime.schemas.events import EventPayload, EventType, Sample, Telemetry
from hvac_runtime.store.runtime_store import DeviceRecord, LastEmitted, RuntimeStore

logger = structlog.get_logger(__name__)

END_REASON_IDLE = "idle"
END_REASON_MODE_SWITCH = "mode_switch"
END_REASON_OFFLINE = "offline"
END_REASON_STALE = "stale"

TRANSITIONS = (SessionAction.START, SessionAction.MODE_SWITCH, SessionAction.END)


@dataclass(frozen=True)
class EngineConfig:
    max_accumulate_seconds: int = 600
    reachability_stale_seconds: int = 900
    split_sessions_on_fan_change: bool = True
    classification: ClassificationPolicy = ClassificationPolicy()
    emission: EmissionPolicy = EmissionPolicy()
    polling: PollPolicy = PollPolicy()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            max_accumulate_seconds=settings.max_accumulate_seconds,
            reachability_stale_seconds=settings.reachability_stale_seconds,
            split_sessions_on_fan_change=settings.split_sessions_on_fan_change,
            classification=ClassificationPolicy(fan_only_is_active=settings.fan_only_is_active),
            emission=EmissionPolicy(
                heartbeat_seconds=settings.max_time_between_emits_seconds,
                temperature_tolerance_f=settings.temperature_tolerance_f,
                humidity_tolerance=settings.humidity_tolerance,
            ),
            polling=PollPolicy(
                min_seconds=settings.poll_min_seconds,
                max_seconds=settings.poll_max_seconds,
                offline_seconds=settings.poll_offline_seconds,
                idle_seconds=settings.poll_idle_seconds,
                active_seconds=settings.poll_active_seconds,
                long_running_seconds=settings.poll_long_running_seconds,
                fresh_seconds=settings.poll_fresh_seconds,
                transition_seconds=settings.poll_transition_seconds,
                fresh_window_seconds=settings.poll_fresh_window_seconds,
                long_running_threshold_seconds=settings.long_running_threshold_seconds,
            ),
        )


@dataclass
class ProcessResult:
    """Outcome of one engine invocation for one device"""
    device_id: str
    action: SessionAction = SessionAction.NOOP
    events: List[EventPayload] = field(default_factory=list)
    failed_deliveries: List[EventPayload] = field(default_factory=list)
    next_poll_seconds: Optional[int] = None
    skipped: bool = False

    @property
    def delivered_types(self) -> List[EventType]:
        return [event.event_type for event in self.events]


Pending = List[Tuple[EventPayload, str]]


class RuntimeEngine:
    """Per-device state machine over store, event sink and classifier"""

    def __init__(self, store: RuntimeStore, sink, config: EngineConfig = EngineConfig()):
        self._store = store
        self._sink = sink
        self.config = config
        self.connectivity = ConnectivityTracker(store, config.reachability_stale_seconds)

    def classify(self, raw) -> ClassifiedStatus:
        return classify_equipment_status(raw, self.config.classification)

    async def process_sample(self, device: DeviceRecord, sample: Sample, now: datetime = None) -> ProcessResult:
        now = now or utcnow()
        device_id = device.device_id
        result = ProcessResult(device_id=device_id)

        classified = self.classify(sample.equipment_status)
        state = self._store.ensure_state(device_id, now)
        last = self._store.get_last_emitted(device_id)
        telemetry = merge_telemetry(sample.telemetry, last.payload.get("telemetry") if last else None)

        logger.debug("Processing sample", device_id=device_id, raw_status=str(sample.equipment_status),
                     classified=classified.standardized_state, was_running=state.is_running,
                     reachable=sample.is_reachable)

        if not sample.is_reachable:
            return await self._handle_unreachable(device, state, telemetry, now, result)

        pending: Pending = []
        came_online = self.connectivity.report_reachable(device_id, now)
        if came_online:
            pending.append((self._event(
                EventType.CONNECTIVITY_CHANGE, device, classified.standardized_state, OFFLINE,
                classified.is_active, True, classified.mode, telemetry, now, reason="reconnected",
            ), "connectivity-online"))

        decision = decide(state, classified, now, self.config.max_accumulate_seconds,
                          self.config.split_sessions_on_fan_change)
        state_after, action = self._apply_decision(device, state, classified, decision, sample.telemetry,
                                                   telemetry, now, pending)
        result.action = action

        revision_unchanged = sample.revision is not None and sample.revision == state.last_runtime_revision
        if sample.revision is not None and not revision_unchanged:
            self._store.save_state(device_id, last_runtime_revision=sample.revision)
            state_after = replace(state_after, last_runtime_revision=sample.revision)

        view = steady_view(classified.standardized_state, classified.is_active, True, classified.mode, telemetry)
        view_fingerprint = fingerprint(view)

        if not pending and action in (SessionAction.NOOP, SessionAction.TICK):
            reason = state_update_reason(view_fingerprint, sample.telemetry, last, now,
                                         self.config.emission, revision_unchanged)
            if reason:
                pending.append((self._event(
                    EventType.STATE_UPDATE, device, classified.standardized_state,
                    state.last_equipment_status or classified.standardized_state,
                    classified.is_active, True, classified.mode, telemetry, now, reason=reason,
                ), "state-update"))
            else:
                logger.debug("State update suppressed", device_id=device_id)

        await self._deliver(device_id, pending, view_fingerprint, now, result)

        transitioning = action == SessionAction.MODE_SWITCH
        changed_now = came_online or action in TRANSITIONS
        result.next_poll_seconds = recommend_delay(
            state_after,
            0 if changed_now else self._seconds_since_change(state_after, last, now),
            self.config.polling,
            transitioning=transitioning,
        )
        return result

    async def sweep_stale(self, now: datetime = None) -> List[ProcessResult]:
        """Take devices offline that have not been seen within the staleness threshold"""
        now = now or utcnow()
        results = []
        for device in self.connectivity.find_stale(now):
            if not self.connectivity.flip_if_stale(device.device_id, now):
                continue
            result = ProcessResult(device_id=device.device_id, action=SessionAction.NOOP)
            state = self._store.load_state(device.device_id)
            last = self._store.get_last_emitted(device.device_id)
            telemetry = merge_telemetry(Telemetry(), last.payload.get("telemetry") if last else None)
            pending: Pending = []
            if state is not None and state.is_running:
                pending.extend(self._force_end(device, state, telemetry, now, END_REASON_STALE))
                result.action = SessionAction.END
            pending.append((self._event(
                EventType.CONNECTIVITY_CHANGE, device, IDLE, ONLINE, False, False, None,
                telemetry, now, reason="stale_timeout",
            ), "connectivity-offline"))
            view = steady_view(IDLE, False, False, None, telemetry)
            await self._deliver(device.device_id, pending, fingerprint(view), now, result)
            result.next_poll_seconds = self.config.polling.offline_seconds
            results.append(result)
        return results

    # Connectivity

    async def _handle_unreachable(self, device, state, telemetry, now, result) -> ProcessResult:
        if not self.connectivity.report_unreachable(device.device_id):
            result.skipped = True
            result.next_poll_seconds = recommend_delay(
                replace(state, is_reachable=False), None, self.config.polling)
            return result

        pending: Pending = []
        if state.is_running:
            pending.extend(self._force_end(device, state, telemetry, now, END_REASON_OFFLINE))
            result.action = SessionAction.END
        pending.append((self._event(
            EventType.CONNECTIVITY_CHANGE, device, IDLE, ONLINE, False, False, None,
            telemetry, now, reason="disconnected",
        ), "connectivity-offline"))

        view = steady_view(IDLE, False, False, None, telemetry)
        await self._deliver(device.device_id, pending, fingerprint(view), now, result)
        result.next_poll_seconds = recommend_delay(
            DeviceRuntimeState(device_id=device.device_id, is_reachable=False), None, self.config.polling)
        return result

    def _force_end(self, device, state: DeviceRuntimeState, telemetry: Telemetry, now, reason) -> Pending:
        """End a running session on loss of reachability.

        Only the seconds accumulated up to the last successful tick count;
        there is no evidence of operation after it.
        """
        started_at = state.current_session_started_at
        ended_at = state.last_tick_at or started_at or now
        if not self._store.end_session_if_current(device.device_id, started_at):
            logger.info("Session already ended elsewhere", device_id=device.device_id)
            return []

        total = state.current_session_seconds or 0
        self._store.insert_session(**self._session_row(device, state, ended_at, total, reason))
        logger.info("Session force-ended", device_id=device.device_id, runtime_seconds=total, reason=reason)
        return [(self._event(
            EventType.SESSION_END, device, IDLE, state.last_equipment_status, False, False,
            state.last_running_mode, telemetry, now, runtime_seconds=total, reason=reason,
        ), "offline-session-end")]

    # Sessions

    def _apply_decision(
        self,
        device: DeviceRecord,
        state: DeviceRuntimeState,
        classified: ClassifiedStatus,
        decision: SessionDecision,
        sample_telemetry: Telemetry,
        telemetry: Telemetry,
        now: datetime,
        pending: Pending,
    ) -> Tuple[DeviceRuntimeState, SessionAction]:
        """Persist the decided transition and queue its events.

        Writes to a running session are conditional on its started_at, so a
        session the staleness sweep ended in the meantime is never revived.
        Returns the post-cycle state and the action actually applied.
        """
        device_id = device.device_id
        action = decision.action
        started_at = state.current_session_started_at
        online = dict(is_reachable=True, last_seen_at=now)

        if action == SessionAction.NOOP:
            return replace(state, **online), action

        if action == SessionAction.START:
            return self._start(device, state, classified, sample_telemetry, telemetry, now, pending), action

        if action == SessionAction.TICK:
            fields = {
                "current_session_seconds": decision.total_seconds,
                "last_tick_at": now,
                **self._accumulate_telemetry(state, sample_telemetry),
            }
            if not self._store.save_state_if_current(device_id, started_at, **fields):
                logger.info("Tick dropped, session ended elsewhere", device_id=device_id)
                return replace(state, **online, **RESET_FIELDS), SessionAction.NOOP
            logger.debug("Session tick", device_id=device_id, delta_seconds=decision.delta_seconds,
                         runtime_seconds=decision.total_seconds)
            return replace(state, **online, **fields), action

        if action == SessionAction.MODE_SWITCH:
            fields = self._start_fields(classified, sample_telemetry, now)
            if not self._store.save_state_if_current(device_id, started_at, **fields):
                logger.info("Session ended elsewhere, starting fresh", device_id=device_id)
                reset = replace(state, **RESET_FIELDS)
                return (self._start(device, reset, classified, sample_telemetry, telemetry, now, pending),
                        SessionAction.START)
            self._store.insert_session(**self._session_row(
                device, state, now, decision.total_seconds, END_REASON_MODE_SWITCH))
            logger.info("Mode switch", device_id=device_id, previous=state.last_equipment_status,
                        current=classified.standardized_state, runtime_seconds=decision.total_seconds)
            pending.append((self._event(
                EventType.SESSION_END, device, classified.standardized_state, state.last_equipment_status,
                True, True, state.last_running_mode, telemetry, now,
                runtime_seconds=decision.total_seconds, reason=END_REASON_MODE_SWITCH,
            ), "mode-switch-end"))
            pending.append((self._event(
                EventType.SESSION_START, device, classified.standardized_state, state.last_equipment_status,
                True, True, classified.mode, telemetry, now, reason=END_REASON_MODE_SWITCH,
            ), "mode-switch-start"))
            return replace(state, **online, **fields), action

        # SessionAction.END: the state is reset before the session row is written
        if not self._store.end_session_if_current(device_id, started_at):
            logger.info("Session already ended elsewhere", device_id=device_id)
            return replace(state, **online, **RESET_FIELDS), SessionAction.NOOP
        self._store.insert_session(**self._session_row(
            device, state, now, decision.total_seconds, END_REASON_IDLE))
        logger.info("Session ended", device_id=device_id, previous=state.last_equipment_status,
                    runtime_seconds=decision.total_seconds)
        pending.append((self._event(
            EventType.SESSION_END, device, classified.standardized_state, state.last_equipment_status,
            False, True, state.last_running_mode, telemetry, now, runtime_seconds=decision.total_seconds,
            reason=END_REASON_IDLE,
        ), "session-end"))
        return replace(state, **online, **RESET_FIELDS), action

    def _start(self, device, state, classified, sample_telemetry, telemetry, now, pending) -> DeviceRuntimeState:
        fields = self._start_fields(classified, sample_telemetry, now)
        self._store.save_state(device.device_id, **fields)
        logger.info("Session started", device_id=device.device_id, state=classified.standardized_state,
                    mode=classified.mode)
        pending.append((self._event(
            EventType.SESSION_START, device, classified.standardized_state,
            state.last_equipment_status or IDLE, True, True, classified.mode, telemetry, now,
        ), "session-start"))
        return replace(state, is_reachable=True, last_seen_at=now, **fields)

    @staticmethod
    def _start_fields(classified: ClassifiedStatus, sample_telemetry: Telemetry, now: datetime) -> dict:
        temperature = sample_telemetry.temperature_f
        humidity = sample_telemetry.humidity
        return {
            "is_running": True,
            "current_session_started_at": now,
            "last_tick_at": now,
            "current_session_seconds": 0,
            "last_running_mode": classified.mode,
            "last_equipment_status": classified.standardized_state,
            "session_temperature_sum": temperature or 0.0,
            "session_temperature_count": 1 if temperature is not None else 0,
            "session_humidity_sum": humidity or 0.0,
            "session_humidity_count": 1 if humidity is not None else 0,
        }

    @staticmethod
    def _accumulate_telemetry(state: DeviceRuntimeState, sample_telemetry: Telemetry) -> dict:
        fields = {}
        if sample_telemetry.temperature_f is not None:
            fields["session_temperature_sum"] = state.session_temperature_sum + sample_telemetry.temperature_f
            fields["session_temperature_count"] = state.session_temperature_count + 1
        if sample_telemetry.humidity is not None:
            fields["session_humidity_sum"] = state.session_humidity_sum + sample_telemetry.humidity
            fields["session_humidity_count"] = state.session_humidity_count + 1
        return fields

    @staticmethod
    def _session_row(device: DeviceRecord, state: DeviceRuntimeState, ended_at, total: int, reason: str) -> dict:
        return {
            "device_id": device.device_id,
            "user_id": device.user_id,
            "started_at": state.current_session_started_at or ended_at,
            "ended_at": ended_at,
            "runtime_seconds": total,
            "equipment_type": state.last_equipment_status,
            "mode": state.last_running_mode,
            "avg_temperature_f": state.average_temperature(),
            "avg_humidity": state.average_humidity(),
            "end_reason": reason,
        }

    # Events

    @staticmethod
    def _event(event_type, device, equipment_state, previous_state, is_active, is_reachable, mode,
               telemetry, now, runtime_seconds=None, reason=None) -> EventPayload:
        return build_event(
            event_type=event_type,
            device_id=device.device_id,
            user_id=device.user_id,
            equipment_state=equipment_state,
            previous_state=previous_state,
            is_active=is_active,
            is_reachable=is_reachable,
            mode=mode,
            telemetry=telemetry,
            observed_at=now,
            runtime_seconds=runtime_seconds,
            reason=reason,
        )

    async def _deliver(self, device_id: str, pending: Pending, view_fingerprint: str, now, result: ProcessResult):
        last_delivered = None
        for event, label in pending:
            payload = event.to_wire()
            try:
                delivered = await self._sink.deliver(payload, label)
            except DeliveryError as e:
                logger.error("Event delivery raised", device_id=device_id, label=label,
                             event_id=event.event_id, error=str(e))
                delivered = False

            if delivered:
                result.events.append(event)
                last_delivered = payload
            else:
                result.failed_deliveries.append(event)
                logger.warning("Event not delivered", device_id=device_id, label=label, event_id=event.event_id)

        if last_delivered is not None:
            self._store.set_last_emitted(device_id, view_fingerprint, last_delivered, now)

    @staticmethod
    def _seconds_since_change(state: DeviceRuntimeState, last: Optional[LastEmitted], now) -> Optional[float]:
        if state.is_running and state.current_session_started_at is not None:
            return (now - state.current_session_started_at).total_seconds()
        if last is not None:
            return (now - last.emitted_at).total_seconds()
        return None
