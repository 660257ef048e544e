import unittest
import sys
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from runtime_helpers import FakeSink, make_session_factory
from hvac_runtime.engine.accumulator import SessionAction
from hvac_runtime.engine.errors import DeliveryError, PersistenceError
from hvac_runtime.engine.events import EmissionPolicy
from hvac_runtime.engine.runtime_engine import EngineConfig, RuntimeEngine
from hvac_runtime.schemas.events import Sample, Telemetry
from hvac_runtime.store.runtime_store import RuntimeStore, register_device

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
HEARTBEAT = 3600


def sample(status="", reachable=True, revision=None, **telemetry):
    return Sample(equipment_status=status, is_reachable=reachable, revision=revision,
                  telemetry=Telemetry(**telemetry))


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    """Engine against the real store on SQLite with a recording sink"""

    config = EngineConfig(max_accumulate_seconds=600, reachability_stale_seconds=900,
                          emission=EmissionPolicy(heartbeat_seconds=HEARTBEAT))

    def setUp(self):
        session_factory = make_session_factory()
        db = session_factory()
        try:
            register_device(db, "dev-1", "user-1", name="Hallway", now=T0)
        finally:
            db.close()
        self.store = RuntimeStore(session_factory)
        self.sink = FakeSink()
        self.engine = RuntimeEngine(self.store, self.sink, self.config)
        self.device = self.store.get_device("dev-1")

    async def feed(self, statuses, start=T0, step=60, **telemetry):
        results = []
        for i, status in enumerate(statuses):
            results.append(await self.engine.process_sample(
                self.device, sample(status, **telemetry), start + timedelta(seconds=step * i)))
        return results

    def session_types(self):
        return [t for t in self.sink.types() if t.startswith("SESSION_")]


class TestSessionScenarios(EngineTestCase):
    """Test cases for session accounting end to end"""

    async def test_cooling_cycle_start_and_end(self):
        """Test samples "", cooling, cooling, "", "" give one start and one 120s end"""
        results = await self.feed(["", "compCool1", "compCool1", "", ""])

        self.assertEqual(self.session_types(), ["SESSION_START", "SESSION_END"])
        self.assertEqual([r.action for r in results], [
            SessionAction.NOOP, SessionAction.START, SessionAction.TICK, SessionAction.END, SessionAction.NOOP,
        ])
        end = [p for p in self.sink.delivered if p["event_type"] == "SESSION_END"][0]
        self.assertEqual(end["runtime_seconds"], 120)
        self.assertEqual(end["mode"], "cooling")
        self.assertEqual(end["previous_state"], "Cooling")
        start = [p for p in self.sink.delivered if p["event_type"] == "SESSION_START"][0]
        self.assertIsNone(start["runtime_seconds"])

        sessions = self.store.list_sessions("dev-1")
        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].runtime_seconds, 120)
        self.assertEqual(sessions[0].end_reason, "idle")
        state = self.store.load_state("dev-1")
        self.assertFalse(state.is_running)
        self.assertEqual(state.current_session_seconds, 0)

    async def test_long_gap_is_capped(self):
        """Test a 700s gap while running accumulates only 600s"""
        await self.engine.process_sample(self.device, sample("compCool1"), T0)
        await self.engine.process_sample(self.device, sample("compCool1"), T0 + timedelta(seconds=700))

        state = self.store.load_state("dev-1")
        self.assertTrue(state.is_running)
        self.assertEqual(state.current_session_seconds, 600)

    async def test_ticks_are_not_emitted(self):
        await self.feed(["compCool1"] * 5)
        self.assertEqual(self.session_types(), ["SESSION_START"])
        self.assertEqual(self.store.load_state("dev-1").current_session_seconds, 240)

    async def test_mode_switch_ends_and_starts(self):
        """Test cooling to heating with no idle gap closes cooling and opens heating"""
        await self.feed(["compCool1", "compCool1", "heatPump"])

        self.assertEqual(self.session_types(), ["SESSION_START", "SESSION_END", "SESSION_START"])
        end = self.sink.delivered[-2]
        self.assertEqual(end["runtime_seconds"], 120)
        self.assertEqual(end["mode"], "cooling")
        self.assertEqual(self.sink.delivered[-1]["mode"], "heating")

        state = self.store.load_state("dev-1")
        self.assertTrue(state.is_running)
        self.assertEqual(state.current_session_seconds, 0)
        self.assertEqual(state.last_running_mode, "heating")
        self.assertEqual(state.current_session_started_at, T0 + timedelta(seconds=120))
        sessions = self.store.list_sessions("dev-1")
        self.assertEqual([s.end_reason for s in sessions], ["mode_switch"])

    async def test_idle_sequence_never_starts_a_session(self):
        await self.feed(["", "ventilator", "", "", ""])
        self.assertEqual(self.session_types(), [])
        self.assertEqual(self.store.list_sessions("dev-1"), [])

    async def test_session_end_resets_despite_delivery_failure(self):
        """Test a failed SESSION_END delivery never leaves the device running"""
        await self.feed(["compCool1", "compCool1"])
        self.sink.fail_types.add("SESSION_END")

        result = await self.engine.process_sample(self.device, sample(""), T0 + timedelta(seconds=120))

        self.assertEqual(result.action, SessionAction.END)
        self.assertEqual([e.event_type.value for e in result.failed_deliveries], ["SESSION_END"])
        state = self.store.load_state("dev-1")
        self.assertFalse(state.is_running)
        self.assertEqual(state.current_session_seconds, 0)
        self.assertEqual(len(self.store.list_sessions("dev-1")), 1)

    async def test_rejected_delivery_is_reported(self):
        self.sink.error = DeliveryError("rejected")
        result = await self.engine.process_sample(self.device, sample("compCool1"), T0)
        self.assertEqual(result.action, SessionAction.START)
        self.assertEqual(len(result.failed_deliveries), 1)
        self.assertTrue(self.store.load_state("dev-1").is_running)
        self.assertIsNone(self.store.get_last_emitted("dev-1"))

    async def test_session_averages_telemetry(self):
        await self.engine.process_sample(self.device, sample("heatPump", temperature_f=66.0, humidity=30.0), T0)
        await self.engine.process_sample(self.device, sample("heatPump", temperature_f=67.0),
                                         T0 + timedelta(seconds=60))
        await self.engine.process_sample(self.device, sample("", temperature_f=68.0),
                                         T0 + timedelta(seconds=120))
        session = self.store.list_sessions("dev-1")[0]
        self.assertEqual(session.avg_temperature_f, 66.5)
        self.assertEqual(session.avg_humidity, 30.0)


class TestConcurrentSessionEnd(EngineTestCase):
    """Test cases for a session ended by another writer while a poll is in flight"""

    def end_session_after_load(self):
        """Make the next ensure_state return the running state, then end that session underneath it"""
        load = self.store.ensure_state

        def ensure_state(device_id, now=None):
            state = load(device_id, now)
            self.store.mark_unreachable(device_id)
            self.store.end_session_if_current(device_id, state.current_session_started_at)
            return state

        self.store.ensure_state = ensure_state

    async def test_tick_after_concurrent_end_is_dropped(self):
        await self.feed(["compCool1", "compCool1"])
        self.end_session_after_load()

        result = await self.engine.process_sample(self.device, sample("compCool1"), T0 + timedelta(seconds=1000))

        self.assertEqual(result.action, SessionAction.NOOP)
        state = self.store.load_state("dev-1")
        self.assertFalse(state.is_running)
        self.assertIsNone(state.current_session_started_at)
        self.assertIsNone(state.last_tick_at)
        self.assertEqual(state.current_session_seconds, 0)

    async def test_mode_switch_after_concurrent_end_starts_fresh(self):
        await self.feed(["compCool1", "compCool1"])
        self.end_session_after_load()
        self.sink.clear()
        switched_at = T0 + timedelta(seconds=120)

        result = await self.engine.process_sample(self.device, sample("heatPump"), switched_at)

        self.assertEqual(result.action, SessionAction.START)
        self.assertEqual(self.session_types(), ["SESSION_START"])
        state = self.store.load_state("dev-1")
        self.assertTrue(state.is_running)
        self.assertEqual(state.last_running_mode, "heating")
        self.assertEqual(state.current_session_started_at, switched_at)
        self.assertEqual(state.current_session_seconds, 0)
        self.assertEqual(self.store.list_sessions("dev-1"), [])

    async def test_end_after_concurrent_end_is_not_repeated(self):
        await self.feed(["compCool1", "compCool1"])
        self.end_session_after_load()
        self.sink.clear()

        result = await self.engine.process_sample(self.device, sample(""), T0 + timedelta(seconds=120))

        self.assertEqual(result.action, SessionAction.NOOP)
        self.assertNotIn("SESSION_END", self.sink.types())
        self.assertEqual(self.store.list_sessions("dev-1"), [])
        self.assertFalse(self.store.load_state("dev-1").is_running)


class TestSessionInsertFailure(EngineTestCase):
    """Test cases for a session row that cannot be written"""

    def fail_session_inserts(self):
        self.store.insert_session = MagicMock(side_effect=PersistenceError("insert_session", "dev-1"))

    async def test_end_resets_state_when_insert_fails(self):
        await self.feed(["compCool1", "compCool1"])
        self.fail_session_inserts()

        with self.assertRaises(PersistenceError):
            await self.engine.process_sample(self.device, sample(""), T0 + timedelta(seconds=120))

        state = self.store.load_state("dev-1")
        self.assertFalse(state.is_running)
        self.assertIsNone(state.current_session_started_at)
        self.assertEqual(state.current_session_seconds, 0)

    async def test_mode_switch_starts_new_session_when_insert_fails(self):
        await self.feed(["compCool1", "compCool1"])
        self.fail_session_inserts()
        switched_at = T0 + timedelta(seconds=120)

        with self.assertRaises(PersistenceError):
            await self.engine.process_sample(self.device, sample("heatPump"), switched_at)

        state = self.store.load_state("dev-1")
        self.assertTrue(state.is_running)
        self.assertEqual(state.last_running_mode, "heating")
        self.assertEqual(state.current_session_started_at, switched_at)
        self.assertEqual(state.current_session_seconds, 0)


class TestConnectivityScenarios(EngineTestCase):
    """Test cases for reachability handling"""

    async def test_unreachable_while_cooling(self):
        """Test one forced SESSION_END followed by one offline CONNECTIVITY_CHANGE"""
        await self.feed(["compCool1", "compCool1"])
        self.sink.clear()

        result = await self.engine.process_sample(self.device, sample("compCool1", reachable=False),
                                                  T0 + timedelta(seconds=300))

        self.assertEqual(self.sink.types(), ["SESSION_END", "CONNECTIVITY_CHANGE"])
        end, offline = self.sink.delivered
        self.assertFalse(end["is_reachable"])
        self.assertEqual(end["runtime_seconds"], 60)
        self.assertFalse(offline["is_reachable"])
        self.assertEqual(offline["previous_state"], "ONLINE")

        state = self.store.load_state("dev-1")
        self.assertFalse(state.is_running)
        self.assertFalse(state.is_reachable)
        self.assertEqual(state.current_session_seconds, 0)
        session = self.store.list_sessions("dev-1")[0]
        self.assertEqual(session.end_reason, "offline")
        self.assertEqual(result.next_poll_seconds, self.config.polling.offline_seconds)

    async def test_repeated_unreachable_emits_once(self):
        for i in range(3):
            await self.engine.process_sample(self.device, sample("", reachable=False),
                                             T0 + timedelta(seconds=60 * i))
        self.assertEqual(self.sink.types(), ["CONNECTIVITY_CHANGE"])

    async def test_repeated_unreachable_is_skipped(self):
        await self.engine.process_sample(self.device, sample("", reachable=False), T0)
        result = await self.engine.process_sample(self.device, sample("", reachable=False),
                                                  T0 + timedelta(seconds=60))
        self.assertTrue(result.skipped)
        self.assertEqual(result.events, [])

    async def test_coming_back_online(self):
        await self.engine.process_sample(self.device, sample("", reachable=False), T0)
        self.sink.clear()

        await self.engine.process_sample(self.device, sample("compCool1"), T0 + timedelta(seconds=60))

        self.assertEqual(self.sink.types(), ["CONNECTIVITY_CHANGE", "SESSION_START"])
        online = self.sink.delivered[0]
        self.assertTrue(online["is_reachable"])
        self.assertEqual(online["previous_state"], "OFFLINE")
        self.assertTrue(self.store.load_state("dev-1").is_reachable)

    async def test_staleness_sweep_ends_session_once(self):
        await self.feed(["heatPump", "heatPump"])
        self.sink.clear()

        results = await self.engine.sweep_stale(T0 + timedelta(seconds=60 + 901))

        self.assertEqual(len(results), 1)
        self.assertEqual(self.sink.types(), ["SESSION_END", "CONNECTIVITY_CHANGE"])
        self.assertEqual(self.sink.delivered[0]["reason"], "stale")
        self.assertEqual(self.sink.delivered[1]["reason"], "stale_timeout")
        session = self.store.list_sessions("dev-1")[0]
        self.assertEqual(session.end_reason, "stale")
        self.assertEqual(session.runtime_seconds, 60)

        self.assertEqual(await self.engine.sweep_stale(T0 + timedelta(seconds=2000)), [])
        result = await self.engine.process_sample(self.device, sample("", reachable=False),
                                                  T0 + timedelta(seconds=2000))
        self.assertTrue(result.skipped)
        self.assertEqual(len(self.sink.delivered), 2)


class TestStateUpdates(EngineTestCase):
    """Test cases for steady-state emission and deduplication"""

    async def test_identical_idle_samples_are_deduplicated(self):
        """Test identical idle samples emit nothing until the heartbeat interval passes"""
        telemetry = {"temperature_f": 70.0, "humidity": 40.0, "heat_setpoint_f": 68.0}
        await self.engine.process_sample(self.device, sample("", **telemetry), T0)
        self.assertEqual(self.sink.types(), ["STATE_UPDATE"])
        self.sink.clear()

        await self.engine.process_sample(self.device, sample("", **telemetry), T0 + timedelta(seconds=60))
        await self.engine.process_sample(self.device, sample("", **telemetry), T0 + timedelta(seconds=120))
        self.assertEqual(self.sink.delivered, [])

        await self.engine.process_sample(self.device, sample("", **telemetry),
                                         T0 + timedelta(seconds=HEARTBEAT + 1))
        self.assertEqual(self.sink.types(), ["STATE_UPDATE"])
        self.assertEqual(self.sink.delivered[0]["reason"], "heartbeat")

    async def test_setpoint_change_emits_update(self):
        await self.engine.process_sample(self.device, sample("", heat_setpoint_f=68.0), T0)
        self.sink.clear()
        await self.engine.process_sample(self.device, sample("", heat_setpoint_f=70.0), T0 + timedelta(seconds=60))
        self.assertEqual(self.sink.types(), ["STATE_UPDATE"])
        self.assertEqual(self.sink.delivered[0]["reason"], "state_changed")

    async def test_temperature_jitter_is_suppressed(self):
        await self.engine.process_sample(self.device, sample("", temperature_f=70.0), T0)
        self.sink.clear()
        await self.engine.process_sample(self.device, sample("", temperature_f=70.2), T0 + timedelta(seconds=60))
        self.assertEqual(self.sink.delivered, [])
        await self.engine.process_sample(self.device, sample("", temperature_f=71.0), T0 + timedelta(seconds=120))
        self.assertEqual(self.sink.types(), ["STATE_UPDATE"])

    async def test_missing_telemetry_is_sticky(self):
        await self.engine.process_sample(self.device, sample("", humidity=45.0), T0)
        await self.engine.process_sample(self.device, sample("compCool1"), T0 + timedelta(seconds=60))
        start = self.sink.delivered[-1]
        self.assertEqual(start["event_type"], "SESSION_START")
        self.assertEqual(start["telemetry"]["humidity"], 45.0)

    async def test_unchanged_revision_suppresses_update(self):
        await self.engine.process_sample(self.device, sample("", revision="r1", heat_setpoint_f=68.0), T0)
        self.sink.clear()
        await self.engine.process_sample(self.device, sample("", revision="r1", heat_setpoint_f=70.0),
                                         T0 + timedelta(seconds=60))
        self.assertEqual(self.sink.delivered, [])
        self.assertEqual(self.store.load_state("dev-1").last_runtime_revision, "r1")

    async def test_failed_update_is_retried_next_poll(self):
        """Test the fingerprint only advances once an event was delivered"""
        self.sink.fail_types.add("STATE_UPDATE")
        await self.engine.process_sample(self.device, sample(""), T0)
        self.assertIsNone(self.store.get_last_emitted("dev-1"))

        self.sink.fail_types.clear()
        await self.engine.process_sample(self.device, sample(""), T0 + timedelta(seconds=60))
        self.assertEqual(self.sink.types(), ["STATE_UPDATE"])
        self.assertEqual(self.sink.delivered[0]["reason"], "initial")


class TestNextPollHint(EngineTestCase):
    """Test cases for the recommendation returned to the poller"""

    async def test_hint_follows_state(self):
        idle, started, ticking = await self.feed(["", "compCool1", "compCool1"], step=600)
        policy = self.config.polling
        self.assertEqual(started.next_poll_seconds, policy.fresh_seconds)
        self.assertEqual(ticking.next_poll_seconds, policy.active_seconds)

        switched = await self.engine.process_sample(self.device, sample("heatPump"), T0 + timedelta(seconds=1300))
        self.assertEqual(switched.action, SessionAction.MODE_SWITCH)
        self.assertEqual(switched.next_poll_seconds, policy.transition_seconds)


if __name__ == '__main__':
    unittest.main()
