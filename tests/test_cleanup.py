from datetime import datetime, timedelta, timezone

from hvac_runtime.core.config import Settings
from hvac_runtime.engine.runtime_engine import EngineConfig
from hvac_runtime.engine.state import DeviceRuntimeState
from hvac_runtime.store.cleanup import cleanup_stale_sessions, should_reset

NOW = datetime(2026, 1, 3, 12, 0, tzinfo=timezone.utc)


def running(**overrides):
    fields = dict(device_id="dev-1", is_running=True, is_reachable=True,
                  current_session_started_at=NOW - timedelta(hours=1), current_session_seconds=3600)
    fields.update(overrides)
    return DeviceRuntimeState(**fields)


def test_healthy_session_is_kept():
    assert not should_reset(running(), NOW, 24, 48)


def test_offline_session_is_reset():
    assert should_reset(running(is_reachable=False), NOW, 24, 48)


def test_overlong_session_is_reset():
    assert should_reset(running(current_session_seconds=25 * 3600), NOW, 24, 48)


def test_old_session_is_reset():
    assert should_reset(running(current_session_started_at=NOW - timedelta(hours=49)), NOW, 24, 48)


def test_cleanup_resets_only_stale_sessions(runtime_store, registered_device):
    runtime_store.ensure_state("dev-2", NOW)
    runtime_store.save_state(registered_device, is_running=True, current_session_started_at=NOW - timedelta(hours=50),
                             current_session_seconds=600)
    runtime_store.save_state("dev-2", is_running=True, current_session_started_at=NOW - timedelta(minutes=5),
                             current_session_seconds=300)

    reset = cleanup_stale_sessions(runtime_store, now=NOW, max_hours=24, max_age_hours=48)

    assert reset == [registered_device]
    assert not runtime_store.load_state(registered_device).is_running
    assert runtime_store.load_state("dev-2").is_running


def test_dry_run_changes_nothing(runtime_store, registered_device):
    runtime_store.save_state(registered_device, is_running=True, is_reachable=False,
                             current_session_started_at=NOW, current_session_seconds=60)

    reset = cleanup_stale_sessions(runtime_store, now=NOW, dry_run=True)

    assert reset == [registered_device]
    assert runtime_store.load_state(registered_device).is_running


def test_settings_from_environment(mock_env_vars):
    settings = Settings()
    config = EngineConfig.from_settings(settings)
    assert settings.core_ingest_url == "http://core.test"
    assert config.max_accumulate_seconds == 600
    assert config.reachability_stale_seconds == 900
    assert config.classification.fan_only_is_active is False
    assert settings.database_url == "sqlite://"
