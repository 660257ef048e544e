import os

# The module-level engine is created on import; keep it off PostgreSQL
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import datetime, timezone

from runtime_helpers import FakeSink, make_session_factory
from hvac_runtime.store.runtime_store import RuntimeStore, register_device


@pytest.fixture
def session_factory():
    return make_session_factory()


@pytest.fixture
def runtime_store(session_factory):
    return RuntimeStore(session_factory)


@pytest.fixture
def registered_device(session_factory):
    """Registered thermostat with a default runtime row"""
    db = session_factory()
    try:
        device, _ = register_device(db, "311019854321", "user-1", name="Hallway",
                                    access_token="access", refresh_token="refresh", expires_in=3600,
                                    now=datetime(2026, 1, 1, tzinfo=timezone.utc))
        return device.device_id
    finally:
        db.close()


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def mock_env_vars(monkeypatch):
    monkeypatch.setenv("CORE_INGEST_URL", "http://core.test")
    monkeypatch.setenv("MAX_ACCUMULATE_SECONDS", "600")
    monkeypatch.setenv("REACHABILITY_STALE_SECONDS", "900")
    monkeypatch.setenv("FAN_ONLY_IS_ACTIVE", "false")
