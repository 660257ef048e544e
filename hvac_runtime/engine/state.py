"""
In-memory view of a device's persisted runtime state
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from backends that drop tzinfo"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class DeviceRuntimeState:
    """Snapshot of one device's runtime row, detached from the ORM session"""
    device_id: str
    is_running: bool = False
    current_session_started_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    current_session_seconds: int = 0
    last_running_mode: Optional[str] = None
    last_equipment_status: Optional[str] = None
    is_reachable: bool = True
    last_seen_at: Optional[datetime] = None
    last_runtime_revision: Optional[str] = None
    session_temperature_sum: float = 0.0
    session_temperature_count: int = 0
    session_humidity_sum: float = 0.0
    session_humidity_count: int = 0

    @classmethod
    def from_row(cls, row) -> "DeviceRuntimeState":
        return cls(
            device_id=row.device_id,
            is_running=bool(row.is_running),
            current_session_started_at=ensure_utc(row.current_session_started_at),
            last_tick_at=ensure_utc(row.last_tick_at),
            current_session_seconds=row.current_session_seconds or 0,
            last_running_mode=row.last_running_mode,
            last_equipment_status=row.last_equipment_status,
            is_reachable=bool(row.is_reachable),
            last_seen_at=ensure_utc(row.last_seen_at),
            last_runtime_revision=row.last_runtime_revision,
            session_temperature_sum=row.session_temperature_sum or 0.0,
            session_temperature_count=row.session_temperature_count or 0,
            session_humidity_sum=row.session_humidity_sum or 0.0,
            session_humidity_count=row.session_humidity_count or 0,
        )

    def average_temperature(self) -> Optional[float]:
        if not self.session_temperature_count:
            return None
        return round(self.session_temperature_sum / self.session_temperature_count, 1)

    def average_humidity(self) -> Optional[float]:
        if not self.session_humidity_count:
            return None
        return round(self.session_humidity_sum / self.session_humidity_count, 1)


# Fields cleared when a session ends
RESET_FIELDS = {
    "is_running": False,
    "current_session_started_at": None,
    "last_tick_at": None,
    "current_session_seconds": 0,
    "last_running_mode": None,
    "last_equipment_status": None,
    "session_temperature_sum": 0.0,
    "session_temperature_count": 0,
    "session_humidity_sum": 0.0,
    "session_humidity_count": 0,
}
