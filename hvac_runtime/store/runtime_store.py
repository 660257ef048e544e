"""
Durable store for device runtime state, sessions and emission fingerprints

All writes go through short-lived SQLAlchemy sessions. Reachability flips and
writes to a running session are conditional UPDATEs whose row count tells the
caller whether it performed the transition, so the poll path and the
staleness sweep never both emit or both end a session.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any

import structlog
from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hvac_runtime.engine.errors import PersistenceError
from hvac_runtime.engine.state import DeviceRuntimeState, RESET_FIELDS, ensure_utc, utcnow
from hvac_runtime.models.device import Device
from hvac_runtime.models.emitted_state import LastEmittedState
from hvac_runtime.models.runtime_session import RuntimeSession
from hvac_runtime.models.runtime_state import DeviceRuntime

logger = structlog.get_logger(__name__)


@dataclass
class DeviceRecord:
    """Registered device as seen by the poller and the engine"""
    device_id: str
    user_id: str
    name: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Device) -> "DeviceRecord":
        return cls(
            device_id=row.device_id,
            user_id=row.user_id,
            name=row.name,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            token_expires_at=ensure_utc(row.token_expires_at),
        )


@dataclass
class LastEmitted:
    """Fingerprint and payload of the last delivered event"""
    fingerprint: str
    payload: Dict[str, Any]
    emitted_at: datetime


def default_runtime_row(device_id: str, now: datetime) -> DeviceRuntime:
    return DeviceRuntime(
        device_id=device_id,
        is_running=False,
        current_session_started_at=None,
        last_tick_at=None,
        current_session_seconds=0,
        is_reachable=True,
        last_seen_at=now,
        session_temperature_sum=0.0,
        session_temperature_count=0,
        session_humidity_sum=0.0,
        session_humidity_count=0,
    )


def register_device(
    db: Session,
    device_id: str,
    user_id: str,
    name: str = None,
    access_token: str = None,
    refresh_token: str = None,
    expires_in: int = None,
    now: datetime = None,
):
    """Create or re-link a device and make sure it has a runtime row.

    Returns (device, created).
    """
    now = now or utcnow()
    device = db.query(Device).filter(Device.device_id == device_id).first()
    created = device is None
    if created:
        device = Device(device_id=device_id, user_id=user_id)
        db.add(device)

    device.user_id = user_id
    if name is not None:
        device.name = name
    if access_token is not None:
        device.access_token = access_token
    if refresh_token is not None:
        device.refresh_token = refresh_token
    if expires_in is not None:
        device.token_expires_at = now + timedelta(seconds=expires_in)

    if db.query(DeviceRuntime).filter(DeviceRuntime.device_id == device_id).first() is None:
        db.add(default_runtime_row(device_id, now))

    db.commit()
    db.refresh(device)
    return device, created


def remove_device(db: Session, device_id: str) -> bool:
    """Delete a device with its runtime state, sessions and fingerprint"""
    device = db.query(Device).filter(Device.device_id == device_id).first()
    if device is None:
        return False
    db.delete(device)
    db.commit()
    return True


class RuntimeStore:
    """Load/save interface consumed by the runtime engine"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, device_id: str = None):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Store operation failed", operation=operation, device_id=device_id, error=str(e))
            raise PersistenceError(operation, device_id, e) from e
        finally:
            db.close()

    # Devices

    def list_devices(self) -> List[DeviceRecord]:
        with self._session("list_devices") as db:
            return [DeviceRecord.from_row(row) for row in db.query(Device).all()]

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        with self._session("get_device", device_id) as db:
            row = db.query(Device).filter(Device.device_id == device_id).first()
            return DeviceRecord.from_row(row) if row else None

    def update_tokens(self, device_id: str, access_token: str, refresh_token: str, expires_at: datetime):
        with self._session("update_tokens", device_id) as db:
            db.execute(
                update(Device)
                .where(Device.device_id == device_id)
                .values(access_token=access_token, refresh_token=refresh_token,
                        token_expires_at=expires_at, updated_at=utcnow())
            )

    # Runtime state

    def load_state(self, device_id: str) -> Optional[DeviceRuntimeState]:
        with self._session("load_state", device_id) as db:
            row = db.query(DeviceRuntime).filter(DeviceRuntime.device_id == device_id).first()
            return DeviceRuntimeState.from_row(row) if row else None

    def ensure_state(self, device_id: str, now: datetime = None) -> DeviceRuntimeState:
        """Load the runtime row, creating the default one if it is missing"""
        now = now or utcnow()
        with self._session("ensure_state", device_id) as db:
            row = db.query(DeviceRuntime).filter(DeviceRuntime.device_id == device_id).first()
            if row is None:
                row = default_runtime_row(device_id, now)
                db.add(row)
                db.flush()
                logger.info("Created default runtime state", device_id=device_id)
            return DeviceRuntimeState.from_row(row)

    def save_state(self, device_id: str, **fields):
        """Partial update; bumps updated_at"""
        if not fields:
            return
        with self._session("save_state", device_id) as db:
            db.execute(
                update(DeviceRuntime)
                .where(DeviceRuntime.device_id == device_id)
                .values(**fields, updated_at=utcnow())
            )

    def reset_state(self, device_id: str, **extra):
        self.save_state(device_id, **RESET_FIELDS, **extra)

    def end_session_if_current(self, device_id: str, started_at: datetime, **extra) -> bool:
        """Reset the session only if it is still the one that started at started_at"""
        return self.save_state_if_current(device_id, started_at, **RESET_FIELDS, **extra)

    def save_state_if_current(self, device_id: str, started_at: datetime, **fields) -> bool:
        """Partial update applied only while the session that started at started_at is still running"""
        with self._session("save_state_if_current", device_id) as db:
            result = db.execute(
                update(DeviceRuntime)
                .where(DeviceRuntime.device_id == device_id)
                .where(DeviceRuntime.is_running.is_(True))
                .where(DeviceRuntime.current_session_started_at == started_at)
                .values(**fields, updated_at=utcnow())
            )
            return result.rowcount == 1

    # Reachability

    def mark_unreachable(self, device_id: str, stale_before: datetime = None) -> bool:
        """Flip reachable -> unreachable. Returns True only for the caller that flipped it.

        With stale_before, the flip also requires last_seen_at to be older than it.
        """
        with self._session("mark_unreachable", device_id) as db:
            stmt = (
                update(DeviceRuntime)
                .where(DeviceRuntime.device_id == device_id)
                .where(DeviceRuntime.is_reachable.is_(True))
            )
            if stale_before is not None:
                stmt = stmt.where(or_(DeviceRuntime.last_seen_at.is_(None),
                                      DeviceRuntime.last_seen_at < stale_before))
            result = db.execute(stmt.values(is_reachable=False, updated_at=utcnow()))
            return result.rowcount == 1

    def mark_reachable(self, device_id: str, now: datetime) -> bool:
        """Record a reachable sample. Returns True if this call flipped unreachable -> reachable"""
        with self._session("mark_reachable", device_id) as db:
            flipped = db.execute(
                update(DeviceRuntime)
                .where(DeviceRuntime.device_id == device_id)
                .where(DeviceRuntime.is_reachable.is_(False))
                .values(is_reachable=True, last_seen_at=now, updated_at=utcnow())
            ).rowcount == 1
            if not flipped:
                db.execute(
                    update(DeviceRuntime)
                    .where(DeviceRuntime.device_id == device_id)
                    .values(last_seen_at=now, updated_at=utcnow())
                )
            return flipped

    def stale_candidates(self, stale_before: datetime) -> List[DeviceRecord]:
        """Reachable devices not seen since stale_before"""
        with self._session("stale_candidates") as db:
            rows = (
                db.query(Device)
                .join(DeviceRuntime, DeviceRuntime.device_id == Device.device_id)
                .filter(DeviceRuntime.is_reachable.is_(True))
                .filter(or_(DeviceRuntime.last_seen_at.is_(None), DeviceRuntime.last_seen_at < stale_before))
                .all()
            )
            return [DeviceRecord.from_row(row) for row in rows]

    def running_states(self) -> List[DeviceRuntimeState]:
        with self._session("running_states") as db:
            rows = db.query(DeviceRuntime).filter(DeviceRuntime.is_running.is_(True)).all()
            return [DeviceRuntimeState.from_row(row) for row in rows]

    # Sessions

    def insert_session(self, **fields) -> bool:
        """Append a completed session. A duplicate (device_id, started_at) is a no-op returning False"""
        device_id = fields.get("device_id")
        db = self._session_factory()
        try:
            db.add(RuntimeSession(**fields))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            logger.warning("Duplicate session ignored", device_id=device_id, started_at=str(fields.get("started_at")))
            return False
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Store operation failed", operation="insert_session", device_id=device_id, error=str(e))
            raise PersistenceError("insert_session", device_id, e) from e
        finally:
            db.close()

    def list_sessions(self, device_id: str, limit: int = 100) -> List[RuntimeSession]:
        with self._session("list_sessions", device_id) as db:
            rows = (
                db.query(RuntimeSession)
                .filter(RuntimeSession.device_id == device_id)
                .order_by(RuntimeSession.started_at.desc())
                .limit(limit)
                .all()
            )
            db.expunge_all()
            return rows

    # Emission fingerprints

    def get_last_emitted(self, device_id: str) -> Optional[LastEmitted]:
        with self._session("get_last_emitted", device_id) as db:
            row = db.query(LastEmittedState).filter(LastEmittedState.device_id == device_id).first()
            if row is None:
                return None
            return LastEmitted(fingerprint=row.fingerprint, payload=row.payload or {},
                               emitted_at=ensure_utc(row.emitted_at))

    def set_last_emitted(self, device_id: str, fingerprint: str, payload: Dict[str, Any], emitted_at: datetime):
        with self._session("set_last_emitted", device_id) as db:
            row = db.query(LastEmittedState).filter(LastEmittedState.device_id == device_id).first()
            if row is None:
                db.add(LastEmittedState(device_id=device_id, fingerprint=fingerprint,
                                        payload=payload, emitted_at=emitted_at))
            else:
                row.fingerprint = fingerprint
                row.payload = payload
                row.emitted_at = emitted_at
