"""
Device registration and runtime inspection endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import structlog

from hvac_runtime.database.connection import get_database
from hvac_runtime.models.device import Device
from hvac_runtime.models.runtime_session import RuntimeSession
from hvac_runtime.models.runtime_state import DeviceRuntime
from hvac_runtime.schemas.device import (
    DeviceRegister,
    DeviceResponse,
    RuntimeStateResponse,
    SessionListResponse,
    SessionResponse,
)
from hvac_runtime.store.runtime_store import register_device, remove_device

logger = structlog.get_logger(__name__)
router = APIRouter()


def _get_device_or_404(db: Session, device_id: str) -> Device:
    device = db.query(Device).filter(Device.device_id == device_id).first()
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.post("/devices", response_model=DeviceResponse)
async def create_device(device_data: DeviceRegister, db: Session = Depends(get_database)):
    """Register a thermostat, or re-link it to a user with fresh tokens"""

    device, created = register_device(db, **device_data.model_dump())

    logger.info("Device registered" if created else "Device re-linked",
                device_id=device.device_id, user_id=device.user_id)
    return DeviceResponse.model_validate(device)


@router.get("/devices/{device_id}", response_model=DeviceResponse)
async def get_device(device_id: str, db: Session = Depends(get_database)):
    """Get a registered device"""
    return DeviceResponse.model_validate(_get_device_or_404(db, device_id))


@router.get("/devices/{device_id}/runtime", response_model=RuntimeStateResponse)
async def get_runtime_state(device_id: str, db: Session = Depends(get_database)):
    """Current session and reachability state of a device"""

    _get_device_or_404(db, device_id)
    state = db.query(DeviceRuntime).filter(DeviceRuntime.device_id == device_id).first()
    if not state:
        raise HTTPException(status_code=404, detail="Runtime state not found")

    return RuntimeStateResponse.model_validate(state)


@router.get("/devices/{device_id}/sessions", response_model=SessionListResponse)
async def get_sessions(
    device_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    mode: str = Query(None),
    db: Session = Depends(get_database)
):
    """Completed runtime sessions of a device, newest first"""

    _get_device_or_404(db, device_id)
    query = db.query(RuntimeSession).filter(RuntimeSession.device_id == device_id)
    if mode:
        query = query.filter(RuntimeSession.mode == mode)

    total = query.count()
    sessions = query.order_by(RuntimeSession.started_at.desc()).offset(skip).limit(limit).all()

    return SessionListResponse(
        sessions=[SessionResponse.model_validate(session) for session in sessions],
        total=total,
        skip=skip,
        limit=limit
    )


@router.delete("/devices/{device_id}")
async def delete_device(device_id: str, db: Session = Depends(get_database)):
    """Unregister a device together with its runtime state and session history"""

    if not remove_device(db, device_id):
        raise HTTPException(status_code=404, detail="Device not found")

    logger.info("Device deleted", device_id=device_id)
    return {"message": "Device deleted successfully"}
