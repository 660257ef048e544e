"""
Health check endpoints
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from hvac_runtime.database.connection import get_database
from hvac_runtime.models.device import Device
from hvac_runtime.models.runtime_state import DeviceRuntime
import structlog

logger = structlog.get_logger(__name__)
router = APIRouter()

SERVICE_NAME = "HVAC Runtime Engine API"

@router.get("/health")
async def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": "1.0.0"
    }

@router.get("/health/detailed")
async def detailed_health_check(db: Session = Depends(get_database)):
    """Detailed health check with database connectivity and device counts"""
    devices = None
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
        devices = {
            "registered": db.query(Device).count(),
            "running": db.query(DeviceRuntime).filter(DeviceRuntime.is_running.is_(True)).count(),
            "unreachable": db.query(DeviceRuntime).filter(DeviceRuntime.is_reachable.is_(False)).count(),
        }
    except SQLAlchemyError as e:
        logger.error("Database health check failed", error=str(e))
        db_status = "disconnected"

    return {
        "status": "healthy" if db_status == "connected" else "unhealthy",
        "database": db_status,
        "devices": devices,
        "service": SERVICE_NAME,
        "version": "1.0.0"
    }
