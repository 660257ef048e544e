"""
Device Pydantic schemas
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class DeviceRegister(BaseModel):
    """Schema for registering (or re-linking) a device"""
    device_id: str = Field(..., description="Thermostat identifier")
    user_id: str = Field(..., description="Owning user identifier")
    name: Optional[str] = Field(None, description="Thermostat name")
    access_token: Optional[str] = Field(None, description="API access token")
    refresh_token: Optional[str] = Field(None, description="API refresh token")
    expires_in: Optional[int] = Field(None, ge=0, description="Access token lifetime in seconds")


class DeviceResponse(BaseModel):
    """Schema for device response"""
    device_id: str
    user_id: str
    name: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RuntimeStateResponse(BaseModel):
    """Schema for a device's current runtime state"""
    device_id: str
    is_running: bool
    current_session_started_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    current_session_seconds: int
    last_running_mode: Optional[str] = None
    last_equipment_status: Optional[str] = None
    is_reachable: bool
    last_seen_at: Optional[datetime] = None
    last_runtime_revision: Optional[str] = None

    class Config:
        from_attributes = True


class SessionResponse(BaseModel):
    """Schema for a completed runtime session"""
    device_id: str
    user_id: Optional[str] = None
    started_at: datetime
    ended_at: datetime
    runtime_seconds: int
    equipment_type: Optional[str] = None
    mode: Optional[str] = None
    avg_temperature_f: Optional[float] = None
    avg_humidity: Optional[float] = None
    end_reason: Optional[str] = None

    class Config:
        from_attributes = True


class SessionListResponse(BaseModel):
    """Schema for session list response"""
    sessions: List[SessionResponse]
    total: int
    skip: int
    limit: int
