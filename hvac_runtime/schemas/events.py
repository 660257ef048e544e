"""
Sample and event Pydantic schemas
"""

from pydantic import BaseModel, Field
from typing import Optional, Any
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    """Outbound event types"""
    SESSION_START = "SESSION_START"
    SESSION_TICK = "SESSION_TICK"  # internal only, never emitted
    SESSION_END = "SESSION_END"
    CONNECTIVITY_CHANGE = "CONNECTIVITY_CHANGE"
    STATE_UPDATE = "STATE_UPDATE"


class Telemetry(BaseModel):
    """Optional readings that accompany a status sample"""
    temperature_f: Optional[float] = Field(None, description="Indoor temperature in Fahrenheit")
    heat_setpoint_f: Optional[float] = Field(None, description="Heat setpoint in Fahrenheit")
    cool_setpoint_f: Optional[float] = Field(None, description="Cool setpoint in Fahrenheit")
    humidity: Optional[float] = Field(None, description="Indoor relative humidity")
    outdoor_temperature_f: Optional[float] = Field(None, description="Outdoor temperature in Fahrenheit")
    outdoor_humidity: Optional[float] = Field(None, description="Outdoor relative humidity")
    hvac_mode: Optional[str] = Field(None, description="Thermostat mode setting (heat, cool, auto, off)")


class Sample(BaseModel):
    """One raw observation of a device, produced per poll"""
    equipment_status: Any = Field("", description="Raw comma separated equipment status")
    is_reachable: bool = Field(True, description="Whether the device responded as connected")
    telemetry: Telemetry = Field(default_factory=Telemetry)
    revision: Optional[str] = Field(None, description="Opaque runtime revision token")
    device_name: Optional[str] = None


class EventPayload(BaseModel):
    """Event delivered to downstream consumers"""
    event_id: str
    device_id: str
    user_id: Optional[str] = None
    event_type: EventType
    equipment_state: str
    previous_state: Optional[str] = None
    is_active: bool
    is_reachable: bool
    mode: Optional[str] = None
    runtime_seconds: Optional[int] = None
    telemetry: Telemetry = Field(default_factory=Telemetry)
    observed_at: datetime
    reason: Optional[str] = None

    def to_wire(self) -> dict:
        """JSON-safe representation for delivery"""
        return self.model_dump(mode="json")
