"""
Per-device runtime state owned by the runtime engine
"""

from sqlalchemy import Column, String, Boolean, DateTime, Integer, Float, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from hvac_runtime.database.connection import Base

class DeviceRuntime(Base):
    """Persisted session and reachability state for one device"""

    __tablename__ = "device_runtime"

    device_id = Column(String(255), ForeignKey("devices.device_id", ondelete="CASCADE"), primary_key=True)
    is_running = Column(Boolean, nullable=False, default=False)
    current_session_started_at = Column(DateTime(timezone=True))
    last_tick_at = Column(DateTime(timezone=True))
    current_session_seconds = Column(Integer, nullable=False, default=0)
    last_running_mode = Column(String(20))  # cooling, heating, auxheat, fanonly
    last_equipment_status = Column(String(50))  # classified state, e.g. Cooling_Fan
    is_reachable = Column(Boolean, nullable=False, default=True, index=True)
    last_seen_at = Column(DateTime(timezone=True), index=True)
    last_runtime_revision = Column(String(255))
    session_temperature_sum = Column(Float, nullable=False, default=0.0)
    session_temperature_count = Column(Integer, nullable=False, default=0)
    session_humidity_sum = Column(Float, nullable=False, default=0.0)
    session_humidity_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationship
    device = relationship("Device", back_populates="runtime_state")

    def __repr__(self):
        return f"<DeviceRuntime(device_id={self.device_id}, running={self.is_running}, reachable={self.is_reachable})>"
