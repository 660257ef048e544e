"""
Completed runtime sessions, written once at session end
"""

from sqlalchemy import Column, String, DateTime, Integer, Float, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from hvac_runtime.database.connection import Base

class RuntimeSession(Base):
    """One contiguous interval of active equipment"""

    __tablename__ = "runtime_sessions"
    __table_args__ = (
        UniqueConstraint("device_id", "started_at", name="uq_runtime_sessions_device_started"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(255), ForeignKey("devices.device_id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    ended_at = Column(DateTime(timezone=True), nullable=False)
    runtime_seconds = Column(Integer, nullable=False)
    equipment_type = Column(String(50))  # classified state, e.g. Heating_Fan
    mode = Column(String(20))
    avg_temperature_f = Column(Float)
    avg_humidity = Column(Float)
    end_reason = Column(String(20))  # idle, mode_switch, offline, stale
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationship
    device = relationship("Device", back_populates="sessions")

    def __repr__(self):
        return f"<RuntimeSession(device_id={self.device_id}, started_at={self.started_at}, runtime={self.runtime_seconds})>"
