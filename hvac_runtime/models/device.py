"""
Device model for registered thermostats
"""

from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from hvac_runtime.database.connection import Base

class Device(Base):
    """A thermostat registered for runtime tracking"""

    __tablename__ = "devices"

    device_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255))
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    runtime_state = relationship("DeviceRuntime", back_populates="device", uselist=False, cascade="all, delete-orphan")
    sessions = relationship("RuntimeSession", back_populates="device", cascade="all, delete-orphan")
    last_emitted = relationship("LastEmittedState", back_populates="device", uselist=False, cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Device(id={self.device_id}, user={self.user_id}, name={self.name})>"
