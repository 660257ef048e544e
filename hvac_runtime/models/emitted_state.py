"""
Fingerprint of the last event emitted for a device
"""

from sqlalchemy import Column, String, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship
from hvac_runtime.database.connection import Base

class LastEmittedState(Base):
    """Content hash and payload of the most recent delivered event"""

    __tablename__ = "last_emitted_state"

    device_id = Column(String(255), ForeignKey("devices.device_id", ondelete="CASCADE"), primary_key=True)
    fingerprint = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    emitted_at = Column(DateTime(timezone=True), nullable=False)

    # Relationship
    device = relationship("Device", back_populates="last_emitted")

    def __repr__(self):
        return f"<LastEmittedState(device_id={self.device_id}, emitted_at={self.emitted_at})>"
