"""Clinical session model definitions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from backend.database import Base


class SessionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED})


class ClinicalSession(Base):
    """The encounter tied 1:1 to a confirmed booking."""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), unique=True, nullable=False)
    status = Column(String, default=SessionStatus.SCHEDULED.value, nullable=False)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)
    actual_duration_minutes = Column(Integer)
    notes = Column(String)
    diagnosis = Column(String)
    prescription = Column(String)
    follow_up_date = Column(Date)
    room_id = Column(String)
    recording_url = Column(String)
    patient_rating = Column(Integer)
    patient_feedback = Column(String)
    practitioner_rating = Column(Integer)
    practitioner_feedback = Column(String)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    booking = relationship("Booking", back_populates="session")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES
