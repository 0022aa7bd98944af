"""Booking model definitions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from backend.database import Base


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


class SessionType(str, Enum):
    VIDEO_CALL = "VIDEO_CALL"
    IN_PERSON = "IN_PERSON"
    PHONE_CALL = "PHONE_CALL"


TERMINAL_BOOKING_STATUSES = frozenset(
    {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW}
)


class Booking(Base):
    """A patient's claim on a slot. The window never changes after creation."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    practitioner_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    slot_id = Column(Integer, ForeignKey("time_slots.id"), index=True, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    session_type = Column(String, default=SessionType.VIDEO_CALL.value, nullable=False)
    status = Column(String, default=BookingStatus.PENDING.value, nullable=False)
    fee = Column(Numeric(10, 2), default=0, nullable=False)
    patient_notes = Column(String)
    practitioner_notes = Column(String)
    cancelled_at = Column(DateTime)
    cancelled_by = Column(Integer)
    cancellation_reason = Column(String)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    session = relationship("ClinicalSession", back_populates="booking", uselist=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES
