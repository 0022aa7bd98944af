"""Availability model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Time, UniqueConstraint
from backend.database import Base


class AvailabilityRule(Base):
    """A recurring weekly window during which a practitioner accepts bookings."""
    __tablename__ = "availability_rules"

    id = Column(Integer, primary_key=True)
    practitioner_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Monday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    recurrence_end = Column(Date)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)


class TimeSlot(Base):
    """A concrete, dated, bookable window generated from availability rules."""
    __tablename__ = "time_slots"
    __table_args__ = (
        UniqueConstraint("practitioner_id", "slot_date", "start_time", name="uq_time_slots_natural_key"),
    )

    id = Column(Integer, primary_key=True)
    practitioner_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    is_booked = Column(Boolean, default=False, nullable=False)
    # Plain reference: bookings already point back at their slot.
    booking_id = Column(Integer)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.end_time)

    @property
    def natural_key(self) -> tuple:
        return (self.practitioner_id, self.slot_date, self.start_time)
