"""
Atomic slot claiming.

A reservation inserts the PENDING booking and flips the slot's booked flag in
one transaction, and the flip is a conditional UPDATE that only matches an
open slot. Whatever the isolation level of the database, at most one
transaction can match that row, so exactly one of N concurrent attempts wins.

The per-slot lock in front of it bounds how long a request may wait for the
slot and turns contention into a retryable ``Busy`` instead of a pile-up on
the database write lock.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from threading import Lock

from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import SchedulingPolicy, get_scheduling_policy
from backend.models.availability import TimeSlot
from backend.models.booking import Booking, BookingStatus, SessionType
from backend.models.session import ClinicalSession  # noqa: F401  (registers Booking.session)
from backend.models.user import User
from backend.scheduling.errors import Busy, PractitionerConflict, SlotNotFound, SlotUnavailable

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 1000
_LOCK_ERROR_MARKERS = ('database is locked', 'lock wait timeout', 'deadlock', 'could not obtain lock')

SlotKey = tuple[int, date, time]
RegionKey = tuple


class ReservationDetails(BaseModel):
    session_type: SessionType = SessionType.VIDEO_CALL
    patient_notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)


class _RegionLock:
    __slots__ = ('lock', 'users')

    def __init__(self) -> None:
        self.lock = Lock()
        self.users = 0


class SlotLockRegistry:
    """
    One lock per region key, e.g. (practitioner, date, start time).

    Acquisition waits a bounded time. An entry lives only while someone holds
    or waits for it, so the registry does not grow with every key ever used.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[RegionKey, _RegionLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: RegionKey) -> _RegionLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _RegionLock()
            entry.users += 1
            return entry

    def _checkin(self, key: RegionKey, entry: _RegionLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: RegionKey, timeout: float):
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.warning('Timed out waiting for region %s', key)
                raise Busy()
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)


slot_locks = SlotLockRegistry()


def slot_key(slot: TimeSlot) -> SlotKey:
    return (slot.practitioner_id, slot.slot_date, slot.start_time)


def practitioner_key(practitioner_id: int) -> RegionKey:
    return ('practitioner', practitioner_id)


def is_lock_contention(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


@contextmanager
def exclusive_region(db: Session, key: RegionKey, policy: SchedulingPolicy):
    """In-process lock for ``key`` plus DB lock errors mapped to ``Busy``."""
    with slot_locks.hold(key, policy.reservation_lock_timeout_seconds):
        try:
            yield
        except OperationalError as exc:
            db.rollback()
            if is_lock_contention(exc):
                raise Busy() from exc
            raise


def slot_region(db: Session, slot: TimeSlot, policy: SchedulingPolicy):
    return exclusive_region(db, slot_key(slot), policy)


def practitioner_region(db: Session, practitioner_id: int, policy: SchedulingPolicy):
    # Serialises confirmations for one practitioner so overlap checks cannot interleave.
    return exclusive_region(db, practitioner_key(practitioner_id), policy)


def find_practitioner_conflict(
    db: Session,
    practitioner_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_booking_id: int | None = None,
) -> Booking | None:
    query = db.query(Booking).filter(
        Booking.practitioner_id == practitioner_id,
        Booking.status == BookingStatus.CONFIRMED.value,
        Booking.start_time < end_time,
        Booking.end_time > start_time,
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.first()


def lookup_consultation_fee(db: Session, practitioner_id: int) -> Decimal:
    practitioner = db.query(User).filter(User.id == practitioner_id).first()
    if practitioner is None or practitioner.consultation_fee is None:
        return Decimal('0')
    return Decimal(practitioner.consultation_fee)


def reserve_slot(
    db: Session,
    slot_id: int,
    patient_id: int,
    details: ReservationDetails | None = None,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> Booking:
    """
    Claim ``slot_id`` for ``patient_id`` and return the new PENDING booking.

    Raises SlotNotFound, SlotUnavailable, PractitionerConflict or Busy; on any of
    them neither the booking nor the slot flag is persisted.
    """
    details = details or ReservationDetails()
    policy = policy or get_scheduling_policy()
    now = now or datetime.now()

    slot = db.query(TimeSlot).filter(TimeSlot.id == slot_id).first()
    if slot is None:
        raise SlotNotFound()

    with slot_region(db, slot, policy):
        try:
            db.refresh(slot)
            if slot.is_booked or not slot.is_available:
                raise SlotUnavailable()
            if slot.starts_at <= now:
                raise SlotUnavailable('This time slot has already started.')

            start_time, end_time = slot.starts_at, slot.ends_at
            if find_practitioner_conflict(db, slot.practitioner_id, start_time, end_time):
                raise PractitionerConflict()

            booking = Booking(
                patient_id=patient_id,
                practitioner_id=slot.practitioner_id,
                slot_id=slot.id,
                start_time=start_time,
                end_time=end_time,
                duration_minutes=int((end_time - start_time).total_seconds() // 60),
                session_type=details.session_type.value,
                status=BookingStatus.PENDING.value,
                fee=lookup_consultation_fee(db, slot.practitioner_id),
                patient_notes=details.patient_notes,
            )
            db.add(booking)
            db.flush()

            claimed = db.query(TimeSlot).filter(
                TimeSlot.id == slot.id,
                TimeSlot.is_booked.is_(False),
                TimeSlot.is_available.is_(True),
            ).update(
                {TimeSlot.is_booked: True, TimeSlot.booking_id: booking.id, TimeSlot.updated_at: now},
                synchronize_session=False,
            )
            if claimed != 1:
                logger.warning('Lost reservation race for slot %s (patient %s)', slot.id, patient_id)
                raise SlotUnavailable()

            db.commit()
        except (SlotUnavailable, PractitionerConflict):
            db.rollback()
            raise
        except SQLAlchemyError:
            db.rollback()
            raise

    db.refresh(booking)
    logger.info('Reserved slot %s as booking %s for patient %s', slot_id, booking.id, patient_id)
    return booking


def release_slot(
    db: Session,
    booking: Booking,
    now: datetime,
    policy: SchedulingPolicy,
) -> bool:
    """
    Detach ``booking`` from its slot inside the caller's transaction.

    Returns True when the slot is reservable again, False when the cancellation
    fell inside the lock window and the slot stays blocked.
    """
    lock_window = timedelta(hours=policy.lock_slot_within_hours)
    reopen = not (lock_window and booking.start_time - now < lock_window)

    db.query(TimeSlot).filter(
        TimeSlot.id == booking.slot_id,
        TimeSlot.booking_id == booking.id,
    ).update(
        {
            TimeSlot.is_booked: False,
            TimeSlot.booking_id: None,
            TimeSlot.is_available: reopen,
            TimeSlot.updated_at: now,
        },
        synchronize_session=False,
    )
    if not reopen:
        logger.info('Slot %s stays blocked: booking %s cancelled inside lock window', booking.slot_id, booking.id)
    return reopen
