"""
Booking lifecycle.

PENDING -> CONFIRMED | CANCELLED
CONFIRMED -> CANCELLED | NO_SHOW | COMPLETED (COMPLETED only via the session)

Every status write is a compare-and-set on the status the caller read, so two
requests racing on the same booking cannot both apply. Cascades (session
creation, slot release, session cancellation) share the transaction of the
transition that triggers them.
"""

import logging
from contextlib import nullcontext
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import SchedulingPolicy, get_scheduling_policy
from backend.models.availability import TimeSlot
from backend.models.booking import Booking, BookingStatus
from backend.models.session import ClinicalSession, SessionStatus
from backend.scheduling import events
from backend.scheduling.errors import (
    BookingNotFound,
    InvalidTransition,
    PractitionerConflict,
    SchedulingError,
    ValidationError,
)
from backend.scheduling.reservation import (
    find_practitioner_conflict,
    practitioner_region,
    release_slot,
    slot_region,
)

logger = logging.getLogger(__name__)

MAX_CANCELLATION_REASON_LENGTH = 500
MAX_PRACTITIONER_NOTES_LENGTH = 1000
MAX_PAGE_SIZE = 100

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.CANCELLED, BookingStatus.NO_SHOW, BookingStatus.COMPLETED}
    ),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}


def ensure_booking_transition(current: str, target: BookingStatus) -> None:
    current_status = BookingStatus(current)
    if target not in BOOKING_TRANSITIONS[current_status]:
        raise InvalidTransition(f'Cannot move a {current_status.value} booking to {target.value}.')


def set_booking_status(db: Session, booking: Booking, target: BookingStatus, now: datetime, **values) -> None:
    ensure_booking_transition(booking.status, target)

    updated = db.query(Booking).filter(
        Booking.id == booking.id,
        Booking.status == booking.status,
    ).update(
        {'status': target.value, 'updated_at': now, **values},
        synchronize_session=False,
    )
    if updated != 1:
        raise InvalidTransition('The booking was changed by another request. Reload and try again.')

    logger.info('Booking %s: %s -> %s', booking.id, booking.status, target.value)


def get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if booking is None:
        raise BookingNotFound()
    return booking


def list_bookings(
    db: Session,
    patient_id: int | None = None,
    practitioner_id: int | None = None,
    status: BookingStatus | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Booking], int]:
    if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f'Page must be at least 1 and limit between 1 and {MAX_PAGE_SIZE}.')

    query = db.query(Booking)
    if patient_id is not None:
        query = query.filter(Booking.patient_id == patient_id)
    if practitioner_id is not None:
        query = query.filter(Booking.practitioner_id == practitioner_id)
    if status is not None:
        query = query.filter(Booking.status == BookingStatus(status).value)
    if start is not None:
        query = query.filter(Booking.start_time >= start)
    if end is not None:
        query = query.filter(Booking.start_time <= end)

    total = query.count()
    bookings = query.order_by(Booking.start_time.desc(), Booking.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return bookings, total


def booking_slot_region(db: Session, booking: Booking, policy: SchedulingPolicy):
    slot = db.query(TimeSlot).filter(TimeSlot.id == booking.slot_id).first()
    if slot is None:
        return nullcontext()
    return slot_region(db, slot, policy)


def confirm_booking(
    db: Session,
    booking_id: int,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> Booking:
    now = now or datetime.now()
    policy = policy or get_scheduling_policy()
    booking = get_booking(db, booking_id)
    ensure_booking_transition(booking.status, BookingStatus.CONFIRMED)

    with practitioner_region(db, booking.practitioner_id, policy):
        try:
            if find_practitioner_conflict(
                db, booking.practitioner_id, booking.start_time, booking.end_time, booking.id
            ):
                raise PractitionerConflict()
            set_booking_status(db, booking, BookingStatus.CONFIRMED, now)
            session = ClinicalSession(booking_id=booking.id, status=SessionStatus.SCHEDULED.value)
            db.add(session)
            db.commit()
        except (SchedulingError, SQLAlchemyError):
            db.rollback()
            raise

    db.refresh(booking)
    db.refresh(session)
    events.emit(events.BOOKING_CONFIRMED, booking, session_id=session.id)
    return booking


def apply_booking_cancellation(
    db: Session,
    booking: Booking,
    cancelled_by: int | None,
    reason: str | None,
    now: datetime,
    policy: SchedulingPolicy,
    cascade_session: bool = True,
) -> bool:
    """
    Cancel ``booking`` inside the caller's transaction; returns whether the slot reopened.

    With ``cascade_session`` a live session must still be SCHEDULED and is
    cancelled with the booking; a session that started in the meantime makes
    the whole cancellation fail.
    """
    set_booking_status(
        db,
        booking,
        BookingStatus.CANCELLED,
        now,
        cancelled_at=now,
        cancelled_by=cancelled_by,
        cancellation_reason=reason,
    )
    if cascade_session:
        sessions = db.query(ClinicalSession).filter(
            ClinicalSession.booking_id == booking.id,
            ClinicalSession.status != SessionStatus.CANCELLED.value,
        )
        live_sessions = sessions.count()
        cancelled = sessions.filter(ClinicalSession.status == SessionStatus.SCHEDULED.value).update(
            {'status': SessionStatus.CANCELLED.value, 'ended_at': now, 'updated_at': now},
            synchronize_session=False,
        )
        if cancelled != live_sessions:
            raise InvalidTransition('The session for this booking is already in progress.')
    return release_slot(db, booking, now, policy)


def ensure_confirmed_cancellation_allowed(booking: Booking, reason: str | None, now: datetime) -> None:
    """Rules for withdrawing a CONFIRMED booking, whichever side of the booking/session pair asks."""
    if reason is None:
        raise ValidationError('A cancellation reason is required for confirmed bookings.')
    if now >= booking.start_time:
        raise InvalidTransition('Confirmed bookings can only be cancelled before they start.')


def normalize_cancellation_reason(reason: str | None) -> str | None:
    reason = (reason or '').strip() or None
    if reason and len(reason) > MAX_CANCELLATION_REASON_LENGTH:
        raise ValidationError(f'Cancellation reason must be {MAX_CANCELLATION_REASON_LENGTH} characters or fewer.')
    return reason


def cancel_booking(
    db: Session,
    booking_id: int,
    cancelled_by: int | None,
    reason: str | None = None,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> Booking:
    now = now or datetime.now()
    policy = policy or get_scheduling_policy()

    booking = get_booking(db, booking_id)
    ensure_booking_transition(booking.status, BookingStatus.CANCELLED)

    reason = normalize_cancellation_reason(reason)

    if booking.status == BookingStatus.CONFIRMED:
        ensure_confirmed_cancellation_allowed(booking, reason, now)
        if booking.session is not None and booking.session.status == SessionStatus.IN_PROGRESS:
            raise InvalidTransition('The session for this booking is already in progress.')

    with booking_slot_region(db, booking, policy):
        try:
            slot_released = apply_booking_cancellation(db, booking, cancelled_by, reason, now, policy)
            db.commit()
        except (SchedulingError, SQLAlchemyError):
            db.rollback()
            raise

    db.refresh(booking)
    events.emit(
        events.BOOKING_CANCELLED,
        booking,
        session_id=booking.session.id if booking.session else None,
        cancelled_by=cancelled_by,
        reason=reason,
        slot_released=slot_released,
    )
    return booking


def complete_booking_from_session(db: Session, booking: Booking, now: datetime) -> None:
    # Only the session state machine calls this, inside its own transaction.
    set_booking_status(db, booking, BookingStatus.COMPLETED, now)


def mark_no_show(
    db: Session,
    booking_id: int,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> Booking:
    now = now or datetime.now()
    policy = policy or get_scheduling_policy()

    booking = get_booking(db, booking_id)
    ensure_booking_transition(booking.status, BookingStatus.NO_SHOW)

    deadline = booking.start_time + timedelta(minutes=policy.no_show_grace_minutes)
    if now < deadline:
        raise InvalidTransition(f'A no-show can only be recorded after {deadline:%Y-%m-%d %H:%M}.')
    session = booking.session
    if session is not None and session.status != SessionStatus.SCHEDULED:
        raise InvalidTransition('The session for this booking has already started.')

    try:
        set_booking_status(db, booking, BookingStatus.NO_SHOW, now)
        if session is not None:
            updated = db.query(ClinicalSession).filter(
                ClinicalSession.id == session.id,
                ClinicalSession.status == SessionStatus.SCHEDULED.value,
            ).update(
                {'status': SessionStatus.CANCELLED.value, 'ended_at': now, 'updated_at': now},
                synchronize_session=False,
            )
            if updated != 1:
                raise InvalidTransition('The session for this booking has already started.')
        db.commit()
    except (SchedulingError, SQLAlchemyError):
        db.rollback()
        raise

    db.refresh(booking)
    events.emit(events.NO_SHOW_DETECTED, booking, session_id=session.id if session else None)
    return booking


def sweep_no_shows(
    db: Session,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> list[int]:
    """
    Move every overdue CONFIRMED booking to NO_SHOW and return their ids.

    Meant to be called periodically. Each booking is re-checked by ``mark_no_show``,
    so overlapping or repeated sweeps never transition a booking twice.
    """
    now = now or datetime.now()
    policy = policy or get_scheduling_policy()
    deadline = now - timedelta(minutes=policy.no_show_grace_minutes)

    candidate_ids = [
        booking_id
        for (booking_id,) in db.query(Booking.id).filter(
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.start_time <= deadline,
        ).order_by(Booking.start_time.asc()).all()
    ]

    moved: list[int] = []
    for booking_id in candidate_ids:
        try:
            mark_no_show(db, booking_id, now=now, policy=policy)
        except InvalidTransition as exc:
            logger.info('Skipping booking %s in no-show sweep: %s', booking_id, exc)
            continue
        moved.append(booking_id)

    if moved:
        logger.info('No-show sweep moved %d bookings', len(moved))
    return moved


def transition_booking(
    db: Session,
    booking_id: int,
    target: BookingStatus | str,
    actor_id: int | None = None,
    reason: str | None = None,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> Booking:
    try:
        target = BookingStatus(target)
    except ValueError as exc:
        raise ValidationError(f'Unknown booking status: {target}.') from exc

    if target == BookingStatus.CONFIRMED:
        return confirm_booking(db, booking_id, now=now, policy=policy)
    if target == BookingStatus.CANCELLED:
        return cancel_booking(db, booking_id, actor_id, reason, now=now, policy=policy)
    if target == BookingStatus.NO_SHOW:
        return mark_no_show(db, booking_id, now=now, policy=policy)
    if target == BookingStatus.COMPLETED:
        raise InvalidTransition('Bookings are completed by completing their session.')
    raise InvalidTransition('Bookings cannot be moved back to PENDING.')


def add_practitioner_notes(db: Session, booking_id: int, notes: str, now: datetime | None = None) -> Booking:
    notes = notes.strip()
    if len(notes) > MAX_PRACTITIONER_NOTES_LENGTH:
        raise ValidationError(f'Notes must be {MAX_PRACTITIONER_NOTES_LENGTH} characters or fewer.')

    booking = get_booking(db, booking_id)
    if booking.is_terminal:
        raise InvalidTransition(f'Notes cannot be changed on a {booking.status} booking.')

    try:
        booking.practitioner_notes = notes or None
        booking.updated_at = now or datetime.now()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(booking)
    return booking
