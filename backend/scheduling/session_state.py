"""
Session lifecycle.

SCHEDULED -> IN_PROGRESS -> COMPLETED, and SCHEDULED/IN_PROGRESS -> CANCELLED.
Completing a session completes its booking; cancelling it cancels the booking
unless the booking is already terminal.
"""

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import SchedulingPolicy, get_scheduling_policy
from backend.models.booking import Booking, BookingStatus
from backend.models.session import ClinicalSession, SessionStatus
from backend.scheduling import events
from backend.scheduling.booking_state import (
    MAX_PAGE_SIZE,
    apply_booking_cancellation,
    booking_slot_region,
    complete_booking_from_session,
    ensure_confirmed_cancellation_allowed,
    normalize_cancellation_reason,
)
from backend.scheduling.errors import InvalidTransition, SchedulingError, SessionNotFound, ValidationError

logger = logging.getLogger(__name__)

MAX_SESSION_NOTES_LENGTH = 2000
MAX_CLINICAL_FIELD_LENGTH = 1000

SESSION_TRANSITIONS = {
    SessionStatus.SCHEDULED: frozenset({SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED}),
    SessionStatus.IN_PROGRESS: frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def ensure_session_transition(current: str, target: SessionStatus) -> None:
    current_status = SessionStatus(current)
    if target not in SESSION_TRANSITIONS[current_status]:
        raise InvalidTransition(f'Cannot move a {current_status.value} session to {target.value}.')


def set_session_status(
    db: Session,
    session: ClinicalSession,
    target: SessionStatus,
    now: datetime,
    criteria: tuple = (),
    **values,
) -> None:
    """Compare-and-set on the session status; ``criteria`` adds conditions the row must still meet."""
    ensure_session_transition(session.status, target)

    updated = db.query(ClinicalSession).filter(
        ClinicalSession.id == session.id,
        ClinicalSession.status == session.status,
        *criteria,
    ).update(
        {'status': target.value, 'updated_at': now, **values},
        synchronize_session=False,
    )
    if updated != 1:
        raise InvalidTransition('The session was changed by another request. Reload and try again.')

    logger.info('Session %s: %s -> %s', session.id, session.status, target.value)


def get_session(db: Session, session_id: int) -> ClinicalSession:
    session = db.query(ClinicalSession).filter(ClinicalSession.id == session_id).first()
    if session is None:
        raise SessionNotFound()
    return session


def list_sessions(
    db: Session,
    patient_id: int | None = None,
    practitioner_id: int | None = None,
    status: SessionStatus | str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[ClinicalSession], int]:
    """Sessions newest first; ``start``/``end`` bound when the session actually started."""
    if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f'Page must be at least 1 and limit between 1 and {MAX_PAGE_SIZE}.')

    query = db.query(ClinicalSession).join(Booking, ClinicalSession.booking_id == Booking.id)
    if patient_id is not None:
        query = query.filter(Booking.patient_id == patient_id)
    if practitioner_id is not None:
        query = query.filter(Booking.practitioner_id == practitioner_id)
    if status is not None:
        try:
            status = SessionStatus(status)
        except ValueError as exc:
            raise ValidationError(f'Unknown session status: {status}.') from exc
        query = query.filter(ClinicalSession.status == status.value)
    if start is not None:
        query = query.filter(ClinicalSession.started_at >= start)
    if end is not None:
        query = query.filter(ClinicalSession.started_at <= end)

    total = query.count()
    sessions = query.order_by(
        ClinicalSession.created_at.desc(), ClinicalSession.id.desc()
    ).offset((page - 1) * limit).limit(limit).all()
    return sessions, total


def start_window(start_time: datetime, policy: SchedulingPolicy) -> tuple[datetime, datetime]:
    return (
        start_time - timedelta(minutes=policy.session_early_start_minutes),
        start_time + timedelta(minutes=policy.session_late_start_minutes),
    )


def start_session(
    db: Session,
    session_id: int,
    room_id: str | None = None,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> ClinicalSession:
    now = now or datetime.now()
    policy = policy or get_scheduling_policy()

    session = get_session(db, session_id)
    ensure_session_transition(session.status, SessionStatus.IN_PROGRESS)

    booking = session.booking
    if booking.status != BookingStatus.CONFIRMED:
        raise InvalidTransition('Only sessions of confirmed bookings can start.')

    earliest, latest = start_window(booking.start_time, policy)
    if not earliest <= now <= latest:
        raise InvalidTransition(
            f'This session can only start between {earliest:%Y-%m-%d %H:%M} and {latest:%Y-%m-%d %H:%M}.'
        )

    booking_still_confirmed = ClinicalSession.booking_id.in_(
        select(Booking.id).where(Booking.id == booking.id, Booking.status == BookingStatus.CONFIRMED.value)
    )
    with booking_slot_region(db, booking, policy):
        try:
            set_session_status(
                db,
                session,
                SessionStatus.IN_PROGRESS,
                now,
                criteria=(booking_still_confirmed,),
                started_at=now,
                room_id=room_id,
            )
            db.commit()
        except (SchedulingError, SQLAlchemyError):
            db.rollback()
            raise

    db.refresh(session)
    return session


def complete_session(db: Session, session_id: int, now: datetime | None = None) -> ClinicalSession:
    now = now or datetime.now()

    session = get_session(db, session_id)
    ensure_session_transition(session.status, SessionStatus.COMPLETED)

    booking = session.booking
    elapsed = max(now - session.started_at, timedelta(0))

    try:
        set_session_status(
            db,
            session,
            SessionStatus.COMPLETED,
            now,
            ended_at=now,
            actual_duration_minutes=int(elapsed.total_seconds() // 60),
        )
        complete_booking_from_session(db, booking, now)
        db.commit()
    except (SchedulingError, SQLAlchemyError):
        db.rollback()
        raise

    db.refresh(session)
    db.refresh(booking)
    events.emit(
        events.SESSION_COMPLETED,
        booking,
        session_id=session.id,
        actual_duration_minutes=session.actual_duration_minutes,
    )
    return session


def cancel_session(
    db: Session,
    session_id: int,
    cancelled_by: int | None = None,
    reason: str | None = None,
    now: datetime | None = None,
    policy: SchedulingPolicy | None = None,
) -> ClinicalSession:
    now = now or datetime.now()
    policy = policy or get_scheduling_policy()

    session = get_session(db, session_id)
    ensure_session_transition(session.status, SessionStatus.CANCELLED)

    booking = session.booking
    cancel_booking_too = not booking.is_terminal
    reason = normalize_cancellation_reason(reason)
    if (
        cancel_booking_too
        and booking.status == BookingStatus.CONFIRMED
        and session.status == SessionStatus.SCHEDULED
    ):
        # An unstarted session withdraws the booking, so the booking's rules apply.
        ensure_confirmed_cancellation_allowed(booking, reason, now)
    slot_released = False

    with booking_slot_region(db, booking, policy):
        try:
            set_session_status(db, session, SessionStatus.CANCELLED, now, ended_at=now)
            if cancel_booking_too:
                slot_released = apply_booking_cancellation(
                    db, booking, cancelled_by, reason, now, policy, cascade_session=False
                )
            db.commit()
        except (SchedulingError, SQLAlchemyError):
            db.rollback()
            raise

    db.refresh(session)
    if cancel_booking_too:
        db.refresh(booking)
        events.emit(
            events.BOOKING_CANCELLED,
            booking,
            session_id=session.id,
            cancelled_by=cancelled_by,
            reason=reason,
            slot_released=slot_released,
        )
    return session


def add_session_notes(
    db: Session,
    session_id: int,
    notes: str | None = None,
    diagnosis: str | None = None,
    prescription: str | None = None,
    follow_up_date: date | None = None,
    now: datetime | None = None,
) -> ClinicalSession:
    if notes is not None and len(notes) > MAX_SESSION_NOTES_LENGTH:
        raise ValidationError(f'Session notes must be {MAX_SESSION_NOTES_LENGTH} characters or fewer.')
    for label, value in (('Diagnosis', diagnosis), ('Prescription', prescription)):
        if value is not None and len(value) > MAX_CLINICAL_FIELD_LENGTH:
            raise ValidationError(f'{label} must be {MAX_CLINICAL_FIELD_LENGTH} characters or fewer.')

    session = get_session(db, session_id)
    if session.status == SessionStatus.CANCELLED:
        raise InvalidTransition('Notes cannot be added to a cancelled session.')

    changes = {
        'notes': notes,
        'diagnosis': diagnosis,
        'prescription': prescription,
        'follow_up_date': follow_up_date,
    }
    try:
        for field_name, value in changes.items():
            if value is not None:
                setattr(session, field_name, value)
        session.updated_at = now or datetime.now()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(session)
    return session
