from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user, is_admin
from backend.models.session import ClinicalSession, SessionStatus
from backend.models.user import PRACTITIONER_ROLE, User
from backend.routes.booking_routes import resolve_listing_scope
from backend.routes.common import (
    PaginationResponse,
    build_pagination,
    ensure_database_ready,
    get_db,
    service_errors,
)
from backend.scheduling.booking_state import MAX_PAGE_SIZE
from backend.scheduling.ratings import rate_session
from backend.scheduling.session_state import (
    add_session_notes,
    cancel_session,
    complete_session,
    get_session,
    list_sessions,
    start_session,
)

router = APIRouter(tags=['sessions'])


class StartSessionRequest(BaseModel):
    room_id: str | None = None


class CancelSessionRequest(BaseModel):
    reason: str | None = None


class SessionNotesRequest(BaseModel):
    notes: str | None = None
    diagnosis: str | None = None
    prescription: str | None = None
    follow_up_date: date | None = None


class RateSessionRequest(BaseModel):
    # Range is checked by the rating subsystem so it reports InvalidRating.
    rating: int
    feedback: str | None = None


class SessionResponse(BaseModel):
    id: int
    booking_id: int
    status: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    actual_duration_minutes: int | None = None
    notes: str | None = None
    diagnosis: str | None = None
    prescription: str | None = None
    follow_up_date: date | None = None
    room_id: str | None = None
    recording_url: str | None = None
    patient_rating: int | None = None
    patient_feedback: str | None = None
    practitioner_rating: int | None = None
    practitioner_feedback: str | None = None

    class Config:
        from_attributes = True


class SessionListResponse(BaseModel):
    data: list[SessionResponse]
    pagination: PaginationResponse


def load_session(db: Session, session_id: int, current_user: User) -> ClinicalSession:
    with service_errors(db):
        session = get_session(db, session_id)

    booking = session.booking
    if not is_admin(current_user) and current_user.id not in (booking.patient_id, booking.practitioner_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You can only access your own sessions.',
        )
    return session


def ensure_session_practitioner(session: ClinicalSession, current_user: User, action: str) -> None:
    if current_user.role != PRACTITIONER_ROLE or current_user.id != session.booking.practitioner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f'Only the practitioner for this session can {action}.',
        )


@router.get('', response_model=SessionListResponse)
def list_my_sessions(
    status_filter: SessionStatus | None = Query(default=None, alias='status'),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    patient_id: int | None = Query(default=None),
    practitioner_id: int | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    patient_id, practitioner_id = resolve_listing_scope(current_user, patient_id, practitioner_id)
    ensure_database_ready()

    with service_errors(db):
        sessions, total = list_sessions(
            db,
            patient_id=patient_id,
            practitioner_id=practitioner_id,
            status=status_filter,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )
        return SessionListResponse(
            data=[SessionResponse.model_validate(session) for session in sessions],
            pagination=build_pagination(page, limit, total),
        )


@router.get('/{session_id}', response_model=SessionResponse)
def get_session_details(
    session_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    return load_session(db, session_id, current_user)


@router.post('/{session_id}/start', response_model=SessionResponse)
def start_my_session(
    session_id: int,
    data: StartSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    session = load_session(db, session_id, current_user)
    ensure_session_practitioner(session, current_user, 'start it')

    with service_errors(db):
        return start_session(db, session_id, room_id=data.room_id)


@router.post('/{session_id}/end', response_model=SessionResponse)
def end_my_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    session = load_session(db, session_id, current_user)
    ensure_session_practitioner(session, current_user, 'end it')

    with service_errors(db):
        return complete_session(db, session_id)


@router.post('/{session_id}/cancel', response_model=SessionResponse)
def cancel_my_session(
    session_id: int,
    data: CancelSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    load_session(db, session_id, current_user)

    with service_errors(db):
        return cancel_session(db, session_id, cancelled_by=current_user.id, reason=data.reason)


@router.post('/{session_id}/notes', response_model=SessionResponse)
def add_my_session_notes(
    session_id: int,
    data: SessionNotesRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    session = load_session(db, session_id, current_user)
    ensure_session_practitioner(session, current_user, 'add notes')

    with service_errors(db):
        return add_session_notes(
            db,
            session_id,
            notes=data.notes,
            diagnosis=data.diagnosis,
            prescription=data.prescription,
            follow_up_date=data.follow_up_date,
        )


@router.post('/{session_id}/rating', response_model=SessionResponse)
def rate_my_session(
    session_id: int,
    data: RateSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    load_session(db, session_id, current_user)

    with service_errors(db):
        return rate_session(db, session_id, current_user.role, data.rating, data.feedback)
