from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user, is_admin, require_role
from backend.models.booking import Booking, BookingStatus, SessionType
from backend.models.user import ADMIN_ROLE, PATIENT_ROLE, PRACTITIONER_ROLE, User
from backend.routes.common import (
    PaginationResponse,
    build_pagination,
    ensure_database_ready,
    get_db,
    service_errors,
)
from backend.scheduling.booking_state import (
    MAX_CANCELLATION_REASON_LENGTH,
    MAX_PAGE_SIZE,
    add_practitioner_notes,
    cancel_booking,
    get_booking,
    list_bookings,
    sweep_no_shows,
    transition_booking,
)
from backend.scheduling.reservation import MAX_NOTES_LENGTH, ReservationDetails, reserve_slot

router = APIRouter(tags=['bookings'])


class CreateBookingRequest(BaseModel):
    slot_id: int
    session_type: SessionType = SessionType.VIDEO_CALL
    patient_notes: str | None = None

    @field_validator('patient_notes')
    @classmethod
    def validate_patient_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_NOTES_LENGTH} characters or fewer.')

        return normalized


class UpdateBookingStatusRequest(BaseModel):
    status: BookingStatus | None = None
    cancellation_reason: str | None = None
    practitioner_notes: str | None = None

    @field_validator('cancellation_reason')
    @classmethod
    def validate_cancellation_reason(cls, value: str | None) -> str | None:
        if value is not None and len(value.strip()) > MAX_CANCELLATION_REASON_LENGTH:
            raise ValueError(f'Cancellation reason must be {MAX_CANCELLATION_REASON_LENGTH} characters or fewer.')
        return value


class BookingSessionSummary(BaseModel):
    id: int
    status: str

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    id: int
    patient_id: int
    practitioner_id: int
    slot_id: int
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    session_type: str
    status: str
    fee: Decimal
    patient_notes: str | None = None
    practitioner_notes: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: int | None = None
    cancellation_reason: str | None = None
    session: BookingSessionSummary | None = None

    class Config:
        from_attributes = True


class BookingListResponse(BaseModel):
    data: list[BookingResponse]
    pagination: PaginationResponse


class NoShowSweepResponse(BaseModel):
    booking_ids: list[int]


def ensure_booking_participant(booking: Booking, current_user: User) -> None:
    if is_admin(current_user):
        return
    if current_user.id not in (booking.patient_id, booking.practitioner_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You can only access your own bookings.',
        )


def ensure_booking_practitioner(booking: Booking, current_user: User) -> None:
    if is_admin(current_user):
        return
    if current_user.role != PRACTITIONER_ROLE or current_user.id != booking.practitioner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Only the practitioner for this booking can do this.',
        )


def resolve_listing_scope(
    current_user: User,
    patient_id: int | None,
    practitioner_id: int | None,
) -> tuple[int | None, int | None]:
    """
    Patients and practitioners always list their own side of a booking and may
    filter by the other side; admins may filter by either.
    """
    if current_user.role == PATIENT_ROLE:
        if patient_id not in (None, current_user.id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Patients can only list their own records.',
            )
        return current_user.id, practitioner_id

    if current_user.role == PRACTITIONER_ROLE:
        if practitioner_id not in (None, current_user.id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Practitioners can only list their own records.',
            )
        return patient_id, current_user.id

    require_role(current_user, ADMIN_ROLE)
    return patient_id, practitioner_id


def load_booking(db: Session, booking_id: int) -> Booking:
    with service_errors(db):
        return get_booking(db, booking_id)


@router.post('', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_role(current_user, PATIENT_ROLE, detail='Only patients can book appointments.')
    ensure_database_ready()

    with service_errors(db):
        return reserve_slot(
            db,
            data.slot_id,
            current_user.id,
            ReservationDetails(session_type=data.session_type, patient_notes=data.patient_notes),
        )


@router.get('', response_model=BookingListResponse)
def list_my_bookings(
    status_filter: BookingStatus | None = Query(default=None, alias='status'),
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
        bookings, total = list_bookings(
            db,
            patient_id=patient_id,
            practitioner_id=practitioner_id,
            status=status_filter,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )
        return BookingListResponse(
            data=[BookingResponse.model_validate(booking) for booking in bookings],
            pagination=build_pagination(page, limit, total),
        )


@router.post('/no-show-sweep', response_model=NoShowSweepResponse)
def run_no_show_sweep(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_role(current_user, ADMIN_ROLE, detail='Only admins can run the no-show sweep.')
    ensure_database_ready()

    with service_errors(db):
        return NoShowSweepResponse(booking_ids=sweep_no_shows(db))


@router.get('/{booking_id}', response_model=BookingResponse)
def get_booking_details(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    booking = load_booking(db, booking_id)
    ensure_booking_participant(booking, current_user)
    return booking


@router.put('/{booking_id}/status', response_model=BookingResponse)
def update_booking_status(
    booking_id: int,
    data: UpdateBookingStatusRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if data.status is not None and data.practitioner_notes is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Update the status and the practitioner notes in separate requests.',
        )

    ensure_database_ready()
    booking = load_booking(db, booking_id)
    ensure_booking_participant(booking, current_user)

    if data.practitioner_notes is not None:
        ensure_booking_practitioner(booking, current_user)
    if data.status is not None and data.status != BookingStatus.CANCELLED:
        if current_user.role == PATIENT_ROLE:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Patients cannot update booking status.',
            )
        ensure_booking_practitioner(booking, current_user)

    with service_errors(db):
        if data.practitioner_notes is not None:
            booking = add_practitioner_notes(db, booking_id, data.practitioner_notes)
        if data.status is not None:
            booking = transition_booking(
                db,
                booking_id,
                data.status,
                actor_id=current_user.id,
                reason=data.cancellation_reason,
            )
        return booking


@router.delete('/{booking_id}', response_model=BookingResponse)
def cancel_my_booking(
    booking_id: int,
    reason: str | None = Query(default=None, max_length=MAX_CANCELLATION_REASON_LENGTH),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    booking = load_booking(db, booking_id)
    ensure_booking_participant(booking, current_user)

    with service_errors(db):
        return cancel_booking(db, booking_id, current_user.id, reason)
