from datetime import datetime

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.models.availability import TimeSlot
from backend.models.booking import BookingStatus, SessionType
from backend.routes.booking_routes import (
    BookingResponse,
    CreateBookingRequest,
    UpdateBookingStatusRequest,
    cancel_my_booking,
    create_booking,
    get_booking_details,
    list_my_bookings,
    run_no_show_sweep,
    update_booking_status,
)
from backend.scheduling.booking_state import confirm_booking
from backend.scheduling.reservation import reserve_slot

NOW = datetime(2030, 1, 1, 8, 0)


@pytest.fixture(autouse=True)
def skip_schema_check(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('backend.routes.booking_routes.ensure_database_ready', lambda: None)


@pytest.fixture
def booking(db, practitioner, patient, make_slot, policy):
    return reserve_slot(db, make_slot(practitioner.id).id, patient.id, now=NOW, policy=policy)


def _list(db, current_user, **filters):
    arguments = {
        'status_filter': None,
        'start': None,
        'end': None,
        'patient_id': None,
        'practitioner_id': None,
        'page': 1,
        'limit': 10,
    }
    arguments.update(filters)
    return list_my_bookings(current_user=current_user, db=db, **arguments)


def test_create_booking_request_normalizes_notes() -> None:
    request = CreateBookingRequest(slot_id=1, patient_notes='   ')

    assert request.patient_notes is None
    assert request.session_type == SessionType.VIDEO_CALL


def test_create_booking_request_rejects_long_notes() -> None:
    with pytest.raises(ValidationError):
        CreateBookingRequest(slot_id=1, patient_notes='x' * 1001)


def test_create_booking_rejects_practitioners(db, practitioner, make_slot) -> None:
    slot = make_slot(practitioner.id)

    with pytest.raises(HTTPException) as exception_info:
        create_booking(data=CreateBookingRequest(slot_id=slot.id), current_user=practitioner, db=db)

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Only patients can book appointments.'


def test_create_booking_returns_pending_booking(db, practitioner, patient, make_slot) -> None:
    slot = make_slot(practitioner.id)

    booking = create_booking(
        data=CreateBookingRequest(slot_id=slot.id, session_type=SessionType.PHONE_CALL, patient_notes=' Follow-up '),
        current_user=patient,
        db=db,
    )

    response = BookingResponse.model_validate(booking)
    assert response.status == BookingStatus.PENDING.value
    assert response.session_type == SessionType.PHONE_CALL.value
    assert response.patient_notes == 'Follow-up'
    assert response.session is None


def test_create_booking_maps_lost_race_to_409(db, practitioner, patient, other_patient, make_slot) -> None:
    slot = make_slot(practitioner.id)
    create_booking(data=CreateBookingRequest(slot_id=slot.id), current_user=patient, db=db)

    with pytest.raises(HTTPException) as exception_info:
        create_booking(data=CreateBookingRequest(slot_id=slot.id), current_user=other_patient, db=db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'This time slot is not available.'


def test_create_booking_maps_missing_slot_to_404(db, patient) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_booking(data=CreateBookingRequest(slot_id=404), current_user=patient, db=db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Slot not found.'


def test_get_booking_details_rejects_strangers(db, booking, other_patient, admin) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_booking_details(booking_id=booking.id, current_user=other_patient, db=db)

    assert exception_info.value.status_code == 403
    assert get_booking_details(booking_id=booking.id, current_user=admin, db=db).id == booking.id


def test_list_my_bookings_scopes_to_current_user(db, booking, patient, other_patient, practitioner) -> None:
    mine = _list(db, patient)
    theirs = _list(db, other_patient)
    as_practitioner = _list(db, practitioner, patient_id=patient.id)

    assert [item.id for item in mine.data] == [booking.id]
    assert mine.pagination.total == 1
    assert mine.pagination.total_pages == 1
    assert mine.pagination.has_next is False
    assert theirs.data == []
    assert [item.id for item in as_practitioner.data] == [booking.id]


def test_list_my_bookings_filters_by_status(db, booking, patient) -> None:
    assert _list(db, patient, status_filter=BookingStatus.CONFIRMED).data == []
    assert len(_list(db, patient, status_filter=BookingStatus.PENDING).data) == 1


def test_update_booking_status_confirms_for_practitioner(db, booking, practitioner) -> None:
    updated = update_booking_status(
        booking_id=booking.id,
        data=UpdateBookingStatusRequest(status=BookingStatus.CONFIRMED),
        current_user=practitioner,
        db=db,
    )

    response = BookingResponse.model_validate(updated)
    assert response.status == BookingStatus.CONFIRMED.value
    assert response.session is not None
    assert response.session.status == 'SCHEDULED'


def test_update_booking_status_rejects_patient_confirmation(db, booking, patient) -> None:
    with pytest.raises(HTTPException) as exception_info:
        update_booking_status(
            booking_id=booking.id,
            data=UpdateBookingStatusRequest(status=BookingStatus.CONFIRMED),
            current_user=patient,
            db=db,
        )

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Patients cannot update booking status.'


def test_update_booking_status_rejects_direct_completion(db, booking, practitioner, policy) -> None:
    confirm_booking(db, booking.id, now=NOW, policy=policy)

    with pytest.raises(HTTPException) as exception_info:
        update_booking_status(
            booking_id=booking.id,
            data=UpdateBookingStatusRequest(status=BookingStatus.COMPLETED),
            current_user=practitioner,
            db=db,
        )

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'Bookings are completed by completing their session.'


def test_update_booking_status_records_practitioner_notes(db, booking, practitioner, patient) -> None:
    updated = update_booking_status(
        booking_id=booking.id,
        data=UpdateBookingStatusRequest(practitioner_notes=' Bring scans '),
        current_user=practitioner,
        db=db,
    )
    assert updated.practitioner_notes == 'Bring scans'

    with pytest.raises(HTTPException) as exception_info:
        update_booking_status(
            booking_id=booking.id,
            data=UpdateBookingStatusRequest(practitioner_notes='Patient edit'),
            current_user=patient,
            db=db,
        )
    assert exception_info.value.status_code == 403


def test_cancel_confirmed_booking_requires_reason(db, booking, patient, policy) -> None:
    confirm_booking(db, booking.id, now=NOW, policy=policy)

    with pytest.raises(HTTPException) as exception_info:
        cancel_my_booking(booking_id=booking.id, reason=None, current_user=patient, db=db)

    assert exception_info.value.status_code == 422
    assert exception_info.value.detail == 'A cancellation reason is required for confirmed bookings.'


def test_cancel_my_booking_releases_slot(db, booking, patient) -> None:
    cancelled = cancel_my_booking(booking_id=booking.id, reason='Feeling better', current_user=patient, db=db)

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancelled_by == patient.id
    assert cancelled.cancellation_reason == 'Feeling better'
    slot = db.query(TimeSlot).filter(TimeSlot.id == booking.slot_id).one()
    assert slot.is_booked is False
    assert slot.booking_id is None

    with pytest.raises(HTTPException) as exception_info:
        cancel_my_booking(booking_id=booking.id, reason='Again', current_user=patient, db=db)
    assert exception_info.value.status_code == 409


def test_run_no_show_sweep_is_admin_only(db, practitioner, admin) -> None:
    with pytest.raises(HTTPException) as exception_info:
        run_no_show_sweep(current_user=practitioner, db=db)

    assert exception_info.value.status_code == 403
    assert run_no_show_sweep(current_user=admin, db=db).booking_ids == []


def test_list_my_bookings_rejects_foreign_scope(db, booking, patient, other_patient, practitioner, other_practitioner) -> None:
    with pytest.raises(HTTPException) as patient_error:
        _list(db, other_patient, patient_id=patient.id)
    with pytest.raises(HTTPException) as practitioner_error:
        _list(db, other_practitioner, practitioner_id=practitioner.id)

    assert patient_error.value.status_code == 403
    assert patient_error.value.detail == 'Patients can only list their own records.'
    assert practitioner_error.value.status_code == 403
    assert practitioner_error.value.detail == 'Practitioners can only list their own records.'


def test_list_my_bookings_applies_counterpart_filter(db, booking, patient, other_patient, practitioner, admin) -> None:
    assert _list(db, practitioner, patient_id=other_patient.id).data == []
    assert [item.id for item in _list(db, patient, practitioner_id=practitioner.id).data] == [booking.id]
    assert [item.id for item in _list(db, admin, patient_id=patient.id).data] == [booking.id]
    assert _list(db, admin, patient_id=other_patient.id).data == []


def test_update_booking_status_rejects_status_and_notes_together(db, booking, practitioner, policy) -> None:
    confirm_booking(db, booking.id, now=NOW, policy=policy)

    with pytest.raises(HTTPException) as exception_info:
        update_booking_status(
            booking_id=booking.id,
            data=UpdateBookingStatusRequest(status=BookingStatus.COMPLETED, practitioner_notes='Should not stick'),
            current_user=practitioner,
            db=db,
        )

    assert exception_info.value.status_code == 400
    db.refresh(booking)
    assert booking.practitioner_notes is None
    assert booking.status == BookingStatus.CONFIRMED
