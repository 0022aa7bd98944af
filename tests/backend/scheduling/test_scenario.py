import threading
from datetime import date, datetime, time, timedelta

import pytest

from backend.models.booking import Booking, BookingStatus
from backend.models.session import SessionStatus
from backend.scheduling import events
from backend.scheduling.booking_state import confirm_booking, get_booking
from backend.scheduling.errors import AlreadyRated, SlotUnavailable
from backend.scheduling.ratings import rate_session
from backend.scheduling.reservation import reserve_slot
from backend.scheduling.session_state import complete_session, start_session
from backend.scheduling.slot_generator import create_availability_rule, generate_slots

SUNDAY = date(2030, 1, 6)
MONDAY = date(2030, 1, 7)
NOW = datetime(2030, 1, 1, 8, 0)


def test_monday_rule_to_rated_session(
    db, session_factory, practitioner, patient, other_patient, policy, captured_events
) -> None:
    create_availability_rule(db, practitioner.id, 0, time(9, 0), time(11, 0))
    slots = generate_slots(db, practitioner.id, start_date=SUNDAY, days=6, policy=policy)

    assert [(slot.slot_date, slot.start_time, slot.end_time) for slot in slots] == [
        (MONDAY, time(9, 0), time(10, 0)),
        (MONDAY, time(10, 0), time(11, 0)),
    ]
    first_slot_id = slots[0].id

    barrier = threading.Barrier(2)
    outcomes = {}

    def attempt(patient_id: int) -> None:
        session = session_factory()
        try:
            barrier.wait()
            try:
                outcomes[patient_id] = reserve_slot(session, first_slot_id, patient_id, now=NOW, policy=policy).id
            except SlotUnavailable as exc:
                outcomes[patient_id] = exc
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in (patient.id, other_patient.id)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    booking_ids = [outcome for outcome in outcomes.values() if isinstance(outcome, int)]
    assert len(outcomes) == 2
    assert len(booking_ids) == 1
    assert sum(isinstance(outcome, SlotUnavailable) for outcome in outcomes.values()) == 1
    assert db.query(Booking).count() == 1

    booking = get_booking(db, booking_ids[0])
    assert booking.status == BookingStatus.PENDING

    booking = confirm_booking(db, booking.id, now=NOW, policy=policy)
    session = booking.session
    assert session.status == SessionStatus.SCHEDULED

    started_at = datetime(2030, 1, 7, 9, 3)
    ended_at = started_at + timedelta(minutes=50)
    session = start_session(db, session.id, now=started_at, policy=policy)
    assert session.status == SessionStatus.IN_PROGRESS

    session = complete_session(db, session.id, now=ended_at)
    assert session.status == SessionStatus.COMPLETED
    assert session.actual_duration_minutes == 50
    assert session.booking.status == BookingStatus.COMPLETED

    rated = rate_session(db, session.id, 'patient', 5, 'great')
    assert rated.patient_rating == 5
    assert rated.patient_feedback == 'great'

    with pytest.raises(AlreadyRated):
        rate_session(db, session.id, 'patient', 4, 'still great')

    assert [event.name for event in captured_events] == [events.BOOKING_CONFIRMED, events.SESSION_COMPLETED]
