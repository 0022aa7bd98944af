import os
from datetime import date, datetime, time
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.core.config import SchedulingPolicy  # noqa: E402
from backend.database import Base, build_engine  # noqa: E402
from backend.models.availability import TimeSlot  # noqa: E402
from backend.models.booking import Booking  # noqa: E402,F401
from backend.models.session import ClinicalSession  # noqa: E402,F401
from backend.models.user import User  # noqa: E402
from backend.scheduling.events import dispatcher  # noqa: E402

# 2030-01-07 is a Monday.
MONDAY = date(2030, 1, 7)
BEFORE_MONDAY = datetime(2030, 1, 1, 8, 0)


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f'sqlite:///{tmp_path / "booking.db"}')
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def policy() -> SchedulingPolicy:
    return SchedulingPolicy(
        slot_increment_minutes=60,
        slot_horizon_days=28,
        lock_slot_within_hours=0,
        no_show_grace_minutes=15,
        session_early_start_minutes=15,
        session_late_start_minutes=30,
        reservation_lock_timeout_seconds=10,
    )


def _add_user(db, email: str, role: str, fee: Decimal | None = None) -> User:
    user = User(email=email, full_name=email.split('@')[0], role=role, consultation_fee=fee)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def practitioner(db) -> User:
    return _add_user(db, 'dr.lee@clinic.test', 'practitioner', Decimal('80.00'))


@pytest.fixture
def other_practitioner(db) -> User:
    return _add_user(db, 'dr.khan@clinic.test', 'practitioner', Decimal('95.00'))


@pytest.fixture
def patient(db) -> User:
    return _add_user(db, 'sam@patients.test', 'patient')


@pytest.fixture
def other_patient(db) -> User:
    return _add_user(db, 'alex@patients.test', 'patient')


@pytest.fixture
def admin(db) -> User:
    return _add_user(db, 'ops@clinic.test', 'admin')


@pytest.fixture
def make_slot(db):
    def _make_slot(practitioner_id: int, slot_date: date = MONDAY, start: time = time(9, 0), end: time = time(10, 0)) -> TimeSlot:
        slot = TimeSlot(
            practitioner_id=practitioner_id,
            slot_date=slot_date,
            start_time=start,
            end_time=end,
            is_available=True,
            is_booked=False,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot

    return _make_slot


@pytest.fixture
def captured_events():
    received = []
    dispatcher.subscribe(received.append)
    try:
        yield received
    finally:
        dispatcher.unsubscribe(received.append)
