from datetime import date, time

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.models.availability import AvailabilityRule, TimeSlot
from backend.routes.availability_routes import (
    CreateAvailabilityRuleRequest,
    GenerateSlotsRequest,
    UpdateAvailabilityRuleRequest,
    create_rule,
    generate_practitioner_slots,
    list_open_slots,
    list_rules,
    remove_rule,
    resolve_practitioner_id,
    update_rule,
)

SUNDAY = date(2030, 1, 6)
MONDAY = date(2030, 1, 7)


@pytest.fixture(autouse=True)
def skip_schema_check(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('backend.routes.availability_routes.ensure_database_ready', lambda: None)


def test_create_rule_request_rejects_inverted_window() -> None:
    with pytest.raises(ValidationError):
        CreateAvailabilityRuleRequest(day_of_week=0, start_time=time(11, 0), end_time=time(9, 0))


def test_create_rule_request_rejects_unknown_weekday() -> None:
    with pytest.raises(ValidationError):
        CreateAvailabilityRuleRequest(day_of_week=7, start_time=time(9, 0), end_time=time(10, 0))


def test_generate_slots_request_rejects_long_horizon() -> None:
    with pytest.raises(ValidationError):
        GenerateSlotsRequest(days=365)


def test_resolve_practitioner_id_rejects_patients(patient) -> None:
    with pytest.raises(HTTPException) as exception_info:
        resolve_practitioner_id(patient, None)

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Only practitioners can manage their availability.'


def test_resolve_practitioner_id_rejects_other_practitioner(practitioner, other_practitioner) -> None:
    with pytest.raises(HTTPException) as exception_info:
        resolve_practitioner_id(practitioner, other_practitioner.id)

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Practitioners can only manage their own availability.'


def test_resolve_practitioner_id_requires_target_for_admin(admin, practitioner) -> None:
    with pytest.raises(HTTPException) as exception_info:
        resolve_practitioner_id(admin, None)

    assert exception_info.value.status_code == 400
    assert resolve_practitioner_id(admin, practitioner.id) == practitioner.id


def test_create_rule_defaults_to_current_practitioner(db, practitioner) -> None:
    rule = create_rule(
        data=CreateAvailabilityRuleRequest(day_of_week=0, start_time=time(9, 0), end_time=time(11, 0)),
        current_user=practitioner,
        db=db,
    )

    assert rule.practitioner_id == practitioner.id
    assert rule.is_enabled is True
    assert [stored.id for stored in list_rules(practitioner_id=practitioner.id, enabled_only=False, db=db)] == [rule.id]


def test_update_rule_maps_invalid_window_to_422(db, practitioner) -> None:
    rule = create_rule(
        data=CreateAvailabilityRuleRequest(day_of_week=0, start_time=time(9, 0), end_time=time(11, 0)),
        current_user=practitioner,
        db=db,
    )

    with pytest.raises(HTTPException) as exception_info:
        update_rule(
            rule_id=rule.id,
            data=UpdateAvailabilityRuleRequest(start_time=time(12, 0)),
            current_user=practitioner,
            db=db,
        )

    assert exception_info.value.status_code == 422
    assert exception_info.value.detail == 'Availability start time must be before its end time.'


def test_update_rule_disables_rule(db, practitioner) -> None:
    rule = create_rule(
        data=CreateAvailabilityRuleRequest(day_of_week=2, start_time=time(9, 0), end_time=time(10, 0)),
        current_user=practitioner,
        db=db,
    )

    updated = update_rule(
        rule_id=rule.id,
        data=UpdateAvailabilityRuleRequest(is_enabled=False),
        current_user=practitioner,
        db=db,
    )

    assert updated.is_enabled is False
    assert updated.start_time == time(9, 0)
    assert list_rules(practitioner_id=practitioner.id, enabled_only=True, db=db) == []


def test_remove_rule_rejects_other_practitioner(db, practitioner, other_practitioner) -> None:
    rule = create_rule(
        data=CreateAvailabilityRuleRequest(day_of_week=0, start_time=time(9, 0), end_time=time(10, 0)),
        current_user=practitioner,
        db=db,
    )

    with pytest.raises(HTTPException) as exception_info:
        remove_rule(rule_id=rule.id, current_user=other_practitioner, db=db)

    assert exception_info.value.status_code == 403
    assert db.query(AvailabilityRule).count() == 1


def test_remove_rule_returns_not_found_when_missing(db, practitioner) -> None:
    with pytest.raises(HTTPException) as exception_info:
        remove_rule(rule_id=999, current_user=practitioner, db=db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Availability rule not found.'


def test_generate_and_list_open_slots(db, practitioner) -> None:
    create_rule(
        data=CreateAvailabilityRuleRequest(day_of_week=0, start_time=time(9, 0), end_time=time(11, 0)),
        current_user=practitioner,
        db=db,
    )

    response = generate_practitioner_slots(
        data=GenerateSlotsRequest(start_date=SUNDAY, days=6),
        current_user=practitioner,
        db=db,
    )
    again = generate_practitioner_slots(
        data=GenerateSlotsRequest(start_date=SUNDAY, days=6),
        current_user=practitioner,
        db=db,
    )

    assert response.created == 2
    assert [(slot.start_time, slot.end_time) for slot in response.slots] == [
        (time(9, 0), time(10, 0)),
        (time(10, 0), time(11, 0)),
    ]
    assert again.created == 0
    assert db.query(TimeSlot).count() == 2

    open_slots = list_open_slots(practitioner_id=practitioner.id, start_date=MONDAY, end_date=MONDAY, db=db)
    assert [slot.start_time for slot in open_slots] == [time(9, 0), time(10, 0)]


def test_list_open_slots_rejects_inverted_range(db, practitioner) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_open_slots(practitioner_id=practitioner.id, start_date=MONDAY, end_date=SUNDAY, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'End date must not be before start date.'


def test_list_open_slots_limits_range(db, practitioner) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_open_slots(practitioner_id=practitioner.id, start_date=MONDAY, end_date=date(2030, 6, 1), db=db)

    assert exception_info.value.status_code == 400
