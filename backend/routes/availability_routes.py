from datetime import date, datetime, time, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user, is_admin, require_role
from backend.models.availability import AvailabilityRule
from backend.models.user import ADMIN_ROLE, PRACTITIONER_ROLE, User
from backend.routes.common import ensure_database_ready, get_db, service_errors
from backend.scheduling.slot_generator import (
    create_availability_rule,
    delete_availability_rule,
    generate_slots,
    get_availability_rule,
    list_availability_rules,
    list_available_slots,
    update_availability_rule,
)

router = APIRouter(tags=['availability'])

MAX_GENERATION_DAYS = 90
MAX_LISTING_DAYS = 60
DEFAULT_LISTING_DAYS = 14


class CreateAvailabilityRuleRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time
    is_enabled: bool = True
    recurrence_end: date | None = None
    practitioner_id: int | None = None

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if not 0 <= value <= 6:
            raise ValueError('Day of week must be between 0 (Monday) and 6 (Sunday).')
        return value

    @model_validator(mode='after')
    def validate_window(self) -> 'CreateAvailabilityRuleRequest':
        if self.start_time >= self.end_time:
            raise ValueError('Availability start time must be before its end time.')
        return self


class UpdateAvailabilityRuleRequest(BaseModel):
    day_of_week: int | None = None
    start_time: time | None = None
    end_time: time | None = None
    is_enabled: bool | None = None
    recurrence_end: date | None = None


class AvailabilityRuleResponse(BaseModel):
    id: int
    practitioner_id: int
    day_of_week: int
    start_time: time
    end_time: time
    is_enabled: bool
    recurrence_end: date | None = None

    class Config:
        from_attributes = True


class GenerateSlotsRequest(BaseModel):
    start_date: date | None = None
    days: int | None = None
    increment_minutes: int | None = None
    practitioner_id: int | None = None

    @field_validator('days')
    @classmethod
    def validate_days(cls, value: int | None) -> int | None:
        if value is not None and not 0 <= value <= MAX_GENERATION_DAYS:
            raise ValueError(f'Slots can be generated at most {MAX_GENERATION_DAYS} days ahead.')
        return value

    @field_validator('increment_minutes')
    @classmethod
    def validate_increment(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError('Slot increment must be a positive number of minutes.')
        return value


class TimeSlotResponse(BaseModel):
    id: int
    practitioner_id: int
    slot_date: date
    start_time: time
    end_time: time
    is_available: bool
    is_booked: bool

    class Config:
        from_attributes = True


class GenerateSlotsResponse(BaseModel):
    created: int
    slots: list[TimeSlotResponse]


def resolve_practitioner_id(current_user: User, practitioner_id: int | None) -> int:
    require_role(
        current_user,
        PRACTITIONER_ROLE,
        ADMIN_ROLE,
        detail='Only practitioners can manage their availability.',
    )
    if is_admin(current_user):
        if practitioner_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Admins must specify a practitioner.',
            )
        return practitioner_id

    if practitioner_id is not None and practitioner_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Practitioners can only manage their own availability.',
        )
    return current_user.id


def load_owned_rule(db: Session, rule_id: int, current_user: User) -> AvailabilityRule:
    with service_errors(db):
        rule = get_availability_rule(db, rule_id)
    resolve_practitioner_id(current_user, rule.practitioner_id)
    return rule


@router.post('/rules', response_model=AvailabilityRuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule(
    data: CreateAvailabilityRuleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    practitioner_id = resolve_practitioner_id(current_user, data.practitioner_id)
    ensure_database_ready()

    with service_errors(db):
        return create_availability_rule(
            db,
            practitioner_id=practitioner_id,
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            is_enabled=data.is_enabled,
            recurrence_end=data.recurrence_end,
        )


@router.get('/rules', response_model=list[AvailabilityRuleResponse])
def list_rules(
    practitioner_id: int = Query(...),
    enabled_only: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with service_errors(db):
        return list_availability_rules(db, practitioner_id, enabled_only=enabled_only)


@router.patch('/rules/{rule_id}', response_model=AvailabilityRuleResponse)
def update_rule(
    rule_id: int,
    data: UpdateAvailabilityRuleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    load_owned_rule(db, rule_id, current_user)

    with service_errors(db):
        return update_availability_rule(db, rule_id, **data.model_dump(exclude_unset=True))


@router.delete('/rules/{rule_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_rule(
    rule_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    load_owned_rule(db, rule_id, current_user)

    with service_errors(db):
        delete_availability_rule(db, rule_id)


@router.post('/slots/generate', response_model=GenerateSlotsResponse, status_code=status.HTTP_201_CREATED)
def generate_practitioner_slots(
    data: GenerateSlotsRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    practitioner_id = resolve_practitioner_id(current_user, data.practitioner_id)
    ensure_database_ready()

    with service_errors(db):
        created = generate_slots(
            db,
            practitioner_id,
            start_date=data.start_date,
            days=data.days,
            increment_minutes=data.increment_minutes,
        )
        return GenerateSlotsResponse(
            created=len(created),
            slots=[TimeSlotResponse.model_validate(slot) for slot in created],
        )


@router.get('/slots', response_model=list[TimeSlotResponse])
def list_open_slots(
    practitioner_id: int = Query(...),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    start_date = start_date or date.today()
    end_date = end_date or start_date + timedelta(days=DEFAULT_LISTING_DAYS)

    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='End date must not be before start date.',
        )
    if (end_date - start_date).days > MAX_LISTING_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Slots can be listed for at most {MAX_LISTING_DAYS} days at a time.',
        )

    ensure_database_ready()

    with service_errors(db):
        return list_available_slots(db, practitioner_id, start_date, end_date, now=datetime.now())
