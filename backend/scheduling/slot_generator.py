"""
Availability rules and their expansion into concrete time slots.

Generation merges overlapping rules per day before cutting increments, and
upserts on (practitioner, date, start time) so re-running it over the same
horizon never duplicates or overlaps slots.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.config import SchedulingPolicy, get_scheduling_policy
from backend.models.availability import AvailabilityRule, TimeSlot
from backend.scheduling.errors import Busy, RuleNotFound, ValidationError

logger = logging.getLogger(__name__)

MIN_DAY_OF_WEEK = 0
MAX_DAY_OF_WEEK = 6
RULE_FIELDS = ('day_of_week', 'start_time', 'end_time', 'is_enabled', 'recurrence_end')

Window = tuple[time, time]


def validate_rule_window(day_of_week: int, start_time: time, end_time: time) -> None:
    if not MIN_DAY_OF_WEEK <= day_of_week <= MAX_DAY_OF_WEEK:
        raise ValidationError('Day of week must be between 0 (Monday) and 6 (Sunday).')
    if start_time >= end_time:
        raise ValidationError('Availability start time must be before its end time.')


def create_availability_rule(
    db: Session,
    practitioner_id: int,
    day_of_week: int,
    start_time: time,
    end_time: time,
    is_enabled: bool = True,
    recurrence_end: date | None = None,
) -> AvailabilityRule:
    validate_rule_window(day_of_week, start_time, end_time)

    rule = AvailabilityRule(
        practitioner_id=practitioner_id,
        day_of_week=day_of_week,
        start_time=start_time,
        end_time=end_time,
        is_enabled=is_enabled,
        recurrence_end=recurrence_end,
    )
    try:
        db.add(rule)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(rule)
    logger.info('Created availability rule %s for practitioner %s', rule.id, practitioner_id)
    return rule


def get_availability_rule(db: Session, rule_id: int) -> AvailabilityRule:
    rule = db.query(AvailabilityRule).filter(AvailabilityRule.id == rule_id).first()
    if rule is None:
        raise RuleNotFound()
    return rule


def update_availability_rule(db: Session, rule_id: int, **changes) -> AvailabilityRule:
    """Apply a partial update; the resulting window is validated before anything is written."""
    unknown = set(changes) - set(RULE_FIELDS)
    if unknown:
        raise ValidationError(f'Unknown availability rule fields: {", ".join(sorted(unknown))}.')

    rule = get_availability_rule(db, rule_id)
    validate_rule_window(
        changes.get('day_of_week', rule.day_of_week),
        changes.get('start_time', rule.start_time),
        changes.get('end_time', rule.end_time),
    )

    try:
        for field_name, value in changes.items():
            setattr(rule, field_name, value)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(rule)
    return rule


def delete_availability_rule(db: Session, rule_id: int) -> None:
    # Already generated slots stay; they may be referenced by bookings.
    rule = get_availability_rule(db, rule_id)
    try:
        db.delete(rule)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def list_availability_rules(db: Session, practitioner_id: int, enabled_only: bool = False) -> list[AvailabilityRule]:
    query = db.query(AvailabilityRule).filter(AvailabilityRule.practitioner_id == practitioner_id)
    if enabled_only:
        query = query.filter(AvailabilityRule.is_enabled.is_(True))
    return query.order_by(AvailabilityRule.day_of_week.asc(), AvailabilityRule.start_time.asc()).all()


def rule_applies_on(rule: AvailabilityRule, day: date) -> bool:
    if not rule.is_enabled or rule.day_of_week != day.weekday():
        return False
    return rule.recurrence_end is None or day <= rule.recurrence_end


def merge_intervals(intervals: list[Window]) -> list[Window]:
    merged: list[Window] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def split_interval(day: date, start: time, end: time, increment_minutes: int) -> list[Window]:
    """Cut [start, end) into whole increments; a shorter tail is not bookable."""
    step = timedelta(minutes=increment_minutes)
    current = datetime.combine(day, start)
    interval_end = datetime.combine(day, end)

    windows: list[Window] = []
    while current + step <= interval_end:
        windows.append((current.time(), (current + step).time()))
        current += step
    return windows


def expand_rules(
    rules: list[AvailabilityRule],
    start_date: date,
    end_date: date,
    increment_minutes: int,
) -> dict[date, list[Window]]:
    if increment_minutes <= 0:
        raise ValidationError('Slot increment must be a positive number of minutes.')

    planned: dict[date, list[Window]] = {}
    current_day = start_date
    while current_day <= end_date:
        intervals = [(rule.start_time, rule.end_time) for rule in rules if rule_applies_on(rule, current_day)]
        windows: list[Window] = []
        for start, end in merge_intervals(intervals):
            windows.extend(split_interval(current_day, start, end, increment_minutes))
        if windows:
            planned[current_day] = windows
        current_day += timedelta(days=1)

    return planned


def _overlaps(window: Window, taken: list[Window]) -> bool:
    start, end = window
    return any(start < taken_end and end > taken_start for taken_start, taken_end in taken)


def _insert_missing_slots(
    db: Session,
    practitioner_id: int,
    planned: dict[date, list[Window]],
    start_date: date,
    end_date: date,
) -> list[TimeSlot]:
    existing = db.query(TimeSlot).filter(
        TimeSlot.practitioner_id == practitioner_id,
        TimeSlot.slot_date >= start_date,
        TimeSlot.slot_date <= end_date,
    ).all()

    taken_by_day: dict[date, list[Window]] = defaultdict(list)
    for slot in existing:
        taken_by_day[slot.slot_date].append((slot.start_time, slot.end_time))

    created: list[TimeSlot] = []
    for slot_date in sorted(planned):
        taken = taken_by_day[slot_date]
        for window in planned[slot_date]:
            if _overlaps(window, taken):
                continue
            slot = TimeSlot(
                practitioner_id=practitioner_id,
                slot_date=slot_date,
                start_time=window[0],
                end_time=window[1],
                is_available=True,
                is_booked=False,
            )
            db.add(slot)
            taken.append(window)
            created.append(slot)

    db.flush()
    return created


def generate_slots(
    db: Session,
    practitioner_id: int,
    start_date: date | None = None,
    days: int | None = None,
    increment_minutes: int | None = None,
    policy: SchedulingPolicy | None = None,
) -> list[TimeSlot]:
    """
    Materialise slots for [start_date, start_date + days] and return the newly created ones.

    Slots already present for a (practitioner, date, start time) key, or overlapping
    one, are left as they are. A concurrent generator that wins the unique key first
    causes one re-read; losing twice surfaces as ``Busy``.
    """
    policy = policy or get_scheduling_policy()
    increment_minutes = policy.slot_increment_minutes if increment_minutes is None else increment_minutes
    days = policy.slot_horizon_days if days is None else days
    if increment_minutes <= 0:
        raise ValidationError('Slot increment must be a positive number of minutes.')
    if days < 0:
        raise ValidationError('Generation horizon cannot be negative.')

    start_date = start_date or date.today()
    end_date = start_date + timedelta(days=days)

    rules = db.query(AvailabilityRule).filter(
        AvailabilityRule.practitioner_id == practitioner_id,
        AvailabilityRule.is_enabled.is_(True),
    ).all()
    planned = expand_rules(rules, start_date, end_date, increment_minutes)

    for attempt in range(2):
        try:
            created = _insert_missing_slots(db, practitioner_id, planned, start_date, end_date)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.warning('Slot generation for practitioner %s raced another generator', practitioner_id)
            if attempt:
                raise Busy('Slot generation is already running for this practitioner.') from exc
            continue
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info(
            'Generated %d slots for practitioner %s between %s and %s',
            len(created),
            practitioner_id,
            start_date,
            end_date,
        )
        return created

    return []


def list_available_slots(
    db: Session,
    practitioner_id: int,
    start_date: date,
    end_date: date,
    now: datetime | None = None,
) -> list[TimeSlot]:
    now = now or datetime.now()
    slots = db.query(TimeSlot).filter(
        TimeSlot.practitioner_id == practitioner_id,
        TimeSlot.slot_date >= start_date,
        TimeSlot.slot_date <= end_date,
        TimeSlot.is_available.is_(True),
        TimeSlot.is_booked.is_(False),
    ).order_by(TimeSlot.slot_date.asc(), TimeSlot.start_time.asc()).all()

    return [slot for slot in slots if slot.starts_at > now]
