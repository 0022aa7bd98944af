"""
Domain events emitted after a transition commits.

Delivery is fire-and-forget: a failing subscriber is logged and never undoes
the transition that produced the event.
"""

import logging
from datetime import datetime
from typing import Callable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

BOOKING_CONFIRMED = 'BookingConfirmed'
BOOKING_CANCELLED = 'BookingCancelled'
SESSION_COMPLETED = 'SessionCompleted'
NO_SHOW_DETECTED = 'NoShowDetected'


class DomainEvent(BaseModel):
    name: str
    booking_id: int
    session_id: int | None = None
    patient_id: int | None = None
    practitioner_id: int | None = None
    occurred_at: datetime = Field(default_factory=datetime.now)
    details: dict = Field(default_factory=dict)


Subscriber = Callable[[DomainEvent], None]


class EventDispatcher:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def emit(self, event: DomainEvent) -> None:
        logger.info('Emitting %s for booking %s', event.name, event.booking_id)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception('Notification subscriber failed for %s (booking %s)', event.name, event.booking_id)


dispatcher = EventDispatcher()


def emit(name: str, booking, session_id: int | None = None, **details) -> None:
    dispatcher.emit(
        DomainEvent(
            name=name,
            booking_id=booking.id,
            session_id=session_id,
            patient_id=booking.patient_id,
            practitioner_id=booking.practitioner_id,
            details=details,
        )
    )
