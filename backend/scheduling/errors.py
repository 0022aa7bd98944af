"""
Failure taxonomy of the booking engine.

Every operation either commits its whole unit of work or raises one of these
with nothing persisted. Only ``Busy`` is safe to retry unchanged.
"""


class SchedulingError(Exception):
    """Base class for all typed booking-engine failures."""

    status_code = 400
    retryable = False
    default_message = "Scheduling request failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(SchedulingError):
    """Malformed input, e.g. start >= end or an out-of-range day of week."""

    status_code = 422
    default_message = "Invalid scheduling request."


class SlotNotFound(SchedulingError):
    status_code = 404
    default_message = "Slot not found."


class RuleNotFound(SchedulingError):
    status_code = 404
    default_message = "Availability rule not found."


class BookingNotFound(SchedulingError):
    status_code = 404
    default_message = "Booking not found."


class SessionNotFound(SchedulingError):
    status_code = 404
    default_message = "Session not found."


class SlotUnavailable(SchedulingError):
    """The slot is already claimed, blocked, or in the past."""

    status_code = 409
    default_message = "This time slot is not available."


class PractitionerConflict(SchedulingError):
    """The window overlaps a confirmed booking of the same practitioner."""

    status_code = 409
    default_message = "The practitioner already has a confirmed booking at this time."


class InvalidTransition(SchedulingError):
    status_code = 409
    default_message = "This status change is not allowed."


class SessionNotCompleted(SchedulingError):
    status_code = 409
    default_message = "Sessions can only be rated once they are completed."


class AlreadyRated(SchedulingError):
    status_code = 409
    default_message = "This session has already been rated."


class InvalidRating(SchedulingError):
    status_code = 422
    default_message = "Ratings must be between 1 and 5."


class Busy(SchedulingError):
    """The slot's exclusive region could not be acquired in time."""

    status_code = 503
    retryable = True
    default_message = "The slot is busy. Retry shortly."
