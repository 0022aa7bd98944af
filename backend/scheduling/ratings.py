"""Post-session feedback. One rating per rater role, only on completed sessions."""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.models.session import ClinicalSession, SessionStatus
from backend.models.user import PATIENT_ROLE, PRACTITIONER_ROLE
from backend.scheduling.errors import AlreadyRated, InvalidRating, SessionNotCompleted, ValidationError
from backend.scheduling.session_state import get_session

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
MAX_FEEDBACK_LENGTH = 1000

RATING_COLUMNS = {
    PATIENT_ROLE: ('patient_rating', 'patient_feedback'),
    PRACTITIONER_ROLE: ('practitioner_rating', 'practitioner_feedback'),
}


def validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidRating()
    if not MIN_RATING <= rating <= MAX_RATING:
        raise InvalidRating()
    return rating


def rate_session(
    db: Session,
    session_id: int,
    rater_role: str,
    rating: int,
    feedback: str | None = None,
    now: datetime | None = None,
) -> ClinicalSession:
    rating = validate_rating(rating)

    columns = RATING_COLUMNS.get((rater_role or '').strip().lower())
    if columns is None:
        raise ValidationError('Only patients and practitioners can rate sessions.')
    rating_column, feedback_column = columns

    feedback = (feedback or '').strip() or None
    if feedback and len(feedback) > MAX_FEEDBACK_LENGTH:
        raise ValidationError(f'Feedback must be {MAX_FEEDBACK_LENGTH} characters or fewer.')

    session = get_session(db, session_id)
    if session.status != SessionStatus.COMPLETED:
        raise SessionNotCompleted()
    if getattr(session, rating_column) is not None:
        raise AlreadyRated()

    try:
        updated = db.query(ClinicalSession).filter(
            ClinicalSession.id == session.id,
            ClinicalSession.status == SessionStatus.COMPLETED.value,
            getattr(ClinicalSession, rating_column).is_(None),
        ).update(
            {rating_column: rating, feedback_column: feedback, 'updated_at': now or datetime.now()},
            synchronize_session=False,
        )
        if updated != 1:
            raise AlreadyRated()
        db.commit()
    except (AlreadyRated, SQLAlchemyError):
        db.rollback()
        raise

    db.refresh(session)
    logger.info('Session %s rated %d by %s', session.id, rating, rater_role)
    return session
