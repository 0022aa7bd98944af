import logging
from contextlib import contextmanager

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from backend.database import SessionLocal, ensure_scheduling_schema
from backend.scheduling.errors import SchedulingError

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'


def database_unavailable(exc: SQLAlchemyError) -> HTTPException:
    logger.error('Database error: %s', exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def scheduling_failure(exc: SchedulingError) -> HTTPException:
    headers = {'Retry-After': '1'} if exc.retryable else None
    return HTTPException(status_code=exc.status_code, detail=exc.message, headers=headers)


@contextmanager
def service_errors(db=None):
    """Translate engine failures into the HTTP errors the routes report."""
    try:
        yield
    except SchedulingError as exc:
        raise scheduling_failure(exc) from exc
    except SQLAlchemyError as exc:
        if db is not None:
            db.rollback()
        raise database_unavailable(exc) from exc


def ensure_database_ready() -> None:
    try:
        ensure_scheduling_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


def build_pagination(page: int, limit: int, total: int) -> PaginationResponse:
    total_pages = (total + limit - 1) // limit
    return PaginationResponse(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )
