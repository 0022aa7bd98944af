"""Move overdue confirmed bookings to NO_SHOW.

Intended for cron or any periodic scheduler:
    python -m backend.sweep_no_shows
"""
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from backend.database import SessionLocal
from backend.scheduling.booking_state import sweep_no_shows


def main() -> None:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    db = SessionLocal()
    try:
        moved = sweep_no_shows(db)
    except SQLAlchemyError as exc:
        print(f"No-show sweep failed: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()
    print(f"Marked {len(moved)} booking(s) as no-show: {moved}")


if __name__ == "__main__":
    main()
