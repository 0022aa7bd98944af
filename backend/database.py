from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from backend.core import config


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Request handlers run on a thread pool; SQLite waits on the write lock.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_scheduling_schema_checked = False


def ensure_scheduling_schema(bind=None) -> None:
    """Bring older booking tables up to date with the current columns and indexes."""
    global _scheduling_schema_checked

    bind = bind or engine

    if _scheduling_schema_checked and bind is engine:
        return

    with _schema_lock:
        if _scheduling_schema_checked and bind is engine:
            return

        inspector = inspect(bind)
        table_names = set(inspector.get_table_names())

        migration_steps = {
            'availability_rules': [
                ('recurrence_end', 'ALTER TABLE availability_rules ADD COLUMN recurrence_end DATE'),
            ],
            'bookings': [
                ('practitioner_notes', 'ALTER TABLE bookings ADD COLUMN practitioner_notes VARCHAR'),
                ('cancellation_reason', 'ALTER TABLE bookings ADD COLUMN cancellation_reason VARCHAR'),
            ],
            'sessions': [
                ('recording_url', 'ALTER TABLE sessions ADD COLUMN recording_url VARCHAR'),
                ('follow_up_date', 'ALTER TABLE sessions ADD COLUMN follow_up_date DATE'),
            ],
        }
        index_statements = {
            'time_slots': [
                'CREATE INDEX IF NOT EXISTS idx_time_slots_open '
                'ON time_slots(practitioner_id, is_available, is_booked, slot_date)',
            ],
            'bookings': [
                'CREATE INDEX IF NOT EXISTS idx_bookings_practitioner_window '
                'ON bookings(practitioner_id, status, start_time, end_time)',
                'CREATE INDEX IF NOT EXISTS idx_bookings_patient_start ON bookings(patient_id, start_time)',
            ],
        }

        with bind.begin() as connection:
            for table_name, steps in migration_steps.items():
                if table_name not in table_names:
                    continue
                existing_columns = {column['name'] for column in inspector.get_columns(table_name)}
                for column_name, statement in steps:
                    if column_name not in existing_columns:
                        connection.execute(text(statement))
            for table_name, statements in index_statements.items():
                if table_name not in table_names:
                    continue
                for statement in statements:
                    connection.execute(text(statement))

        if bind is engine:
            _scheduling_schema_checked = True
