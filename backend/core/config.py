import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
DEBUG = _get_bool(os.getenv("DEBUG"), default=False)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:4200"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# Scheduling policy. Product has not settled the lock window, so 0 disables it.
SLOT_INCREMENT_MINUTES = int(os.getenv("SLOT_INCREMENT_MINUTES", "60"))
SLOT_HORIZON_DAYS = int(os.getenv("SLOT_HORIZON_DAYS", "28"))
LOCK_SLOT_WITHIN_HOURS = float(os.getenv("LOCK_SLOT_WITHIN_HOURS", "0"))
NO_SHOW_GRACE_MINUTES = int(os.getenv("NO_SHOW_GRACE_MINUTES", "15"))
SESSION_EARLY_START_MINUTES = int(os.getenv("SESSION_EARLY_START_MINUTES", "15"))
SESSION_LATE_START_MINUTES = int(os.getenv("SESSION_LATE_START_MINUTES", "30"))
RESERVATION_LOCK_TIMEOUT_SECONDS = float(os.getenv("RESERVATION_LOCK_TIMEOUT_SECONDS", "5"))


class SchedulingPolicy(BaseModel):
    """Tunable knobs of the reservation engine and the state machines."""

    slot_increment_minutes: int = Field(default=SLOT_INCREMENT_MINUTES, gt=0)
    slot_horizon_days: int = Field(default=SLOT_HORIZON_DAYS, gt=0)
    lock_slot_within_hours: float = Field(default=LOCK_SLOT_WITHIN_HOURS, ge=0)
    no_show_grace_minutes: int = Field(default=NO_SHOW_GRACE_MINUTES, ge=0)
    session_early_start_minutes: int = Field(default=SESSION_EARLY_START_MINUTES, ge=0)
    session_late_start_minutes: int = Field(default=SESSION_LATE_START_MINUTES, ge=0)
    reservation_lock_timeout_seconds: float = Field(default=RESERVATION_LOCK_TIMEOUT_SECONDS, gt=0)


def get_scheduling_policy() -> SchedulingPolicy:
    return SchedulingPolicy()


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
