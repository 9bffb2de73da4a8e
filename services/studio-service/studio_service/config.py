import json
import os

from pydantic import BaseModel, ConfigDict, model_validator

DATABASE_URL = os.getenv("DATABASE_URL") or "postgresql+asyncpg://localhost:5432/photo_studio"
DATABASE_ECHO = os.getenv("DATABASE_ECHO") == "1"
AUTO_CREATE_SCHEMA = os.getenv("AUTO_CREATE_SCHEMA") == "1"  # dev only; production runs alembic

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want notifications
REDIS_URL = os.getenv("REDIS_URL")  # optional; enables circuit breaker + rate limiting

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE") or "Europe/Budapest"

DEFAULT_STUDIOS = [
    {"id": "studio-a", "name": "Studio A"},
    {"id": "studio-b", "name": "Studio B"},
    {"id": "studio-c", "name": "Studio C"},
    {"id": "makeup", "name": "Makeup Studio"},
]
STUDIOS = json.loads(os.getenv("STUDIOS") or "null") or DEFAULT_STUDIOS

HOURLY_RATE = int(os.getenv("HOURLY_RATE") or "15000")
CURRENCY = os.getenv("CURRENCY") or "HUF"
OPENING_HOUR_START = int(os.getenv("OPENING_HOUR_START") or "8")
OPENING_HOUR_END = int(os.getenv("OPENING_HOUR_END") or "20")

RESERVATION_TTL_MINUTES = int(os.getenv("RESERVATION_TTL_MINUTES") or "10")
PENDING_ORDER_TIMEOUT_MINUTES = int(os.getenv("PENDING_ORDER_TIMEOUT_MINUTES") or "0")  # 0 = never
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CLEANUP_INTERVAL_SECONDS") or "60")

BARION_ENVIRONMENT = os.getenv("BARION_ENVIRONMENT") or "test"
BARION_POS_KEY = os.getenv("BARION_POS_KEY") or ""
BARION_PAYEE_EMAIL = os.getenv("BARION_PAYEE_EMAIL") or ""
BARION_BASE_URL = (
    "https://api.barion.com" if BARION_ENVIRONMENT == "prod" else "https://api.test.barion.com"
)

FRONTEND_URL = (os.getenv("FRONTEND_URL") or "http://localhost:3000").rstrip("/")
BACKEND_URL = (os.getenv("BACKEND_URL") or "http://localhost:3001").rstrip("/")

INVOICE_API_URL = os.getenv("INVOICE_API_URL")  # invoicing disabled when unset
INVOICE_API_KEY = os.getenv("INVOICE_API_KEY") or ""

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE") or "120")


class Studio(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    active: bool = True


class OpeningHours(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @model_validator(mode="after")
    def check_window(self):
        if not (0 <= self.start < self.end <= 24):
            raise ValueError(f"Invalid opening hours {self.start}-{self.end}")
        return self

class StudioConfig(BaseModel):
    """Immutable business configuration handed to slot generation and pricing."""

    model_config = ConfigDict(frozen=True)

    studios: tuple[Studio, ...]
    opening_hours: OpeningHours
    hourly_rate: int
    currency: str
    reservation_ttl_minutes: int = 10

    @property
    def active_studios(self) -> tuple[Studio, ...]:
        return tuple(s for s in self.studios if s.active)

    def studio(self, room_id: str) -> Studio | None:
        for s in self.studios:
            if s.id == room_id:
                return s
        return None


def load_studio_config() -> StudioConfig:
    return StudioConfig(
        studios=tuple(Studio(**s) for s in STUDIOS),
        opening_hours=OpeningHours(start=OPENING_HOUR_START, end=OPENING_HOUR_END),
        hourly_rate=HOURLY_RATE,
        currency=CURRENCY,
        reservation_ttl_minutes=RESERVATION_TTL_MINUTES,
    )
