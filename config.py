import os

from dotenv import load_dotenv
from pydantic import BaseModel, model_validator

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Asia/Seoul")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

HOLD_TTL_MINUTES = int(os.getenv("HOLD_TTL_MINUTES", "10"))
GATEWAY_AUTH_WINDOW_MINUTES = int(os.getenv("GATEWAY_AUTH_WINDOW_MINUTES", "5"))
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
CAPTURE_RETRIES = int(os.getenv("CAPTURE_RETRIES", "1"))
SETTLEMENT_STALE_SECONDS = float(os.getenv("SETTLEMENT_STALE_SECONDS", "120"))

BUFFER_BEFORE_MINUTES = int(os.getenv("BUFFER_BEFORE_MINUTES", "30"))
BUFFER_AFTER_MINUTES = int(os.getenv("BUFFER_AFTER_MINUTES", "15"))

REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", "60"))

CURRENCY = os.getenv("CURRENCY", "krw")


class BookingSettings(BaseModel):
    """
    Engine-wide knobs. Defaults come from the environment; tests build their own.
    Unit-specific limits (max hours, lookahead, hourly price) live on the unit row.
    """

    business_timezone: str = BUSINESS_TIMEZONE
    hold_ttl_minutes: int = HOLD_TTL_MINUTES
    gateway_auth_window_minutes: int = GATEWAY_AUTH_WINDOW_MINUTES
    gateway_timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS
    capture_retries: int = CAPTURE_RETRIES
    settlement_stale_seconds: float = SETTLEMENT_STALE_SECONDS
    buffer_before_minutes: int = BUFFER_BEFORE_MINUTES
    buffer_after_minutes: int = BUFFER_AFTER_MINUTES
    reaper_interval_seconds: float = REAPER_INTERVAL_SECONDS
    currency: str = CURRENCY

    @model_validator(mode="after")
    def _hold_outlives_authorization(self):
        # a slow but legitimate payment must never lose its slot
        if self.hold_ttl_minutes <= self.gateway_auth_window_minutes:
            raise ValueError("hold_ttl_minutes must exceed gateway_auth_window_minutes")
        if self.settlement_stale_seconds <= self.gateway_timeout_seconds:
            raise ValueError("settlement_stale_seconds must exceed gateway_timeout_seconds")
        return self
