import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str = "sqlite:///./booking.db"
    max_write_attempts: int = 5
    retry_base_delay: float = 0.01  # seconds, doubled on every attempt
    default_currency: str = "USD"

    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    gateway_webhook_secret: Optional[str] = None

    redis_url: Optional[str] = None
    event_stream: str = "booking_events"

    log_level: str = "INFO"


def get_settings() -> Settings:
    """
    Build Settings from the environment. A local .env file is honoured.
    Called once at process start; the result is handed to the services.
    """
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./booking.db"),
        max_write_attempts=int(os.getenv("BOOKING_MAX_WRITE_ATTEMPTS", "5")),
        retry_base_delay=float(os.getenv("BOOKING_RETRY_BASE_DELAY", "0.01")),
        default_currency=os.getenv("BOOKING_DEFAULT_CURRENCY", "USD"),
        stripe_api_key=os.getenv("STRIPE_API_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        gateway_webhook_secret=os.getenv("GATEWAY_WEBHOOK_SECRET"),
        redis_url=os.getenv("REDIS_URL"),
        event_stream=os.getenv("BOOKING_EVENT_STREAM", "booking_events"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO"):
    """Called once at process start. basicConfig is a no-op when handlers exist, so the level is set too."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(numeric)
