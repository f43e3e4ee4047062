import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    lock_timeout_seconds: float = 2.0
    default_timezone: str = "UTC"
    event_outbox_size: int = 500
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read settings from the environment (and ``.env`` when present)."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", ""),
        lock_timeout_seconds=float(os.getenv("LOCK_TIMEOUT_SECONDS", "2.0")),
        default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
        event_outbox_size=int(os.getenv("EVENT_OUTBOX_SIZE", "500")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
