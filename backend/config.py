"""
config.py
─────────
Runtime settings, read once from the environment (and an optional .env file).

Unparseable values fall back to their defaults instead of aborting startup.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

_BASE_DIR = os.path.dirname(os.path.abspath(__file__))

load_dotenv()


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_choice(value: Optional[str], *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    data_dir: str = field(default_factory=lambda: os.path.join(_BASE_DIR, "data"))
    timezone: str = "Asia/Jerusalem"
    check_interval_seconds: float = 15.0
    delivery_timeout_seconds: float = 30.0
    max_workers: int = 4
    catch_up_grace_seconds: float = 300.0
    purge_expired: bool = False
    purge_after_seconds: float = 180.0
    max_retries: int = 5
    retry_backoff_seconds: float = 60.0
    country_code: str = "972"
    messaging_backend: str = "stub"
    messaging_api_base_url: str = ""
    messaging_api_key: str = ""
    log_level: str = "INFO"
    log_file: str = "logs/reminders.log"

    @property
    def reminders_file(self) -> str:
        return os.path.join(self.data_dir, "reminders.json")

    @property
    def settings_file(self) -> str:
        return os.path.join(self.data_dir, "settings.json")


def load_settings() -> Settings:
    defaults = Settings()
    return Settings(
        data_dir=os.getenv("REMINDER_DATA_DIR", defaults.data_dir),
        timezone=os.getenv("REMINDER_TIMEZONE", defaults.timezone).strip() or defaults.timezone,
        check_interval_seconds=max(
            1.0, _as_float(os.getenv("REMINDER_CHECK_INTERVAL_SECONDS"), defaults.check_interval_seconds)
        ),
        delivery_timeout_seconds=max(
            1.0, _as_float(os.getenv("REMINDER_DELIVERY_TIMEOUT_SECONDS"), defaults.delivery_timeout_seconds)
        ),
        max_workers=max(1, _as_int(os.getenv("REMINDER_MAX_WORKERS"), defaults.max_workers)),
        catch_up_grace_seconds=max(
            0.0, _as_float(os.getenv("REMINDER_CATCH_UP_GRACE_SECONDS"), defaults.catch_up_grace_seconds)
        ),
        purge_expired=_as_bool(os.getenv("REMINDER_PURGE_EXPIRED"), defaults.purge_expired),
        purge_after_seconds=max(
            0.0, _as_float(os.getenv("REMINDER_PURGE_AFTER_SECONDS"), defaults.purge_after_seconds)
        ),
        max_retries=max(1, _as_int(os.getenv("REMINDER_MAX_RETRIES"), defaults.max_retries)),
        retry_backoff_seconds=max(
            0.0, _as_float(os.getenv("REMINDER_RETRY_BACKOFF_SECONDS"), defaults.retry_backoff_seconds)
        ),
        country_code="".join(ch for ch in os.getenv("REMINDER_COUNTRY_CODE", defaults.country_code) if ch.isdigit()),
        messaging_backend=_as_choice(
            os.getenv("MESSAGING_BACKEND"), default=defaults.messaging_backend, allowed={"stub", "http"}
        ),
        messaging_api_base_url=os.getenv("MESSAGING_API_BASE_URL", "").strip(),
        messaging_api_key=os.getenv("MESSAGING_API_KEY", "").strip(),
        log_level=os.getenv("REMINDER_LOG_LEVEL", defaults.log_level).strip().upper() or defaults.log_level,
        log_file=os.getenv("REMINDER_LOG_FILE", defaults.log_file),
    )
