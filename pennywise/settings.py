from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

DEFAULT_DATABASE_URL = "sqlite:///./pennywise.db"
DEFAULT_ALERT_THRESHOLD = Decimal("80")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_alert_threshold() -> Decimal:
    raw = os.getenv("BUDGET_ALERT_THRESHOLD")
    if not raw:
        return DEFAULT_ALERT_THRESHOLD
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return DEFAULT_ALERT_THRESHOLD
    if value <= 0:
        return DEFAULT_ALERT_THRESHOLD
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = "http://localhost:3000"
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    mail_from: str = "Pennywise <alerts@pennywise.local>"
    budget_alert_threshold: Decimal = DEFAULT_ALERT_THRESHOLD
    log_level: str = "INFO"
    enable_scheduler: bool = False
    recurring_interval_seconds: int = 24 * 60 * 60
    cron_secret: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_username=os.getenv("SMTP_USERNAME") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            mail_from=os.getenv("MAIL_FROM", "Pennywise <alerts@pennywise.local>"),
            budget_alert_threshold=get_alert_threshold(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            enable_scheduler=_env_bool("ENABLE_SCHEDULER"),
            recurring_interval_seconds=_env_int("RECURRING_INTERVAL_SECONDS", 24 * 60 * 60),
            cron_secret=os.getenv("CRON_SECRET") or None,
        )
