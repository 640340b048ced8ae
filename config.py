"""
Runtime configuration

Everything is read from environment variables once, at import time.
"""
import os
from datetime import datetime


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def parse_clock(value: str) -> str:
    """Normalise an HH:MM wall-clock time; ValueError when malformed."""
    try:
        return datetime.strptime(value.strip(), "%H:%M").strftime("%H:%M")
    except ValueError:
        raise ValueError(f"expected HH:MM, got {value!r}")


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "erp")

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
COOKIE_NAME = os.getenv("COOKIE_NAME", "token")
COOKIE_SECURE = _flag("COOKIE_SECURE", "false")

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM = os.getenv("SMTP_FROM", SMTP_USER or "billing@localhost")
SMTP_USE_TLS = _flag("SMTP_USE_TLS", "true")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

ENABLE_SCHEDULER = _flag("ENABLE_SCHEDULER", "true")
OVERDUE_SWEEP_AT = parse_clock(os.getenv("OVERDUE_SWEEP_AT", "00:00"))  # UTC

DEFAULT_START_NUMBER = 1000
QUOTE_VALIDITY_ON_CONVERT_DAYS = 7


def is_production() -> bool:
    return ENVIRONMENT.lower() == "production"
