import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


APP_URL = (os.environ.get("APP_URL") or "http://localhost:8000").rstrip("/")
LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
CRON_SECRET = (os.environ.get("CRON_SECRET") or "").strip()
CORS_ALLOW_ORIGINS = _parse_csv_env("CORS_ALLOW_ORIGINS", "http://127.0.0.1,http://localhost")

TOKEN_EXPIRY_MINUTES = _int_env("TOKEN_EXPIRY_MINUTES", 30)
MAX_TOKEN_EXTENSION_MINUTES = _int_env("MAX_TOKEN_EXTENSION_MINUTES", 60 * 24)
OVERDUE_HOURS = _int_env("OVERDUE_HOURS", 24)
REMINDER_INTERVAL_HOURS = _int_env("REMINDER_INTERVAL_HOURS", 24)
LOW_STOCK_THRESHOLD = _int_env("LOW_STOCK_THRESHOLD", 2)

PUSH_WEBHOOK_URL = (os.environ.get("PUSH_WEBHOOK_URL") or "").strip()
SMTP_HOST = (os.environ.get("SMTP_HOST") or "").strip()
SMTP_PORT = _int_env("SMTP_PORT", 587)
SMTP_USER = (os.environ.get("SMTP_USER") or "").strip()
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD") or ""
SMTP_FROM = (os.environ.get("SMTP_FROM") or SMTP_USER).strip()
WHATSAPP_ACCESS_TOKEN = (os.environ.get("WHATSAPP_ACCESS_TOKEN") or "").strip()
WHATSAPP_PHONE_NUMBER_ID = (os.environ.get("WHATSAPP_PHONE_NUMBER_ID") or "").strip()
NOTIFICATION_WORKERS = max(1, _int_env("NOTIFICATION_WORKERS", 4))
