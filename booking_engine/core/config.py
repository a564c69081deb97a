import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking_engine.db")
DB_CONNECT_TIMEOUT_SECONDS = _get_int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS"), 5)
DB_STATEMENT_TIMEOUT_MS = _get_int(os.getenv("DB_STATEMENT_TIMEOUT_MS"), 5000)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:4200").split(",")
    if origin.strip()
]

SLOTS_CACHE_TTL_SECONDS = _get_int(os.getenv("SLOTS_CACHE_TTL_SECONDS"), 300)

DEFAULT_BUFFER_MINUTES = _get_int(os.getenv("DEFAULT_BUFFER_MINUTES"), 15)
DEFAULT_MAX_DAILY_MEETINGS = _get_int(os.getenv("DEFAULT_MAX_DAILY_MEETINGS"), 8)
DEFAULT_DURATION_MINUTES = _get_int(os.getenv("DEFAULT_DURATION_MINUTES"), 30)
MIN_DURATION_MINUTES = _get_int(os.getenv("MIN_DURATION_MINUTES"), 15)
MAX_DURATION_MINUTES = _get_int(os.getenv("MAX_DURATION_MINUTES"), 120)

LEVEL1_AUTO_APPROVE = _get_int(os.getenv("LEVEL1_AUTO_APPROVE"), 2)
LEVEL1_MONTHLY_CAP = _get_int(os.getenv("LEVEL1_MONTHLY_CAP"), 8)
PENDING_EXPIRE_HOURS = _get_int(os.getenv("PENDING_EXPIRE_HOURS"), 48)

BATCH_DEFAULT_LIMIT = _get_int(os.getenv("BATCH_DEFAULT_LIMIT"), 1000)
BATCH_MAX_LIMIT = _get_int(os.getenv("BATCH_MAX_LIMIT"), 5000)
PROMOTION_MAX_CANDIDATES = _get_int(os.getenv("PROMOTION_MAX_CANDIDATES"), 5)
OUTBOX_MAX_ATTEMPTS = _get_int(os.getenv("OUTBOX_MAX_ATTEMPTS"), 5)

JOB_TRIGGER_SECRET = os.getenv("JOB_TRIGGER_SECRET", "")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JOB_TOKEN_EXPIRES_MINUTES = _get_int(os.getenv("JOB_TOKEN_EXPIRES_MINUTES"), 10)

SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = _get_int(os.getenv("SMTP_PORT"), 587)
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_STARTTLS = _get_bool(os.getenv("SMTP_STARTTLS"), default=True)
SMTP_TIMEOUT_SECONDS = _get_int(os.getenv("SMTP_TIMEOUT_SECONDS"), 10)
NOTIFY_FROM = os.getenv("NOTIFY_FROM", "")


def is_production() -> bool:
    return APP_ENV.lower() == "production"


def validate_runtime_config() -> None:
    if is_production() and not JOB_TRIGGER_SECRET:
        raise RuntimeError("JOB_TRIGGER_SECRET must be set in production.")
    if MIN_DURATION_MINUTES <= 0 or MAX_DURATION_MINUTES < MIN_DURATION_MINUTES:
        raise RuntimeError("Duration bounds are misconfigured.")
    if BATCH_DEFAULT_LIMIT > BATCH_MAX_LIMIT:
        raise RuntimeError("BATCH_DEFAULT_LIMIT cannot exceed BATCH_MAX_LIMIT.")
