import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SQL_ECHO = _get_bool(os.getenv("SQL_ECHO"), default=False)

DATABASE_URL = os.getenv("DATABASE_URL")

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS")) or ["http://localhost:5173"]

RESCHEDULE_WINDOW_HOURS = int(os.getenv("RESCHEDULE_WINDOW_HOURS", "48"))
RESCHEDULE_STRATEGY = os.getenv("RESCHEDULE_STRATEGY", "transaction").strip().lower()
RESCHEDULE_STRATEGIES = {"transaction", "saga"}

ALMOST_FULL_REMAINING = int(os.getenv("ALMOST_FULL_REMAINING", "2"))
ALMOST_FULL_RATIO = float(os.getenv("ALMOST_FULL_RATIO", "0.8"))

REDIS_URL = os.getenv("REDIS_URL", "")
CHANGE_FEED_CHANNEL = os.getenv("CHANGE_FEED_CHANNEL", "scheduling:changes")
CANCELLATION_SWEEP_SECONDS = int(os.getenv("CANCELLATION_SWEEP_SECONDS", "60"))

NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5"))

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if RESCHEDULE_STRATEGY not in RESCHEDULE_STRATEGIES:
        raise RuntimeError(
            f"RESCHEDULE_STRATEGY must be one of {sorted(RESCHEDULE_STRATEGIES)}, got {RESCHEDULE_STRATEGY!r}."
        )
