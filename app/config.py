import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except Exception:
        return None


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./detailos.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    DEFAULT_BUSINESS_SLUG = os.getenv("DEFAULT_BUSINESS_SLUG", "demo").strip().lower()
    DEFAULT_BUSINESS_NAME = os.getenv("DEFAULT_BUSINESS_NAME", "Demo Detailing")
    DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC").strip()
    DEFAULT_HOURS_FALLBACK = _get_bool("DEFAULT_HOURS_FALLBACK", True)
    VIP_REVENUE_THRESHOLD = _get_int("VIP_REVENUE_THRESHOLD", 500)

    SLOT_STEP_MINUTES = _get_int("SLOT_STEP_MINUTES", 15)
    MAX_AVAILABILITY_DAYS = _get_int("MAX_AVAILABILITY_DAYS", 31)

    SCAN_LOOKAHEAD_DAYS = _get_int("SCAN_LOOKAHEAD_DAYS", 14)
    EMPTY_SLOT_URGENT_HOURS = _get_int("EMPTY_SLOT_URGENT_HOURS", 48)
    MIN_FILLABLE_MINUTES = _get_optional_int("MIN_FILLABLE_MINUTES")
    LARGE_GAP_MINUTES = _get_int("LARGE_GAP_MINUTES", 120)
    DEFAULT_CADENCE_DAYS = _get_int("DEFAULT_CADENCE_DAYS", 30)
    OVERDUE_MEDIUM_DAYS = _get_int("OVERDUE_MEDIUM_DAYS", 7)
    OVERDUE_HIGH_DAYS = _get_int("OVERDUE_HIGH_DAYS", 30)
    SNOOZE_DEFAULT_HOURS = _get_int("SNOOZE_DEFAULT_HOURS", 24)

    SCAN_LOCK_TIMEOUT_SECONDS = _get_int("SCAN_LOCK_TIMEOUT_SECONDS", 300)
    SCAN_LOCK_WAIT_SECONDS = _get_int("SCAN_LOCK_WAIT_SECONDS", 5)
    SCAN_INTERVAL_MINUTES = _get_int("SCAN_INTERVAL_MINUTES", 30)

    NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "").strip()
    NOTIFY_TIMEOUT_SECONDS = _get_int("NOTIFY_TIMEOUT_SECONDS", 10)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
