import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinicos.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    CLINIC_DEFAULT_TIMEZONE = os.getenv("CLINIC_DEFAULT_TIMEZONE", "Asia/Tokyo").strip()
    DEFAULT_SHIFT_START = os.getenv("DEFAULT_SHIFT_START", "09:00").strip()
    DEFAULT_SHIFT_END = os.getenv("DEFAULT_SHIFT_END", "18:00").strip()
    DEFAULT_MENU_DURATION_MIN = _get_int("DEFAULT_MENU_DURATION_MIN", 60)

    SLOT_GRID_START_HOUR = _get_int("SLOT_GRID_START_HOUR", 10)
    SLOT_GRID_END_HOUR = _get_int("SLOT_GRID_END_HOUR", 20)

    AUTO_ASSIGN_POLICY = os.getenv("AUTO_ASSIGN_POLICY", "first").strip().lower()
    BOOKING_SLOT_GUARD = _get_bool("BOOKING_SLOT_GUARD", True)
    BOOKING_GUARD_RETRIES = _get_int("BOOKING_GUARD_RETRIES", 3)


settings = Settings()
