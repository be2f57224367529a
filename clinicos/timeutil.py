from datetime import date, datetime, time, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationGap


class Weekday(str, Enum):
    SUN = "sun"
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"

    @classmethod
    def from_date(cls, day: date) -> "Weekday":
        return _ISO_WEEKDAYS[day.isoweekday()]


_ISO_WEEKDAYS = {
    1: Weekday.MON,
    2: Weekday.TUE,
    3: Weekday.WED,
    4: Weekday.THU,
    5: Weekday.FRI,
    6: Weekday.SAT,
    7: Weekday.SUN,
}


def parse_wall_time(value: str) -> time:
    """Parse an ``HH:MM`` or ``HH:MM:SS`` wall-clock string."""
    raw = (value or "").strip()
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValidationGap(f"Invalid time value: {value!r}")
    try:
        return time(*(int(p) for p in parts))
    except ValueError as exc:
        raise ValidationGap(f"Invalid time value: {value!r}") from exc


def format_wall_time(value: time) -> str:
    if value.second:
        return value.strftime("%H:%M:%S")
    return value.strftime("%H:%M")


def normalize_wall_time(value: str) -> str:
    return format_wall_time(parse_wall_time(value))


def clinic_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo((name or "UTC").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationGap(f"Unknown clinic timezone: {name!r}") from exc


def to_clinic_local(value: datetime, tz: ZoneInfo) -> datetime:
    # naive values are already clinic wall-clock time
    if value.tzinfo is None:
        return value
    return value.astimezone(tz).replace(tzinfo=None)


def to_utc_naive(value: datetime, tz: ZoneInfo) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def local_date_key(value: datetime, tz: ZoneInfo) -> date:
    local = to_clinic_local(value, tz)
    return date(local.year, local.month, local.day)


def wall_clock_on(day: date, value: str) -> datetime:
    return datetime.combine(day, parse_wall_time(value))
