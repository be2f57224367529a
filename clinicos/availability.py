"""Staff availability resolution.

A staff member is bookable for ``[start, end)`` only when a published,
non-holiday shift for the clinic-local date of ``start`` contains the whole
interval and no non-cancelled booking of that staff overlaps it. Missing
shifts never fall back to the weekly template here; that fallback belongs to
the shift editing draft only.
"""

from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .clinics import find_menu_item, get_clinic, get_staff, list_staff
from .config import settings
from .errors import SchedulingError, ValidationGap
from .models import Booking, Clinic
from .shifts import get_shift
from .store import fetch_all, fetch_first
from .timeutil import (
    clinic_zone,
    local_date_key,
    to_clinic_local,
    to_utc_naive,
    wall_clock_on,
)

log = structlog.get_logger("clinicos.availability")


def validate_interval(clinic: Clinic, start_time: datetime, end_time: datetime) -> None:
    tz = clinic_zone(clinic.timezone)
    if to_utc_naive(end_time, tz) <= to_utc_naive(start_time, tz):
        raise ValidationGap("end_time must be after start_time")


def _staff_is_available(
    db: Session,
    clinic: Clinic,
    staff_id: int,
    start_time: datetime,
    end_time: datetime,
    *,
    skip_booking_id: int | None = None,
) -> bool:
    tz = clinic_zone(clinic.timezone)
    local_start = to_clinic_local(start_time, tz)
    local_end = to_clinic_local(end_time, tz)
    day = local_date_key(start_time, tz)

    shift = get_shift(db, clinic.id, staff_id, day)
    if shift is None or shift.is_holiday:
        return False

    shift_start = wall_clock_on(day, shift.start_time)
    shift_end = wall_clock_on(day, shift.end_time)
    if local_start < shift_start or local_end > shift_end:
        return False

    stmt = select(Booking.id).where(
        Booking.clinic_id == clinic.id,
        Booking.staff_id == staff_id,
        Booking.status != "cancelled",
        Booking.start_time < to_utc_naive(end_time, tz),
        Booking.end_time > to_utc_naive(start_time, tz),
    )
    if skip_booking_id:
        stmt = stmt.where(Booking.id != skip_booking_id)
    return fetch_first(db, stmt, entity="booking") is None


def check_staff_availability(
    db: Session,
    clinic_id: int,
    staff_id: int,
    start_time: datetime,
    end_time: datetime,
    *,
    skip_booking_id: int | None = None,
) -> bool:
    clinic = get_clinic(db, clinic_id)
    validate_interval(clinic, start_time, end_time)
    return _staff_is_available(
        db, clinic, staff_id, start_time, end_time, skip_booking_id=skip_booking_id
    )


def _capable_staff_ids(db: Session, clinic: Clinic, menu_item_id: str | None) -> list[int]:
    out = []
    for staff in list_staff(db, clinic.id):
        skills = [str(s) for s in (staff.skill_ids or [])]
        if menu_item_id and skills and str(menu_item_id) not in skills:
            continue
        out.append(staff.id)
    return out


def _available_among(
    db: Session,
    clinic: Clinic,
    staff_ids: list[int],
    start_time: datetime,
    end_time: datetime,
) -> list[int]:
    available: list[int] = []
    for staff_id in staff_ids:
        try:
            if _staff_is_available(db, clinic, staff_id, start_time, end_time):
                available.append(staff_id)
        except SchedulingError as exc:
            # one broken record must not block booking against the others
            log.warning(
                "staff_check_failed",
                clinic_id=clinic.id,
                staff_id=staff_id,
                error=exc.message,
            )
    return available


def find_available_staff(
    db: Session,
    clinic_id: int,
    start_time: datetime,
    end_time: datetime,
    *,
    menu_item_id: str | None = None,
) -> list[int]:
    clinic = get_clinic(db, clinic_id)
    validate_interval(clinic, start_time, end_time)
    staff_ids = _capable_staff_ids(db, clinic, menu_item_id)
    return _available_among(db, clinic, staff_ids, start_time, end_time)


def _bookings_per_staff(db: Session, clinic: Clinic, staff_ids: list[int], day: date) -> dict[int, int]:
    tz = clinic_zone(clinic.timezone)
    day_start = to_utc_naive(datetime.combine(day, time.min), tz)
    day_end = to_utc_naive(datetime.combine(day + timedelta(days=1), time.min), tz)
    rows = fetch_all(
        db,
        select(Booking.staff_id).where(
            Booking.clinic_id == clinic.id,
            Booking.staff_id.in_(staff_ids),
            Booking.status != "cancelled",
            Booking.start_time >= day_start,
            Booking.start_time < day_end,
        ),
        entity="booking",
    )
    counts = {staff_id: 0 for staff_id in staff_ids}
    for staff_id in rows:
        counts[staff_id] = counts.get(staff_id, 0) + 1
    return counts


def select_staff(
    db: Session,
    clinic: Clinic,
    candidates: list[int],
    start_time: datetime,
) -> int:
    """Pick the staff for a booking without a nomination.

    ``first`` keeps the clinic's staff order; ``fewest_bookings`` prefers the
    least busy staff that day and falls back to staff order on ties.
    """
    if settings.AUTO_ASSIGN_POLICY != "fewest_bookings" or len(candidates) == 1:
        return candidates[0]
    day = local_date_key(start_time, clinic_zone(clinic.timezone))
    counts = _bookings_per_staff(db, clinic, candidates, day)
    return min(candidates, key=lambda staff_id: (counts.get(staff_id, 0), candidates.index(staff_id)))


def booking_duration(clinic: Clinic, menu_item_id: str | None) -> timedelta:
    item = find_menu_item(clinic, menu_item_id)
    minutes = int((item or {}).get("duration") or settings.DEFAULT_MENU_DURATION_MIN)
    return timedelta(minutes=minutes)


def _grid_mark(available: int, nominated: bool) -> str:
    if available <= 0:
        return "full"
    if nominated or available >= 2:
        return "open"
    return "few"


def day_slot_grid(
    db: Session,
    clinic_id: int,
    day: date,
    *,
    menu_item_id: str | None = None,
    staff_id: int | None = None,
) -> list[dict]:
    clinic = get_clinic(db, clinic_id)
    if staff_id:
        get_staff(db, clinic_id, staff_id)
        staff_ids = [staff_id]
    else:
        staff_ids = _capable_staff_ids(db, clinic, menu_item_id)
    duration = booking_duration(clinic, menu_item_id)

    slots = []
    for hour in range(settings.SLOT_GRID_START_HOUR, settings.SLOT_GRID_END_HOUR + 1):
        start = datetime.combine(day, time(hour, 0))
        end = start + duration
        available = _available_among(db, clinic, staff_ids, start, end)
        slots.append(
            {
                "time": start.strftime("%H:%M"),
                "start_time": start,
                "end_time": end,
                "available_staff_ids": available,
                "mark": _grid_mark(len(available), bool(staff_id)),
            }
        )
    return slots
