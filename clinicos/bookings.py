"""Booking creation and edits.

Every persisted booking carries a concrete staff id: nominated requests are
checked against that staff, requests without a preference are resolved
through :func:`find_available_staff` before anything is written.

With ``BOOKING_SLOT_GUARD`` enabled the availability check and the insert are
tied together through a per (clinic, staff, date) version row: the version is
read before the check and bumped with a compare-and-set in the same commit as
the insert, so two writers racing for one staff day cannot both win.
"""

from datetime import date, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .availability import (
    booking_duration,
    check_staff_availability,
    find_available_staff,
    select_staff,
    validate_interval,
)
from .clinics import get_clinic, get_staff
from .config import settings
from .errors import BookingConflict, InvalidTransition, NoAvailability, NotFound, ValidationGap
from .models import BOOKED_BY, BOOKING_STATUSES, Booking, Clinic, Staff, StaffDayGuard
from .store import commit, execute, fetch_all, fetch_one_or_none, flush
from .timeutil import as_utc, clinic_zone, local_date_key, to_utc_naive

log = structlog.get_logger("clinicos.bookings")

ALLOWED_BOOKING_STATUS_TRANSITIONS = {
    "pending": {"confirmed", "cancelled", "no_show"},
    "confirmed": {"pending", "cancelled", "no_show"},
    "no_show": {"confirmed", "cancelled"},
    "cancelled": {"pending", "confirmed"},
}

_PATCHABLE_FIELDS = {
    "staff_id",
    "status",
    "start_time",
    "end_time",
    "notes",
    "internal_memo",
    "guest_name",
    "guest_email",
    "guest_contact",
    "menu_item_id",
    "user_id",
    "booked_by",
}


def _normalize_status(status: str | None, default: str = "confirmed") -> str:
    normalized = (status or default).strip().lower()
    if normalized not in BOOKING_STATUSES:
        raise ValidationGap("Invalid booking status")
    return normalized


def _normalize_booked_by(booked_by: str | None) -> str:
    normalized = (booked_by or "user").strip().lower()
    if normalized not in BOOKED_BY:
        raise ValidationGap("Invalid booked_by value")
    return normalized


def _bookable_staff(db: Session, clinic_id: int, staff_id: int) -> Staff:
    staff = get_staff(db, clinic_id, staff_id)
    if not staff.is_active:
        raise BookingConflict("Staff is archived and cannot take bookings")
    return staff


def _guard_version(db: Session, clinic_id: int, staff_id: int, day: date) -> int:
    stmt = select(StaffDayGuard.version).where(
        StaffDayGuard.clinic_id == clinic_id,
        StaffDayGuard.staff_id == staff_id,
        StaffDayGuard.day == day,
    )
    version = fetch_one_or_none(db, stmt, entity="staff day guard")
    if version is not None:
        return int(version)
    db.add(StaffDayGuard(clinic_id=clinic_id, staff_id=staff_id, day=day, version=0))
    try:
        commit(db, entity="staff day guard")
    except IntegrityError:
        pass
    return int(fetch_one_or_none(db, stmt, entity="staff day guard") or 0)


def _bump_guard(db: Session, clinic_id: int, staff_id: int, day: date, version: int) -> bool:
    result = execute(
        db,
        update(StaffDayGuard)
        .where(
            StaffDayGuard.clinic_id == clinic_id,
            StaffDayGuard.staff_id == staff_id,
            StaffDayGuard.day == day,
            StaffDayGuard.version == version,
        )
        .values(version=version + 1),
        entity="staff day guard",
    )
    return result.rowcount == 1


def _guard_attempts() -> int:
    if not settings.BOOKING_SLOT_GUARD:
        return 1
    return max(1, int(settings.BOOKING_GUARD_RETRIES))


def _resolve_staff(
    db: Session,
    clinic: Clinic,
    staff_id: int | None,
    menu_item_id: str | None,
    start_time: datetime,
    end_time: datetime,
) -> int:
    if staff_id:
        if not check_staff_availability(db, clinic.id, staff_id, start_time, end_time):
            raise BookingConflict(
                "Staff unavailable: no opening or outside working hours"
            )
        return staff_id
    candidates = find_available_staff(
        db, clinic.id, start_time, end_time, menu_item_id=menu_item_id
    )
    if not candidates:
        raise NoAvailability("No staff available in this slot")
    return select_staff(db, clinic, candidates, start_time)


def create_booking(
    db: Session,
    clinic_id: int,
    *,
    start_time: datetime,
    end_time: datetime | None = None,
    staff_id: int | None = None,
    menu_item_id: str | None = None,
    user_id: str | None = None,
    booked_by: str | None = "user",
    status: str | None = None,
    notes: str | None = None,
    internal_memo: str | None = None,
    guest_name: str | None = None,
    guest_email: str | None = None,
    guest_contact: str | None = None,
) -> Booking:
    clinic = get_clinic(db, clinic_id)
    if end_time is None:
        end_time = start_time + booking_duration(clinic, menu_item_id)
    validate_interval(clinic, start_time, end_time)
    normalized_status = _normalize_status(status)
    normalized_booked_by = _normalize_booked_by(booked_by)
    if staff_id:
        _bookable_staff(db, clinic_id, staff_id)

    tz = clinic_zone(clinic.timezone)
    day = local_date_key(start_time, tz)
    for attempt in range(_guard_attempts()):
        resolved_staff_id = _resolve_staff(
            db, clinic, staff_id, menu_item_id, start_time, end_time
        )
        if settings.BOOKING_SLOT_GUARD:
            version = _guard_version(db, clinic_id, resolved_staff_id, day)
            # re-check once the version is pinned; earlier commits are visible now
            if not check_staff_availability(
                db, clinic_id, resolved_staff_id, start_time, end_time
            ):
                log.info(
                    "booking_slot_taken",
                    clinic_id=clinic_id,
                    staff_id=resolved_staff_id,
                    attempt=attempt,
                )
                continue

        booking = Booking(
            clinic_id=clinic_id,
            user_id=user_id,
            staff_id=resolved_staff_id,
            booked_by=normalized_booked_by,
            status=normalized_status,
            start_time=to_utc_naive(start_time, tz),
            end_time=to_utc_naive(end_time, tz),
            notes=(notes or "").strip() or None,
            internal_memo=(internal_memo or "").strip() or None,
            guest_name=(guest_name or "").strip() or None,
            guest_email=(guest_email or "").strip().lower() or None,
            guest_contact=(guest_contact or "").strip() or None,
            menu_item_id=menu_item_id,
        )
        db.add(booking)
        flush(db, entity="booking")
        if settings.BOOKING_SLOT_GUARD and not _bump_guard(
            db, clinic_id, resolved_staff_id, day, version
        ):
            db.rollback()
            log.info(
                "booking_guard_lost",
                clinic_id=clinic_id,
                staff_id=resolved_staff_id,
                attempt=attempt,
            )
            continue
        commit(db, entity="booking")
        db.refresh(booking)
        log.info(
            "booking_created",
            clinic_id=clinic_id,
            booking_id=booking.id,
            staff_id=resolved_staff_id,
            nominated=bool(staff_id),
        )
        return booking

    raise BookingConflict("Slot was taken by a concurrent booking")


def get_booking(db: Session, clinic_id: int, booking_id: int) -> Booking:
    row = fetch_one_or_none(
        db,
        select(Booking).where(Booking.clinic_id == clinic_id, Booking.id == booking_id),
        entity="booking",
    )
    if row is None:
        raise NotFound("Booking not found")
    return row


def _next_status(row: Booking, new_status: str) -> str:
    normalized = _normalize_status(new_status)
    if normalized == row.status:
        return normalized
    allowed = ALLOWED_BOOKING_STATUS_TRANSITIONS.get(row.status, set())
    if normalized not in allowed:
        raise InvalidTransition(f"Cannot move booking from {row.status} to {normalized}")
    return normalized


def update_booking(db: Session, clinic_id: int, booking_id: int, changes: dict) -> Booking:
    """Patch booking fields.

    Time or staff changes are not re-checked against shifts and other
    bookings; use :func:`reschedule_booking` for a validated move.
    """
    row = get_booking(db, clinic_id, booking_id)
    clinic = get_clinic(db, clinic_id)
    tz = clinic_zone(clinic.timezone)
    changes = {k: v for k, v in changes.items() if k in _PATCHABLE_FIELDS}
    values: dict = {}

    if "staff_id" in changes:
        if not changes["staff_id"]:
            raise ValidationGap("staff_id cannot be cleared")
        values["staff_id"] = _bookable_staff(db, clinic_id, int(changes["staff_id"])).id

    new_start = changes.get("start_time")
    new_end = changes.get("end_time")
    if new_start is not None or new_end is not None:
        start_utc = to_utc_naive(new_start, tz) if new_start is not None else row.start_time
        end_utc = to_utc_naive(new_end, tz) if new_end is not None else row.end_time
        if end_utc <= start_utc:
            raise ValidationGap("end_time must be after start_time")
        values["start_time"] = start_utc
        values["end_time"] = end_utc

    if changes.get("status") is not None:
        values["status"] = _next_status(row, changes["status"])
    if changes.get("booked_by") is not None:
        values["booked_by"] = _normalize_booked_by(changes["booked_by"])
    for field in (
        "notes",
        "internal_memo",
        "guest_name",
        "guest_email",
        "guest_contact",
        "menu_item_id",
        "user_id",
    ):
        if field in changes:
            values[field] = changes[field]

    for field, value in values.items():
        setattr(row, field, value)
    commit(db, entity="booking")
    db.refresh(row)
    log.info("booking_updated", clinic_id=clinic_id, booking_id=booking_id, fields=sorted(changes))
    return row


def cancel_booking(db: Session, clinic_id: int, booking_id: int) -> Booking:
    return update_booking(db, clinic_id, booking_id, {"status": "cancelled"})


def reschedule_booking(
    db: Session,
    clinic_id: int,
    booking_id: int,
    *,
    start_time: datetime,
    end_time: datetime,
    staff_id: int | None = None,
) -> Booking:
    """Move a booking to a new interval and optionally to another staff.

    Guarded like :func:`create_booking`: the target staff day is re-checked
    after its version is pinned, and both the target day and the day the
    booking leaves are bumped in the commit that moves it.
    """
    row = get_booking(db, clinic_id, booking_id)
    clinic = get_clinic(db, clinic_id)
    validate_interval(clinic, start_time, end_time)
    target_staff_id = int(staff_id or row.staff_id)
    if staff_id:
        _bookable_staff(db, clinic_id, target_staff_id)

    tz = clinic_zone(clinic.timezone)
    day = local_date_key(start_time, tz)
    source = (row.staff_id, local_date_key(as_utc(row.start_time), tz))
    moves_day = source != (target_staff_id, day)

    for attempt in range(_guard_attempts()):
        if settings.BOOKING_SLOT_GUARD:
            version = _guard_version(db, clinic_id, target_staff_id, day)
            if moves_day:
                source_version = _guard_version(db, clinic_id, *source)
        if not check_staff_availability(
            db, clinic_id, target_staff_id, start_time, end_time, skip_booking_id=row.id
        ):
            raise BookingConflict("Staff unavailable: no opening or outside working hours")

        row.staff_id = target_staff_id
        row.start_time = to_utc_naive(start_time, tz)
        row.end_time = to_utc_naive(end_time, tz)
        flush(db, entity="booking")
        if settings.BOOKING_SLOT_GUARD and not (
            _bump_guard(db, clinic_id, target_staff_id, day, version)
            and (not moves_day or _bump_guard(db, clinic_id, *source, source_version))
        ):
            db.rollback()
            log.info(
                "booking_guard_lost",
                clinic_id=clinic_id,
                booking_id=booking_id,
                staff_id=target_staff_id,
                attempt=attempt,
            )
            continue
        commit(db, entity="booking")
        db.refresh(row)
        log.info(
            "booking_rescheduled",
            clinic_id=clinic_id,
            booking_id=booking_id,
            staff_id=target_staff_id,
        )
        return row

    raise BookingConflict("Slot was taken by a concurrent booking")


def list_bookings(
    db: Session,
    clinic_id: int,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    status_filter: str | None = None,
    staff_id: int | None = None,
) -> list[Booking]:
    clinic = get_clinic(db, clinic_id)
    tz = clinic_zone(clinic.timezone)
    stmt = select(Booking).where(Booking.clinic_id == clinic_id)
    if start is not None:
        stmt = stmt.where(Booking.start_time >= to_utc_naive(start, tz))
    if end is not None:
        stmt = stmt.where(Booking.start_time <= to_utc_naive(end, tz))
    if status_filter:
        stmt = stmt.where(Booking.status == _normalize_status(status_filter))
    if staff_id:
        stmt = stmt.where(Booking.staff_id == staff_id)
    stmt = stmt.order_by(Booking.start_time.asc(), Booking.id.asc())
    return fetch_all(db, stmt, entity="booking")


def list_all_bookings(
    db: Session,
    *,
    clinic_id: int | None = None,
    status_filter: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 200,
) -> list[Booking]:
    """Cross-clinic listing for the platform console; times are UTC."""
    stmt = select(Booking)
    if clinic_id:
        stmt = stmt.where(Booking.clinic_id == clinic_id)
    if status_filter:
        stmt = stmt.where(Booking.status == _normalize_status(status_filter))
    if start is not None:
        stmt = stmt.where(Booking.start_time >= to_utc_naive(start, clinic_zone("UTC")))
    if end is not None:
        stmt = stmt.where(Booking.start_time <= to_utc_naive(end, clinic_zone("UTC")))
    stmt = stmt.order_by(Booking.start_time.desc(), Booking.id.desc()).limit(limit)
    return fetch_all(db, stmt, entity="booking")
