"""Published shifts and the per-day shift editing draft.

A shift is keyed by (clinic, staff, date); writes always look the row up
first and update it in place, so a key never ends up with two rows.
"""

import uuid
from datetime import date

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clinics import get_staff, list_staff
from .config import settings
from .errors import SchedulingError, StoreFailure, ValidationGap
from .models import Shift, Staff
from .store import commit, execute, fetch_all, fetch_one_or_none, flush
from .timeutil import Weekday, normalize_wall_time, parse_wall_time

log = structlog.get_logger("clinicos.shifts")


def get_shift(db: Session, clinic_id: int, staff_id: int, day: date) -> Shift | None:
    return fetch_one_or_none(
        db,
        select(Shift).where(
            Shift.clinic_id == clinic_id,
            Shift.staff_id == staff_id,
            Shift.day == day,
        ),
        entity="shift",
    )


def list_shifts(
    db: Session,
    clinic_id: int,
    start_day: date,
    end_day: date,
    *,
    staff_id: int | None = None,
) -> list[Shift]:
    stmt = select(Shift).where(
        Shift.clinic_id == clinic_id,
        Shift.day >= start_day,
        Shift.day <= end_day,
    )
    if staff_id:
        stmt = stmt.where(Shift.staff_id == staff_id)
    stmt = stmt.order_by(Shift.day.asc(), Shift.staff_id.asc())
    return fetch_all(db, stmt, entity="shift")


def _validated_times(start_time: str, end_time: str, is_holiday: bool) -> tuple[str, str]:
    start = normalize_wall_time(start_time)
    end = normalize_wall_time(end_time)
    if not is_holiday and parse_wall_time(end) <= parse_wall_time(start):
        raise ValidationGap("Shift end must be after shift start")
    return start, end


def upsert_shift(
    db: Session,
    clinic_id: int,
    staff_id: int,
    day: date,
    start_time: str,
    end_time: str,
    is_holiday: bool,
    *,
    commit_changes: bool = True,
) -> Shift:
    start, end = _validated_times(start_time, end_time, is_holiday)

    for attempt in range(2):
        row = get_shift(db, clinic_id, staff_id, day)
        if row is None:
            row = Shift(clinic_id=clinic_id, staff_id=staff_id, day=day)
            db.add(row)
        row.start_time = start
        row.end_time = end
        row.is_holiday = bool(is_holiday)
        try:
            flush(db, entity="shift")
        except IntegrityError as exc:
            # lost an insert race for this key; the second pass updates the winner
            if attempt or not commit_changes:
                raise StoreFailure("shift write conflicted with a concurrent edit") from exc
            log.warning("shift_insert_race", clinic_id=clinic_id, staff_id=staff_id, day=day.isoformat())
            continue
        break

    if commit_changes:
        commit(db, entity="shift")
        db.refresh(row)
    return row


def delete_shifts_in_range(db: Session, clinic_id: int, start_day: date, end_day: date) -> int:
    if end_day < start_day:
        raise ValidationGap("end_day must be >= start_day")
    result = execute(
        db,
        delete(Shift).where(
            Shift.clinic_id == clinic_id,
            Shift.day >= start_day,
            Shift.day <= end_day,
        ),
        entity="shift",
    )
    commit(db, entity="shift")
    log.info(
        "shifts_deleted",
        clinic_id=clinic_id,
        start_day=start_day.isoformat(),
        end_day=end_day.isoformat(),
        count=result.rowcount,
    )
    return int(result.rowcount or 0)


def template_for(staff: Staff, weekday: Weekday) -> tuple[str, str, bool]:
    """Return ``(start, end, is_holiday)`` from the staff weekly template."""
    entry = (staff.default_schedule or {}).get(weekday.value) or {}
    start = entry.get("start") or settings.DEFAULT_SHIFT_START
    end = entry.get("end") or settings.DEFAULT_SHIFT_END
    is_holiday = bool(entry.get("isClosed", False))
    return normalize_wall_time(start), normalize_wall_time(end), is_holiday


def _shift_entry(row: Shift) -> dict:
    return {
        "id": row.id,
        "clinic_id": row.clinic_id,
        "staff_id": row.staff_id,
        "date": row.day,
        "start_time": row.start_time,
        "end_time": row.end_time,
        "is_holiday": bool(row.is_holiday),
        "source": "shift",
    }


def build_shift_draft(db: Session, clinic_id: int, day: date) -> list[dict]:
    staff_rows = list_staff(db, clinic_id)
    persisted = {
        row.staff_id: row for row in list_shifts(db, clinic_id, day, day)
    }
    weekday = Weekday.from_date(day)

    out: list[dict] = []
    for staff in staff_rows:
        existing = persisted.pop(staff.id, None)
        if existing is not None:
            out.append(_shift_entry(existing))
            continue
        start, end, is_holiday = template_for(staff, weekday)
        out.append(
            {
                "id": f"temp-{uuid.uuid4().hex[:12]}",
                "clinic_id": clinic_id,
                "staff_id": staff.id,
                "date": day,
                "start_time": start,
                "end_time": end,
                "is_holiday": is_holiday,
                "source": "default",
            }
        )
    # shifts of archived staff stay visible so the admin can still edit them
    out.extend(_shift_entry(row) for row in persisted.values())
    return out


def save_shift_draft(db: Session, clinic_id: int, day: date, entries: list[dict]) -> list[Shift]:
    rows: list[Shift] = []
    seen: set[int] = set()
    try:
        for entry in entries:
            staff_id = int(entry["staff_id"])
            if staff_id in seen:
                raise ValidationGap(f"Duplicate draft entry for staff {staff_id}")
            seen.add(staff_id)
            if (entry.get("date") or day) != day:
                raise ValidationGap("Draft entries must belong to the draft date")
            get_staff(db, clinic_id, staff_id)
            rows.append(
                upsert_shift(
                    db,
                    clinic_id,
                    staff_id,
                    day,
                    entry["start_time"],
                    entry["end_time"],
                    bool(entry.get("is_holiday")),
                    commit_changes=False,
                )
            )
    except SchedulingError:
        db.rollback()
        raise
    commit(db, entity="shift")
    for row in rows:
        db.refresh(row)
    log.info("shift_draft_saved", clinic_id=clinic_id, day=day.isoformat(), count=len(rows))
    return rows
