"""Staff-submitted shift change requests and their reconciliation into shifts.

Requests move ``pending -> approved`` or ``pending -> rejected`` only.
Approval writes the shift and the request status in one commit, and
approving an already approved request re-applies it, so a caller that is
unsure whether an approval landed can simply approve again.
"""

import calendar
from datetime import date

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .clinics import get_clinic, get_staff
from .config import settings
from .errors import BulkApprovalFailed, InvalidTransition, NotFound, SchedulingError, ValidationGap
from .models import SHIFT_REQUEST_STATUSES, ShiftRequest, utc_now_naive
from .shifts import upsert_shift
from .store import commit, execute, fetch_all, fetch_one_or_none
from .timeutil import Weekday, normalize_wall_time

log = structlog.get_logger("clinicos.shift_requests")


def _new_request(
    clinic_id: int,
    staff_id: int,
    day: date,
    start_time: str,
    end_time: str,
    is_holiday: bool,
) -> ShiftRequest:
    return ShiftRequest(
        clinic_id=clinic_id,
        staff_id=staff_id,
        day=day,
        start_time=normalize_wall_time(start_time),
        end_time=normalize_wall_time(end_time),
        is_holiday=bool(is_holiday),
        status="pending",
        created_at=utc_now_naive(),
    )


def create_shift_request(
    db: Session,
    clinic_id: int,
    *,
    staff_id: int,
    day: date,
    start_time: str,
    end_time: str,
    is_holiday: bool = False,
) -> ShiftRequest:
    get_staff(db, clinic_id, staff_id)
    row = _new_request(clinic_id, staff_id, day, start_time, end_time, is_holiday)
    db.add(row)
    commit(db, entity="shift request")
    db.refresh(row)
    log.info("shift_request_created", clinic_id=clinic_id, request_id=row.id, staff_id=staff_id)
    return row


def _clinic_day_config(business_hours: dict | None, day: date) -> tuple[str, str, bool]:
    entry = (business_hours or {}).get(Weekday.from_date(day).value) or {}
    return (
        entry.get("start") or settings.DEFAULT_SHIFT_START,
        entry.get("end") or settings.DEFAULT_SHIFT_END,
        bool(entry.get("isClosed", False)),
    )


def submit_month_shift_requests(
    db: Session,
    clinic_id: int,
    *,
    staff_id: int,
    year: int,
    month: int,
    overrides: dict[date, dict] | None = None,
) -> list[ShiftRequest]:
    """Create one pending request for every day of ``year-month``.

    Days without an override take the clinic business hours. Days the clinic
    is closed are always submitted as holidays.
    """
    if not 1 <= int(month) <= 12:
        raise ValidationGap("month must be between 1 and 12")
    clinic = get_clinic(db, clinic_id)
    get_staff(db, clinic_id, staff_id)
    overrides = overrides or {}
    days_in_month = calendar.monthrange(year, month)[1]

    rows = []
    for day_number in range(1, days_in_month + 1):
        day = date(year, month, day_number)
        start, end, is_closed = _clinic_day_config(clinic.business_hours, day)
        data = overrides.get(day) or {}
        rows.append(
            _new_request(
                clinic_id,
                staff_id,
                day,
                data.get("start_time") or start,
                data.get("end_time") or end,
                True if is_closed else bool(data.get("is_holiday", is_closed)),
            )
        )
    db.add_all(rows)
    commit(db, entity="shift request")
    for row in rows:
        db.refresh(row)
    log.info(
        "shift_requests_submitted",
        clinic_id=clinic_id,
        staff_id=staff_id,
        month=f"{year:04d}-{month:02d}",
        count=len(rows),
    )
    return rows


def get_shift_request(db: Session, clinic_id: int, request_id: int) -> ShiftRequest:
    row = fetch_one_or_none(
        db,
        select(ShiftRequest).where(
            ShiftRequest.clinic_id == clinic_id,
            ShiftRequest.id == request_id,
        ),
        entity="shift request",
    )
    if row is None:
        raise NotFound("Shift request not found")
    return row


def list_shift_requests(
    db: Session,
    clinic_id: int,
    *,
    status_filter: str | None = None,
    staff_id: int | None = None,
    start_day: date | None = None,
    end_day: date | None = None,
) -> list[ShiftRequest]:
    stmt = select(ShiftRequest).where(ShiftRequest.clinic_id == clinic_id)
    if status_filter:
        normalized = status_filter.strip().lower()
        if normalized not in SHIFT_REQUEST_STATUSES:
            raise ValidationGap("Invalid shift request status")
        stmt = stmt.where(ShiftRequest.status == normalized)
    if staff_id:
        stmt = stmt.where(ShiftRequest.staff_id == staff_id)
    if start_day:
        stmt = stmt.where(ShiftRequest.day >= start_day)
    if end_day:
        stmt = stmt.where(ShiftRequest.day <= end_day)
    stmt = stmt.order_by(ShiftRequest.day.asc(), ShiftRequest.id.asc())
    return fetch_all(db, stmt, entity="shift request")


def approve_shift_request(
    db: Session,
    clinic_id: int,
    request_id: int,
    *,
    decided_by: str | None = None,
) -> ShiftRequest:
    row = get_shift_request(db, clinic_id, request_id)
    if row.status == "rejected":
        raise InvalidTransition("Rejected shift requests cannot be approved")

    try:
        upsert_shift(
            db,
            clinic_id,
            row.staff_id,
            row.day,
            row.start_time,
            row.end_time,
            row.is_holiday,
            commit_changes=False,
        )
    except SchedulingError:
        db.rollback()
        raise
    if row.status != "approved":
        row.status = "approved"
        row.decided_at = utc_now_naive()
        row.decided_by = (decided_by or "").strip().lower()[:160] or None
    commit(db, entity="shift request")
    db.refresh(row)
    log.info(
        "shift_request_approved",
        clinic_id=clinic_id,
        request_id=request_id,
        staff_id=row.staff_id,
        day=row.day.isoformat(),
    )
    return row


def reject_shift_request(
    db: Session,
    clinic_id: int,
    request_id: int,
    *,
    decided_by: str | None = None,
) -> ShiftRequest:
    row = get_shift_request(db, clinic_id, request_id)
    if row.status == "rejected":
        return row
    if row.status == "approved":
        raise InvalidTransition("Approved shift requests cannot be rejected")
    row.status = "rejected"
    row.decided_at = utc_now_naive()
    row.decided_by = (decided_by or "").strip().lower()[:160] or None
    commit(db, entity="shift request")
    db.refresh(row)
    log.info("shift_request_rejected", clinic_id=clinic_id, request_id=request_id)
    return row


def bulk_approve_shift_requests(
    db: Session,
    clinic_id: int,
    request_ids: list[int],
    *,
    decided_by: str | None = None,
) -> list[int]:
    """Approve every id independently; successful approvals are kept.

    Raises :class:`BulkApprovalFailed` after all ids were attempted when at
    least one of them failed.
    """
    approved: list[int] = []
    failures: dict[int, str] = {}
    for request_id in dict.fromkeys(request_ids):
        try:
            approve_shift_request(db, clinic_id, request_id, decided_by=decided_by)
        except SchedulingError as exc:
            failures[request_id] = exc.message
            log.warning(
                "shift_request_approval_failed",
                clinic_id=clinic_id,
                request_id=request_id,
                error=exc.message,
            )
            continue
        approved.append(request_id)

    if failures:
        raise BulkApprovalFailed(approved, failures)
    return approved


def delete_shift_requests_in_range(
    db: Session, clinic_id: int, start_day: date, end_day: date
) -> int:
    if end_day < start_day:
        raise ValidationGap("end_day must be >= start_day")
    result = execute(
        db,
        delete(ShiftRequest).where(
            ShiftRequest.clinic_id == clinic_id,
            ShiftRequest.day >= start_day,
            ShiftRequest.day <= end_day,
        ),
        entity="shift request",
    )
    commit(db, entity="shift request")
    return int(result.rowcount or 0)
