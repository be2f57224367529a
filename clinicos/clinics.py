import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import NotFound, ValidationGap
from .models import CLINIC_STATUSES, Clinic, Staff
from .store import commit, fetch_all, fetch_one_or_none
from .timeutil import Weekday, clinic_zone, normalize_wall_time

log = structlog.get_logger("clinicos.clinics")

_CLINIC_FIELDS = {
    "name",
    "description",
    "owner_uid",
    "timezone",
    "business_hours",
    "menu_items",
}
_STAFF_FIELDS = {"name", "role", "image_url", "default_schedule", "skill_ids"}


def _normalize_week_templates(raw: dict | None) -> dict | None:
    """Validate a weekday -> ``{start, end, isClosed}`` mapping."""
    if raw is None:
        return None
    out: dict = {}
    for key, entry in raw.items():
        try:
            weekday = Weekday(str(key).strip().lower())
        except ValueError as exc:
            raise ValidationGap(f"Unknown weekday: {key!r}") from exc
        entry = entry or {}
        is_closed = bool(entry.get("isClosed", entry.get("is_closed", False)))
        start = normalize_wall_time(entry.get("start") or settings.DEFAULT_SHIFT_START)
        end = normalize_wall_time(entry.get("end") or settings.DEFAULT_SHIFT_END)
        out[weekday.value] = {"start": start, "end": end, "isClosed": is_closed}
    return out


def _normalize_menu_items(items: list | None) -> list:
    out = []
    for item in items or []:
        item_id = str(item.get("id") or "").strip()
        if not item_id:
            raise ValidationGap("Menu item id is required")
        duration = item.get("duration")
        if duration is not None and int(duration) <= 0:
            raise ValidationGap("Menu item duration must be > 0")
        out.append({**item, "id": item_id})
    return out


def _apply_clinic_fields(row: Clinic, changes: dict) -> None:
    for field, value in changes.items():
        if field not in _CLINIC_FIELDS:
            continue
        if field == "timezone":
            clinic_zone(value)
            value = (value or "").strip() or settings.CLINIC_DEFAULT_TIMEZONE
        elif field == "business_hours":
            value = _normalize_week_templates(value)
        elif field == "menu_items":
            value = _normalize_menu_items(value)
        setattr(row, field, value)


def create_clinic(db: Session, *, name: str, **fields) -> Clinic:
    row = Clinic(
        name=name.strip(),
        status="pending",
        timezone=settings.CLINIC_DEFAULT_TIMEZONE,
        menu_items=[],
    )
    _apply_clinic_fields(row, fields)
    db.add(row)
    commit(db, entity="clinic")
    db.refresh(row)
    log.info("clinic_created", clinic_id=row.id)
    return row


def get_clinic(db: Session, clinic_id: int) -> Clinic:
    row = fetch_one_or_none(
        db, select(Clinic).where(Clinic.id == clinic_id), entity="clinic"
    )
    if row is None:
        raise NotFound("Clinic not found")
    return row


def update_clinic(db: Session, clinic_id: int, changes: dict) -> Clinic:
    row = get_clinic(db, clinic_id)
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationGap("Clinic name cannot be empty")
    _apply_clinic_fields(row, changes)
    commit(db, entity="clinic")
    db.refresh(row)
    return row


def set_clinic_status(db: Session, clinic_id: int, status: str) -> Clinic:
    normalized = (status or "").strip().lower()
    if normalized not in CLINIC_STATUSES:
        raise ValidationGap("Invalid clinic status")
    row = get_clinic(db, clinic_id)
    row.status = normalized
    commit(db, entity="clinic")
    db.refresh(row)
    log.info("clinic_status_changed", clinic_id=clinic_id, status=normalized)
    return row


def list_clinics(
    db: Session,
    *,
    status_filter: str | None = None,
    query: str | None = None,
    limit: int = 100,
) -> list[Clinic]:
    stmt = select(Clinic)
    if status_filter:
        stmt = stmt.where(Clinic.status == status_filter.strip().lower())
    if query and query.strip():
        stmt = stmt.where(Clinic.name.ilike(f"%{query.strip()}%"))
    stmt = stmt.order_by(Clinic.id.asc()).limit(limit)
    return fetch_all(db, stmt, entity="clinic")


def create_staff(db: Session, clinic_id: int, *, name: str, **fields) -> Staff:
    get_clinic(db, clinic_id)
    row = Staff(clinic_id=clinic_id, name=name.strip(), is_active=True, skill_ids=[])
    for field, value in fields.items():
        if field not in _STAFF_FIELDS:
            continue
        if field == "default_schedule":
            value = _normalize_week_templates(value)
        elif field == "skill_ids":
            value = [str(v) for v in (value or [])]
        setattr(row, field, value)
    db.add(row)
    commit(db, entity="staff")
    db.refresh(row)
    log.info("staff_created", clinic_id=clinic_id, staff_id=row.id)
    return row


def get_staff(db: Session, clinic_id: int, staff_id: int) -> Staff:
    row = fetch_one_or_none(
        db,
        select(Staff).where(Staff.clinic_id == clinic_id, Staff.id == staff_id),
        entity="staff",
    )
    if row is None:
        raise NotFound("Staff not found")
    return row


def update_staff(db: Session, clinic_id: int, staff_id: int, changes: dict) -> Staff:
    row = get_staff(db, clinic_id, staff_id)
    for field, value in changes.items():
        if field not in _STAFF_FIELDS:
            continue
        if field == "default_schedule":
            value = _normalize_week_templates(value)
        elif field == "skill_ids":
            value = [str(v) for v in (value or [])]
        setattr(row, field, value)
    commit(db, entity="staff")
    db.refresh(row)
    return row


def archive_staff(db: Session, clinic_id: int, staff_id: int) -> Staff:
    row = get_staff(db, clinic_id, staff_id)
    row.is_active = False
    commit(db, entity="staff")
    db.refresh(row)
    log.info("staff_archived", clinic_id=clinic_id, staff_id=staff_id)
    return row


def list_staff(
    db: Session, clinic_id: int, *, include_inactive: bool = False
) -> list[Staff]:
    stmt = select(Staff).where(Staff.clinic_id == clinic_id)
    if not include_inactive:
        stmt = stmt.where(Staff.is_active.is_(True))
    return fetch_all(db, stmt.order_by(Staff.id.asc()), entity="staff")


def find_menu_item(clinic: Clinic, menu_item_id: str | None) -> dict | None:
    if not menu_item_id:
        return None
    for item in clinic.menu_items or []:
        if str(item.get("id")) == str(menu_item_id):
            return item
    return None
