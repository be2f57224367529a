from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from .availability import check_staff_availability, day_slot_grid, find_available_staff
from .bookings import (
    cancel_booking,
    create_booking,
    get_booking,
    list_bookings,
    reschedule_booking,
    update_booking,
)
from .clinics import (
    archive_staff,
    create_clinic,
    create_staff,
    get_clinic,
    list_staff,
    update_clinic,
    update_staff,
)
from .db import get_db
from .errors import BulkApprovalFailed, SchedulingError
from .models import Booking
from .schemas import (
    AvailabilityOut,
    AvailabilityQuery,
    AvailableStaffOut,
    BookingCreate,
    BookingOut,
    BookingReschedule,
    BookingUpdate,
    BulkApproveIn,
    BulkApproveOut,
    ClinicCreate,
    ClinicOut,
    ClinicUpdate,
    MonthSubmission,
    RangeDeleteOut,
    ShiftDraftEntry,
    ShiftDraftSave,
    ShiftOut,
    ShiftRequestCreate,
    ShiftRequestOut,
    SlotOut,
    StaffCreate,
    StaffOut,
    StaffUpdate,
)
from .shift_requests import (
    approve_shift_request,
    bulk_approve_shift_requests,
    create_shift_request,
    delete_shift_requests_in_range,
    list_shift_requests,
    reject_shift_request,
    submit_month_shift_requests,
)
from .shifts import build_shift_draft, delete_shifts_in_range, list_shifts, save_shift_draft
from .timeutil import as_utc

router = APIRouter(prefix="/api")


def http_error(exc: SchedulingError) -> HTTPException:
    if isinstance(exc, BulkApprovalFailed):
        return HTTPException(
            status_code=exc.status_code,
            detail={
                "message": exc.message,
                "approved": exc.approved_ids,
                "failed": {str(k): v for k, v in exc.failures.items()},
            },
        )
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _actor(x_actor_email: Optional[str]) -> Optional[str]:
    return (x_actor_email or "").strip().lower() or None


def to_booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        clinic_id=b.clinic_id,
        user_id=b.user_id,
        staff_id=b.staff_id,
        booked_by=b.booked_by,
        status=b.status,
        start_time=as_utc(b.start_time),
        end_time=as_utc(b.end_time),
        notes=b.notes,
        internal_memo=b.internal_memo,
        guest_name=b.guest_name,
        guest_email=b.guest_email,
        guest_contact=b.guest_contact,
        menu_item_id=b.menu_item_id,
        created_at=as_utc(b.created_at),
    )


# Clinic profile and staff


@router.post("/clinics", response_model=ClinicOut, status_code=status.HTTP_201_CREATED)
def add_clinic(
    payload: ClinicCreate,
    db: Session = Depends(get_db),
    x_actor_email: Optional[str] = Header(default=None),
):
    fields = payload.to_fields()
    fields.setdefault("owner_uid", _actor(x_actor_email))
    try:
        return create_clinic(db, name=payload.name, **fields)
    except SchedulingError as exc:
        raise http_error(exc)


@router.get("/clinics/{clinic_id}", response_model=ClinicOut)
def read_clinic(clinic_id: int, db: Session = Depends(get_db)):
    try:
        return get_clinic(db, clinic_id)
    except SchedulingError as exc:
        raise http_error(exc)


@router.patch("/clinics/{clinic_id}", response_model=ClinicOut)
def patch_clinic(clinic_id: int, payload: ClinicUpdate, db: Session = Depends(get_db)):
    changes = payload.to_changes()
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        return update_clinic(db, clinic_id, changes)
    except SchedulingError as exc:
        raise http_error(exc)


@router.get("/clinics/{clinic_id}/staff", response_model=List[StaffOut])
def read_staff(
    clinic_id: int,
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
):
    try:
        get_clinic(db, clinic_id)
        return list_staff(db, clinic_id, include_inactive=include_inactive)
    except SchedulingError as exc:
        raise http_error(exc)


@router.post(
    "/clinics/{clinic_id}/staff",
    response_model=StaffOut,
    status_code=status.HTTP_201_CREATED,
)
def add_staff(clinic_id: int, payload: StaffCreate, db: Session = Depends(get_db)):
    try:
        return create_staff(db, clinic_id, name=payload.name, **payload.to_fields())
    except SchedulingError as exc:
        raise http_error(exc)


@router.patch("/clinics/{clinic_id}/staff/{staff_id}", response_model=StaffOut)
def patch_staff(
    clinic_id: int,
    staff_id: int,
    payload: StaffUpdate,
    db: Session = Depends(get_db),
):
    changes = payload.to_changes()
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        return update_staff(db, clinic_id, staff_id, changes)
    except SchedulingError as exc:
        raise http_error(exc)


@router.delete("/clinics/{clinic_id}/staff/{staff_id}", response_model=StaffOut)
def remove_staff(clinic_id: int, staff_id: int, db: Session = Depends(get_db)):
    try:
        return archive_staff(db, clinic_id, staff_id)
    except SchedulingError as exc:
        raise http_error(exc)


# Availability


@router.post("/clinics/{clinic_id}/availability/check", response_model=AvailabilityOut)
def check_availability(
    clinic_id: int,
    payload: AvailabilityQuery,
    db: Session = Depends(get_db),
):
    if not payload.staff_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="staff_id is required")
    try:
        available = check_staff_availability(
            db, clinic_id, payload.staff_id, payload.start_time, payload.end_time
        )
    except SchedulingError as exc:
        raise http_error(exc)
    return AvailabilityOut(staff_id=payload.staff_id, available=available)


@router.post("/clinics/{clinic_id}/availability/search", response_model=AvailableStaffOut)
def search_availability(
    clinic_id: int,
    payload: AvailabilityQuery,
    db: Session = Depends(get_db),
):
    try:
        staff_ids = find_available_staff(
            db,
            clinic_id,
            payload.start_time,
            payload.end_time,
            menu_item_id=payload.menu_item_id,
        )
    except SchedulingError as exc:
        raise http_error(exc)
    return AvailableStaffOut(staff_ids=staff_ids)


@router.get("/clinics/{clinic_id}/availability/grid", response_model=List[SlotOut])
def availability_grid(
    clinic_id: int,
    day: date = Query(...),
    menu_item_id: Optional[str] = Query(None),
    staff_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        return day_slot_grid(db, clinic_id, day, menu_item_id=menu_item_id, staff_id=staff_id)
    except SchedulingError as exc:
        raise http_error(exc)


# Bookings


@router.post(
    "/clinics/{clinic_id}/bookings",
    response_model=BookingOut,
    status_code=status.HTTP_201_CREATED,
)
def add_booking(clinic_id: int, payload: BookingCreate, db: Session = Depends(get_db)):
    try:
        booking = create_booking(db, clinic_id, **payload.model_dump())
    except SchedulingError as exc:
        raise http_error(exc)
    return to_booking_out(booking)


@router.get("/clinics/{clinic_id}/bookings", response_model=List[BookingOut])
def read_bookings(
    clinic_id: int,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    staff_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        rows = list_bookings(
            db,
            clinic_id,
            start=start,
            end=end,
            status_filter=status_filter,
            staff_id=staff_id,
        )
    except SchedulingError as exc:
        raise http_error(exc)
    return [to_booking_out(b) for b in rows]


@router.get("/clinics/{clinic_id}/bookings/{booking_id}", response_model=BookingOut)
def read_booking(clinic_id: int, booking_id: int, db: Session = Depends(get_db)):
    try:
        return to_booking_out(get_booking(db, clinic_id, booking_id))
    except SchedulingError as exc:
        raise http_error(exc)


@router.patch("/clinics/{clinic_id}/bookings/{booking_id}", response_model=BookingOut)
def patch_booking(
    clinic_id: int,
    booking_id: int,
    payload: BookingUpdate,
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        booking = update_booking(db, clinic_id, booking_id, changes)
    except SchedulingError as exc:
        raise http_error(exc)
    return to_booking_out(booking)


@router.post("/clinics/{clinic_id}/bookings/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking_endpoint(clinic_id: int, booking_id: int, db: Session = Depends(get_db)):
    try:
        booking = cancel_booking(db, clinic_id, booking_id)
    except SchedulingError as exc:
        raise http_error(exc)
    return to_booking_out(booking)


@router.post("/clinics/{clinic_id}/bookings/{booking_id}/reschedule", response_model=BookingOut)
def reschedule_booking_endpoint(
    clinic_id: int,
    booking_id: int,
    payload: BookingReschedule,
    db: Session = Depends(get_db),
):
    try:
        booking = reschedule_booking(
            db,
            clinic_id,
            booking_id,
            start_time=payload.start_time,
            end_time=payload.end_time,
            staff_id=payload.staff_id,
        )
    except SchedulingError as exc:
        raise http_error(exc)
    return to_booking_out(booking)


# Shifts


@router.get("/clinics/{clinic_id}/shifts", response_model=List[ShiftOut])
def read_shifts(
    clinic_id: int,
    start_day: date = Query(...),
    end_day: date = Query(...),
    staff_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        return list_shifts(db, clinic_id, start_day, end_day, staff_id=staff_id)
    except SchedulingError as exc:
        raise http_error(exc)


@router.delete("/clinics/{clinic_id}/shifts", response_model=RangeDeleteOut)
def remove_shifts(
    clinic_id: int,
    start_day: date = Query(...),
    end_day: date = Query(...),
    db: Session = Depends(get_db),
):
    try:
        deleted = delete_shifts_in_range(db, clinic_id, start_day, end_day)
    except SchedulingError as exc:
        raise http_error(exc)
    return RangeDeleteOut(deleted=deleted)


@router.get("/clinics/{clinic_id}/shifts/draft", response_model=List[ShiftDraftEntry])
def read_shift_draft(clinic_id: int, day: date = Query(...), db: Session = Depends(get_db)):
    try:
        get_clinic(db, clinic_id)
        return build_shift_draft(db, clinic_id, day)
    except SchedulingError as exc:
        raise http_error(exc)


@router.put("/clinics/{clinic_id}/shifts/draft", response_model=List[ShiftOut])
def save_draft(
    clinic_id: int,
    payload: ShiftDraftSave,
    day: date = Query(...),
    db: Session = Depends(get_db),
):
    entries = [entry.model_dump(by_alias=True) for entry in payload.entries]
    try:
        get_clinic(db, clinic_id)
        return save_shift_draft(db, clinic_id, day, entries)
    except SchedulingError as exc:
        raise http_error(exc)


# Shift requests


@router.post(
    "/clinics/{clinic_id}/shift-requests",
    response_model=ShiftRequestOut,
    status_code=status.HTTP_201_CREATED,
)
def add_shift_request(
    clinic_id: int,
    payload: ShiftRequestCreate,
    db: Session = Depends(get_db),
):
    try:
        return create_shift_request(
            db,
            clinic_id,
            staff_id=payload.staff_id,
            day=payload.day,
            start_time=payload.start_time,
            end_time=payload.end_time,
            is_holiday=payload.is_holiday,
        )
    except SchedulingError as exc:
        raise http_error(exc)


@router.post(
    "/clinics/{clinic_id}/shift-requests/month",
    response_model=List[ShiftRequestOut],
    status_code=status.HTTP_201_CREATED,
)
def submit_month(clinic_id: int, payload: MonthSubmission, db: Session = Depends(get_db)):
    overrides = {
        item.day: item.model_dump(exclude={"day"}) for item in payload.days
    }
    try:
        return submit_month_shift_requests(
            db,
            clinic_id,
            staff_id=payload.staff_id,
            year=payload.year,
            month=payload.month,
            overrides=overrides,
        )
    except SchedulingError as exc:
        raise http_error(exc)


@router.get("/clinics/{clinic_id}/shift-requests", response_model=List[ShiftRequestOut])
def read_shift_requests(
    clinic_id: int,
    status_filter: Optional[str] = Query(None, alias="status"),
    staff_id: Optional[int] = Query(None),
    start_day: Optional[date] = Query(None),
    end_day: Optional[date] = Query(None),
    db: Session = Depends(get_db),
):
    try:
        return list_shift_requests(
            db,
            clinic_id,
            status_filter=status_filter,
            staff_id=staff_id,
            start_day=start_day,
            end_day=end_day,
        )
    except SchedulingError as exc:
        raise http_error(exc)


@router.post(
    "/clinics/{clinic_id}/shift-requests/{request_id}/approve",
    response_model=ShiftRequestOut,
)
def approve_request(
    clinic_id: int,
    request_id: int,
    db: Session = Depends(get_db),
    x_actor_email: Optional[str] = Header(default=None),
):
    try:
        return approve_shift_request(db, clinic_id, request_id, decided_by=_actor(x_actor_email))
    except SchedulingError as exc:
        raise http_error(exc)


@router.post(
    "/clinics/{clinic_id}/shift-requests/{request_id}/reject",
    response_model=ShiftRequestOut,
)
def reject_request(
    clinic_id: int,
    request_id: int,
    db: Session = Depends(get_db),
    x_actor_email: Optional[str] = Header(default=None),
):
    try:
        return reject_shift_request(db, clinic_id, request_id, decided_by=_actor(x_actor_email))
    except SchedulingError as exc:
        raise http_error(exc)


@router.post("/clinics/{clinic_id}/shift-requests/bulk-approve", response_model=BulkApproveOut)
def bulk_approve(
    clinic_id: int,
    payload: BulkApproveIn,
    db: Session = Depends(get_db),
    x_actor_email: Optional[str] = Header(default=None),
):
    try:
        approved = bulk_approve_shift_requests(
            db, clinic_id, payload.request_ids, decided_by=_actor(x_actor_email)
        )
    except SchedulingError as exc:
        raise http_error(exc)
    return BulkApproveOut(approved=approved)


@router.delete("/clinics/{clinic_id}/shift-requests", response_model=RangeDeleteOut)
def remove_shift_requests(
    clinic_id: int,
    start_day: date = Query(...),
    end_day: date = Query(...),
    db: Session = Depends(get_db),
):
    try:
        deleted = delete_shift_requests_in_range(db, clinic_id, start_day, end_day)
    except SchedulingError as exc:
        raise http_error(exc)
    return RangeDeleteOut(deleted=deleted)
