from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .api import http_error, to_booking_out
from .bookings import list_all_bookings
from .clinics import list_clinics, set_clinic_status
from .db import get_db
from .errors import SchedulingError
from .schemas import BookingOut, ClinicOut, ClinicStatusUpdate

router = APIRouter(prefix="/api/platform", tags=["platform"])


@router.get("/clinics", response_model=List[ClinicOut])
def platform_clinics(
    status_filter: Optional[str] = Query(None, alias="status"),
    q: Optional[str] = Query(None, max_length=160),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    try:
        return list_clinics(db, status_filter=status_filter, query=q, limit=limit)
    except SchedulingError as exc:
        raise http_error(exc)


@router.post("/clinics/{clinic_id}/status", response_model=ClinicOut)
def platform_set_clinic_status(
    clinic_id: int,
    payload: ClinicStatusUpdate,
    db: Session = Depends(get_db),
):
    try:
        return set_clinic_status(db, clinic_id, payload.status)
    except SchedulingError as exc:
        raise http_error(exc)


@router.get("/bookings", response_model=List[BookingOut])
def platform_bookings(
    clinic_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    try:
        rows = list_all_bookings(
            db,
            clinic_id=clinic_id,
            status_filter=status_filter,
            start=start,
            end=end,
            limit=limit,
        )
    except SchedulingError as exc:
        raise http_error(exc)
    return [to_booking_out(b) for b in rows]
