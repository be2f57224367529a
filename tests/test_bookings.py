from datetime import date, datetime

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

import clinicos.bookings as bookings
from clinicos.api import get_db, router
from clinicos.bookings import (
    cancel_booking,
    create_booking,
    list_bookings,
    reschedule_booking,
    update_booking,
)
from clinicos.clinics import archive_staff, create_clinic, create_staff
from clinicos.config import settings
from clinicos.db import Base
from clinicos.errors import (
    BookingConflict,
    InvalidTransition,
    NoAvailability,
    NotFound,
    ValidationGap,
)
from clinicos.models import Booking
from clinicos.shifts import upsert_shift

MONDAY = date(2026, 3, 2)


def make_session_factory(tmp_path):
    db_path = tmp_path / "test_clinicos_bookings.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def make_client(session_factory):
    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _seed(db):
    clinic = create_clinic(
        db,
        name="Sakura Clinic",
        timezone="Asia/Tokyo",
        menu_items=[{"id": "checkup", "name": "Checkup", "duration": 30}],
    )
    aiko = create_staff(db, clinic.id, name="Aiko")
    ben = create_staff(db, clinic.id, name="Ben")
    upsert_shift(db, clinic.id, aiko.id, MONDAY, "09:00", "18:00", False)
    upsert_shift(db, clinic.id, ben.id, MONDAY, "09:00", "18:00", False)
    return clinic, aiko, ben


def _count_bookings(db) -> int:
    return db.execute(select(func.count(Booking.id))).scalar_one()


def test_auto_assign_takes_first_free_staff(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, ben = _seed(db)

    create_booking(
        db,
        clinic.id,
        staff_id=ben.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )
    first = create_booking(
        db, clinic.id, start_time=datetime(2026, 3, 2, 10, 0), end_time=datetime(2026, 3, 2, 11, 0)
    )
    assert first.staff_id == aiko.id
    assert first.status == "confirmed"

    with pytest.raises(NoAvailability):
        create_booking(
            db,
            clinic.id,
            start_time=datetime(2026, 3, 2, 10, 30),
            end_time=datetime(2026, 3, 2, 11, 30),
        )
    assert _count_bookings(db) == 2


def test_auto_assign_skips_booked_staff(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, ben = _seed(db)

    create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )
    booking = create_booking(
        db, clinic.id, start_time=datetime(2026, 3, 2, 10, 0), end_time=datetime(2026, 3, 2, 11, 0)
    )
    assert booking.staff_id == ben.id


def test_nominated_staff_conflict_writes_nothing(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, _ = _seed(db)
    create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )

    with pytest.raises(BookingConflict):
        create_booking(
            db,
            clinic.id,
            staff_id=aiko.id,
            start_time=datetime(2026, 3, 2, 10, 30),
            end_time=datetime(2026, 3, 2, 11, 30),
        )
    with pytest.raises(BookingConflict):
        create_booking(
            db,
            clinic.id,
            staff_id=aiko.id,
            start_time=datetime(2026, 3, 2, 17, 30),
            end_time=datetime(2026, 3, 2, 18, 30),
        )
    assert _count_bookings(db) == 1


def test_nominated_staff_from_other_clinic_is_not_found(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, _, _ = _seed(db)
    other = create_clinic(db, name="Other Clinic")
    stranger = create_staff(db, other.id, name="Stranger")

    with pytest.raises(NotFound):
        create_booking(
            db,
            clinic.id,
            staff_id=stranger.id,
            start_time=datetime(2026, 3, 2, 10, 0),
            end_time=datetime(2026, 3, 2, 11, 0),
        )


def test_end_time_defaults_to_menu_duration(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, _, _ = _seed(db)

    booking = create_booking(
        db, clinic.id, start_time=datetime(2026, 3, 2, 10, 0), menu_item_id="checkup"
    )
    assert (booking.end_time - booking.start_time).total_seconds() == 30 * 60
    # stored in UTC; Tokyo is nine hours ahead
    assert booking.start_time == datetime(2026, 3, 2, 1, 0)


def test_lost_guard_race_retries_then_conflicts(tmp_path, monkeypatch):
    db = make_session_factory(tmp_path)()
    clinic, _, _ = _seed(db)
    monkeypatch.setattr(settings, "BOOKING_SLOT_GUARD", True)
    monkeypatch.setattr(settings, "BOOKING_GUARD_RETRIES", 3)
    calls = []

    def always_lost(db, clinic_id, staff_id, day, version):
        calls.append(staff_id)
        return False

    monkeypatch.setattr(bookings, "_bump_guard", always_lost)

    with pytest.raises(BookingConflict):
        create_booking(
            db,
            clinic.id,
            start_time=datetime(2026, 3, 2, 10, 0),
            end_time=datetime(2026, 3, 2, 11, 0),
        )
    assert len(calls) == 3
    assert _count_bookings(db) == 0


def test_lost_guard_race_recovers_on_retry(tmp_path, monkeypatch):
    db = make_session_factory(tmp_path)()
    clinic, aiko, _ = _seed(db)
    monkeypatch.setattr(settings, "BOOKING_SLOT_GUARD", True)
    original = bookings._bump_guard
    calls = []

    def lose_once(db, clinic_id, staff_id, day, version):
        calls.append(version)
        if len(calls) == 1:
            return False
        return original(db, clinic_id, staff_id, day, version)

    monkeypatch.setattr(bookings, "_bump_guard", lose_once)

    booking = create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )
    assert booking.staff_id == aiko.id
    assert len(calls) == 2
    assert _count_bookings(db) == 1


def _book_in_other_session(factory, clinic_id, staff_id, start_time, end_time):
    with factory() as other:
        return create_booking(
            other, clinic_id, staff_id=staff_id, start_time=start_time, end_time=end_time
        ).id


def _live_bookings_at(db, start_time):
    return db.execute(
        select(func.count(Booking.id)).where(
            Booking.start_time == start_time, Booking.status != "cancelled"
        )
    ).scalar_one()


def test_concurrent_session_wins_the_staff_day(tmp_path, monkeypatch):
    factory = make_session_factory(tmp_path)
    db = factory()
    clinic, aiko, _ = _seed(db)
    clinic_id, aiko_id = clinic.id, aiko.id
    monkeypatch.setattr(settings, "BOOKING_SLOT_GUARD", True)
    monkeypatch.setattr(settings, "BOOKING_GUARD_RETRIES", 3)
    original = bookings.check_staff_availability
    checks = []
    rival = []

    def check_then_race(*args, **kwargs):
        result = original(*args, **kwargs)
        checks.append(result)
        # the second check is the one made after the guard version is read
        if len(checks) == 2 and not rival:
            rival.append(
                _book_in_other_session(
                    factory,
                    clinic_id,
                    aiko_id,
                    datetime(2026, 3, 2, 10, 0),
                    datetime(2026, 3, 2, 11, 0),
                )
            )
        return result

    monkeypatch.setattr(bookings, "check_staff_availability", check_then_race)

    with pytest.raises(BookingConflict):
        create_booking(
            db,
            clinic_id,
            staff_id=aiko_id,
            start_time=datetime(2026, 3, 2, 10, 0),
            end_time=datetime(2026, 3, 2, 11, 0),
        )
    assert len(rival) == 1
    assert _count_bookings(db) == 1
    assert _live_bookings_at(db, datetime(2026, 3, 2, 1, 0)) == 1


def test_reschedule_loses_to_concurrent_booking(tmp_path, monkeypatch):
    factory = make_session_factory(tmp_path)
    db = factory()
    clinic, aiko, _ = _seed(db)
    clinic_id, aiko_id = clinic.id, aiko.id
    monkeypatch.setattr(settings, "BOOKING_SLOT_GUARD", True)
    monkeypatch.setattr(settings, "BOOKING_GUARD_RETRIES", 3)
    later = create_booking(
        db,
        clinic_id,
        staff_id=aiko_id,
        start_time=datetime(2026, 3, 2, 14, 0),
        end_time=datetime(2026, 3, 2, 15, 0),
    )
    original = bookings.check_staff_availability
    rival = []

    def check_then_race(*args, **kwargs):
        result = original(*args, **kwargs)
        if not rival:
            rival.append(
                _book_in_other_session(
                    factory,
                    clinic_id,
                    aiko_id,
                    datetime(2026, 3, 2, 10, 0),
                    datetime(2026, 3, 2, 11, 0),
                )
            )
        return result

    monkeypatch.setattr(bookings, "check_staff_availability", check_then_race)

    with pytest.raises(BookingConflict):
        reschedule_booking(
            db,
            clinic_id,
            later.id,
            start_time=datetime(2026, 3, 2, 10, 0),
            end_time=datetime(2026, 3, 2, 11, 0),
        )
    assert _live_bookings_at(db, datetime(2026, 3, 2, 1, 0)) == 1
    db.refresh(later)
    assert later.start_time == datetime(2026, 3, 2, 5, 0)


def test_reschedule_to_other_staff_bumps_both_staff_days(tmp_path, monkeypatch):
    db = make_session_factory(tmp_path)()
    clinic, aiko, ben = _seed(db)
    monkeypatch.setattr(settings, "BOOKING_SLOT_GUARD", True)
    booking = create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )
    original = bookings._bump_guard
    bumped = []

    def record(db, clinic_id, staff_id, day, version):
        bumped.append((staff_id, day))
        return original(db, clinic_id, staff_id, day, version)

    monkeypatch.setattr(bookings, "_bump_guard", record)

    moved = reschedule_booking(
        db,
        clinic.id,
        booking.id,
        start_time=datetime(2026, 3, 2, 12, 0),
        end_time=datetime(2026, 3, 2, 13, 0),
        staff_id=ben.id,
    )
    assert moved.staff_id == ben.id
    assert bumped == [(ben.id, MONDAY), (aiko.id, MONDAY)]


def test_archived_staff_cannot_be_nominated(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, ben = _seed(db)
    booking = create_booking(
        db,
        clinic.id,
        staff_id=ben.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )
    archive_staff(db, clinic.id, aiko.id)

    with pytest.raises(BookingConflict):
        create_booking(
            db,
            clinic.id,
            staff_id=aiko.id,
            start_time=datetime(2026, 3, 2, 12, 0),
            end_time=datetime(2026, 3, 2, 13, 0),
        )
    with pytest.raises(BookingConflict):
        update_booking(db, clinic.id, booking.id, {"staff_id": aiko.id})
    with pytest.raises(BookingConflict):
        reschedule_booking(
            db,
            clinic.id,
            booking.id,
            start_time=datetime(2026, 3, 2, 12, 0),
            end_time=datetime(2026, 3, 2, 13, 0),
            staff_id=aiko.id,
        )
    assert _count_bookings(db) == 1
    db.refresh(booking)
    assert booking.staff_id == ben.id


def test_guard_can_be_disabled(tmp_path, monkeypatch):
    db = make_session_factory(tmp_path)()
    clinic, aiko, _ = _seed(db)
    monkeypatch.setattr(settings, "BOOKING_SLOT_GUARD", False)

    booking = create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )
    assert booking.id > 0


def test_status_transitions(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, _ = _seed(db)
    booking = create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        status="pending",
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )

    assert update_booking(db, clinic.id, booking.id, {"status": "confirmed"}).status == "confirmed"
    assert cancel_booking(db, clinic.id, booking.id).status == "cancelled"
    with pytest.raises(InvalidTransition):
        update_booking(db, clinic.id, booking.id, {"status": "no_show"})
    assert update_booking(db, clinic.id, booking.id, {"status": "pending"}).status == "pending"


def test_update_does_not_partially_apply_invalid_changes(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, _ = _seed(db)
    booking = create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )

    with pytest.raises(ValidationGap):
        update_booking(db, clinic.id, booking.id, {"notes": "late", "status": "rescheduled"})
    db.refresh(booking)
    assert booking.notes is None


def test_reschedule_ignores_own_slot_and_checks_others(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, ben = _seed(db)
    mine = create_booking(
        db,
        clinic.id,
        staff_id=aiko.id,
        start_time=datetime(2026, 3, 2, 10, 0),
        end_time=datetime(2026, 3, 2, 11, 0),
    )
    create_booking(
        db,
        clinic.id,
        staff_id=ben.id,
        start_time=datetime(2026, 3, 2, 12, 0),
        end_time=datetime(2026, 3, 2, 13, 0),
    )

    moved = reschedule_booking(
        db,
        clinic.id,
        mine.id,
        start_time=datetime(2026, 3, 2, 10, 30),
        end_time=datetime(2026, 3, 2, 11, 30),
    )
    assert moved.start_time == datetime(2026, 3, 2, 1, 30)

    with pytest.raises(BookingConflict):
        reschedule_booking(
            db,
            clinic.id,
            mine.id,
            start_time=datetime(2026, 3, 2, 12, 0),
            end_time=datetime(2026, 3, 2, 13, 0),
            staff_id=ben.id,
        )


def test_list_bookings_filters_by_range_and_staff(tmp_path):
    db = make_session_factory(tmp_path)()
    clinic, aiko, ben = _seed(db)
    for staff, hour in ((aiko, 10), (ben, 11), (aiko, 15)):
        create_booking(
            db,
            clinic.id,
            staff_id=staff.id,
            start_time=datetime(2026, 3, 2, hour, 0),
            end_time=datetime(2026, 3, 2, hour, 30),
        )

    rows = list_bookings(
        db,
        clinic.id,
        start=datetime(2026, 3, 2, 10, 0),
        end=datetime(2026, 3, 2, 12, 0),
        staff_id=aiko.id,
    )
    assert [row.start_time.hour for row in rows] == [1]


def test_booking_api_round(tmp_path):
    factory = make_session_factory(tmp_path)
    with factory() as db:
        clinic, aiko, ben = _seed(db)
        clinic_id, aiko_id = clinic.id, aiko.id
    client = make_client(factory)

    created = client.post(
        f"/api/clinics/{clinic_id}/bookings",
        json={
            "start_time": "2026-03-02T10:00:00",
            "end_time": "2026-03-02T11:00:00",
            "staff_id": aiko_id,
            "booked_by": "guest",
            "guest_name": "Hana",
        },
    )
    assert created.status_code == 201
    body = created.json()
    assert body["staff_id"] == aiko_id
    assert body["booked_by"] == "guest"
    assert body["start_time"].startswith("2026-03-02T01:00:00")

    conflict = client.post(
        f"/api/clinics/{clinic_id}/bookings",
        json={
            "start_time": "2026-03-02T10:15:00",
            "end_time": "2026-03-02T10:45:00",
            "staff_id": aiko_id,
        },
    )
    assert conflict.status_code == 409

    reversed_interval = client.post(
        f"/api/clinics/{clinic_id}/bookings",
        json={"start_time": "2026-03-02T11:00:00", "end_time": "2026-03-02T10:00:00"},
    )
    assert reversed_interval.status_code == 422

    cancelled = client.post(f"/api/clinics/{clinic_id}/bookings/{body['id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    missing = client.get(f"/api/clinics/{clinic_id}/bookings/9999")
    assert missing.status_code == 404


def test_internal_memo_is_kept_apart_from_notes(tmp_path):
    factory = make_session_factory(tmp_path)
    with factory() as db:
        clinic, aiko, _ = _seed(db)
        booking = create_booking(
            db,
            clinic.id,
            staff_id=aiko.id,
            start_time=datetime(2026, 3, 2, 10, 0),
            end_time=datetime(2026, 3, 2, 11, 0),
            notes="First visit",
            internal_memo="  allergic to latex  ",
        )
        assert booking.internal_memo == "allergic to latex"
        clinic_id, booking_id = clinic.id, booking.id
    client = make_client(factory)

    fetched = client.get(f"/api/clinics/{clinic_id}/bookings/{booking_id}")
    assert fetched.json()["notes"] == "First visit"
    assert fetched.json()["internal_memo"] == "allergic to latex"

    patched = client.patch(
        f"/api/clinics/{clinic_id}/bookings/{booking_id}",
        json={"internal_memo": "call before arrival"},
    )
    assert patched.status_code == 200
    assert patched.json()["internal_memo"] == "call before arrival"
    assert patched.json()["notes"] == "First visit"
