from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationGap
from .timeutil import normalize_wall_time


def _wall_time(value: str) -> str:
    try:
        return normalize_wall_time(value)
    except ValidationGap as exc:
        raise ValueError(exc.message) from exc


class DayTemplate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: str = "09:00"
    end: str = "18:00"
    is_closed: bool = Field(default=False, alias="isClosed")

    @field_validator("start", "end")
    @classmethod
    def validate_wall_time(cls, value: str) -> str:
        return _wall_time(value)


class MenuItem(BaseModel):
    id: str = Field(min_length=1, max_length=80)
    name: str = Field(min_length=1, max_length=160)
    price: float | None = Field(default=None, ge=0)
    duration: int | None = Field(default=None, gt=0, le=720)
    description: str | None = Field(default=None, max_length=1000)


def _templates_to_store(templates: dict[str, DayTemplate] | None) -> dict | None:
    if templates is None:
        return None
    return {key: tpl.model_dump(by_alias=True) for key, tpl in templates.items()}


class ClinicCreate(BaseModel):
    name: str = Field(min_length=2, max_length=160)
    description: str | None = Field(default=None, max_length=2000)
    owner_uid: str | None = Field(default=None, max_length=120)
    timezone: str | None = Field(default=None, max_length=64)
    business_hours: dict[str, DayTemplate] | None = None
    menu_items: list[MenuItem] = Field(default_factory=list)

    def to_fields(self) -> dict:
        fields = self.model_dump(exclude_none=True, exclude={"name", "business_hours"})
        if self.business_hours is not None:
            fields["business_hours"] = _templates_to_store(self.business_hours)
        return fields


class ClinicUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=160)
    description: str | None = Field(default=None, max_length=2000)
    timezone: str | None = Field(default=None, max_length=64)
    business_hours: dict[str, DayTemplate] | None = None
    menu_items: list[MenuItem] | None = None

    def to_changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True, exclude={"business_hours"})
        if "business_hours" in self.model_fields_set:
            changes["business_hours"] = _templates_to_store(self.business_hours)
        return changes


class ClinicOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    owner_uid: str | None = None
    status: str
    timezone: str
    business_hours: dict | None = None
    menu_items: list = Field(default_factory=list)
    created_at: datetime


class ClinicStatusUpdate(BaseModel):
    status: str


class StaffCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    role: str | None = Field(default=None, max_length=80)
    image_url: str | None = Field(default=None, max_length=500)
    default_schedule: dict[str, DayTemplate] | None = None
    skill_ids: list[str] = Field(default_factory=list)

    def to_fields(self) -> dict:
        fields = self.model_dump(exclude_none=True, exclude={"name", "default_schedule"})
        if self.default_schedule is not None:
            fields["default_schedule"] = _templates_to_store(self.default_schedule)
        return fields


class StaffUpdate(BaseModel):
    role: str | None = Field(default=None, max_length=80)
    image_url: str | None = Field(default=None, max_length=500)
    default_schedule: dict[str, DayTemplate] | None = None
    skill_ids: list[str] | None = None

    def to_changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True, exclude={"default_schedule"})
        if "default_schedule" in self.model_fields_set:
            changes["default_schedule"] = _templates_to_store(self.default_schedule)
        return changes


class StaffOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    name: str
    role: str | None = None
    image_url: str | None = None
    default_schedule: dict | None = None
    skill_ids: list = Field(default_factory=list)
    is_active: bool


class AvailabilityQuery(BaseModel):
    start_time: datetime
    end_time: datetime
    staff_id: int | None = None
    menu_item_id: str | None = None


class AvailabilityOut(BaseModel):
    staff_id: int
    available: bool


class AvailableStaffOut(BaseModel):
    staff_ids: list[int]


class SlotOut(BaseModel):
    time: str
    start_time: datetime
    end_time: datetime
    available_staff_ids: list[int]
    mark: str


class BookingCreate(BaseModel):
    start_time: datetime
    end_time: datetime | None = None
    staff_id: int | None = None
    menu_item_id: str | None = Field(default=None, max_length=80)
    user_id: str | None = Field(default=None, max_length=120)
    booked_by: str = "user"
    status: str | None = None
    notes: str | None = Field(default=None, max_length=1000)
    internal_memo: str | None = Field(default=None, max_length=1000)
    guest_name: str | None = Field(default=None, max_length=120)
    guest_email: str | None = Field(default=None, max_length=160)
    guest_contact: str | None = Field(default=None, max_length=40)


class BookingUpdate(BaseModel):
    staff_id: int | None = None
    status: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = Field(default=None, max_length=1000)
    internal_memo: str | None = Field(default=None, max_length=1000)
    guest_name: str | None = Field(default=None, max_length=120)
    guest_email: str | None = Field(default=None, max_length=160)
    guest_contact: str | None = Field(default=None, max_length=40)
    menu_item_id: str | None = Field(default=None, max_length=80)
    booked_by: str | None = None


class BookingReschedule(BaseModel):
    start_time: datetime
    end_time: datetime
    staff_id: int | None = None


class BookingOut(BaseModel):
    """Booking as returned by the API; times are UTC."""

    id: int
    clinic_id: int
    user_id: str | None = None
    staff_id: int
    booked_by: str
    status: str
    start_time: datetime
    end_time: datetime
    notes: str | None = None
    internal_memo: str | None = None
    guest_name: str | None = None
    guest_email: str | None = None
    guest_contact: str | None = None
    menu_item_id: str | None = None
    created_at: datetime


class ShiftOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    staff_id: int
    day: date = Field(serialization_alias="date")
    start_time: str
    end_time: str
    is_holiday: bool


class ShiftDraftEntry(BaseModel):
    id: int | str | None = None
    staff_id: int
    day: date | None = Field(default=None, alias="date")
    start_time: str
    end_time: str
    is_holiday: bool = False
    source: str | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_wall_time(cls, value: str) -> str:
        return _wall_time(value)


class ShiftDraftSave(BaseModel):
    entries: list[ShiftDraftEntry]


class ShiftRequestCreate(BaseModel):
    staff_id: int
    day: date = Field(alias="date")
    start_time: str
    end_time: str
    is_holiday: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_wall_time(cls, value: str) -> str:
        return _wall_time(value)


class ShiftRequestDay(BaseModel):
    day: date = Field(alias="date")
    start_time: str | None = None
    end_time: str | None = None
    is_holiday: bool = False


class MonthSubmission(BaseModel):
    staff_id: int
    year: int = Field(ge=2000, le=2100)
    month: int = Field(ge=1, le=12)
    days: list[ShiftRequestDay] = Field(default_factory=list)


class ShiftRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    staff_id: int
    day: date = Field(serialization_alias="date")
    start_time: str
    end_time: str
    is_holiday: bool
    status: str
    created_at: datetime
    decided_at: datetime | None = None
    decided_by: str | None = None


class BulkApproveIn(BaseModel):
    request_ids: list[int] = Field(min_length=1, max_length=500)


class BulkApproveOut(BaseModel):
    approved: list[int]


class RangeDeleteOut(BaseModel):
    deleted: int
