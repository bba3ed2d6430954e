"""Pydantic models for the scheduling core."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Iterator, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from practice_os.scheduling.timewindow import TimeWindow


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class AppointmentMode(str, Enum):
    """How the session is delivered."""

    IN_PERSON = "in-person"
    VIRTUAL = "virtual"
    HYBRID = "hybrid"


class AppointmentStatus(str, Enum):
    """Appointment lifecycle statuses."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"

    @property
    def is_blocking(self) -> bool:
        return self in BLOCKING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


# Statuses that occupy a practitioner's time.
BLOCKING_STATUSES = frozenset(
    {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED}
)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.DECLINED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.DECLINED: frozenset(),
}


class TenantContext(BaseModel):
    """Per-request tenant scheduling parameters."""

    timezone: str = "UTC"
    session_minutes: int = Field(default=30, gt=0)


class DateRange(BaseModel):
    """Inclusive range of calendar dates."""

    start: dt.date
    end: dt.date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def dates(self) -> Iterator[dt.date]:
        current = self.start
        while current <= self.end:
            yield current
            current += dt.timedelta(days=1)


# ----------------------------------------------------------------------
# Availability inputs
# ----------------------------------------------------------------------


class WeeklyAvailabilityRule(BaseModel):
    """Recurring weekly hours for one (practitioner, location) pair."""

    id: Optional[uuid.UUID] = None
    practitioner_id: uuid.UUID
    location_id: uuid.UUID
    day_of_week: int = Field(ge=0, le=6, description="0=Mon..6=Sun")
    start_time: dt.time
    end_time: dt.time
    modes: frozenset[AppointmentMode] = frozenset(AppointmentMode)
    effective_date: Optional[dt.date] = None
    expiry_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def _check_hours(self) -> "WeeklyAvailabilityRule":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        if self.effective_date and self.expiry_date and self.expiry_date < self.effective_date:
            raise ValueError("expiry_date must not precede effective_date")
        return self

    def serves(self, mode: AppointmentMode) -> bool:
        return mode in self.modes

    def applies_on(self, day: dt.date) -> bool:
        if day.weekday() != self.day_of_week:
            return False
        if self.effective_date and day < self.effective_date:
            return False
        if self.expiry_date and day > self.expiry_date:
            return False
        return True


class BlockedTime(BaseModel):
    """Practitioner time-off; removes availability like a booking does."""

    id: Optional[uuid.UUID] = None
    practitioner_id: uuid.UUID
    start: dt.datetime
    end: dt.datetime
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_order(self) -> "BlockedTime":
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class ExistingAppointment(BaseModel):
    """One practitioner's share of a stored appointment."""

    appointment_id: uuid.UUID
    practitioner_id: uuid.UUID
    start: dt.datetime
    end: dt.datetime
    status: AppointmentStatus
    is_primary: bool = False

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def is_blocking(self) -> bool:
        return self.status.is_blocking


class AvailabilitySnapshot(BaseModel):
    """Open slots per practitioner plus the bookings touching the range."""

    slots: dict[uuid.UUID, list[TimeWindow]] = Field(default_factory=dict)
    existing_appointments: list[ExistingAppointment] = Field(default_factory=list)
    timezone: str
    session_minutes: int
    date_range: DateRange
    generated_at: dt.datetime = Field(default_factory=_utcnow)


# ----------------------------------------------------------------------
# External calendar conflicts
# ----------------------------------------------------------------------


class CalendarEvent(BaseModel):
    """A busy block from a practitioner's external calendar."""

    title: str = "Busy"
    start: dt.datetime
    end: dt.datetime


class ExternalCalendarConflict(BaseModel):
    practitioner_id: uuid.UUID
    practitioner_name: str
    conflicting_events: list[CalendarEvent] = Field(default_factory=list)


class ConflictReport(BaseModel):
    """Advisory result of an external-calendar check.

    ``undetermined`` lists practitioners whose calendar could not be read;
    practitioners without a connected calendar appear in neither list.
    """

    window: TimeWindow
    conflicts: list[ExternalCalendarConflict] = Field(default_factory=list)
    undetermined: list[uuid.UUID] = Field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


# ----------------------------------------------------------------------
# Slot divisions
# ----------------------------------------------------------------------


class SlotDivision(BaseModel):
    """A practitioner-specific sub-window of an appointment slot."""

    practitioner_id: uuid.UUID
    start_time: dt.time
    end_time: dt.time
    duration_minutes: int = Field(gt=0)

    @model_validator(mode="after")
    def _check_duration(self) -> "SlotDivision":
        start = dt.datetime.combine(dt.date.min, self.start_time)
        end = dt.datetime.combine(dt.date.min, self.end_time)
        actual = int((end - start).total_seconds() // 60)
        if actual != self.duration_minutes:
            raise ValueError(
                f"duration_minutes={self.duration_minutes} does not match "
                f"{self.start_time}-{self.end_time} ({actual} min)"
            )
        return self

    def window(self, parent: TimeWindow) -> TimeWindow:
        return TimeWindow(
            date=parent.date,
            start_time=self.start_time,
            end_time=self.end_time,
            timezone=parent.timezone,
        )

    @classmethod
    def from_window(cls, practitioner_id: uuid.UUID, window: TimeWindow) -> "SlotDivision":
        return cls(
            practitioner_id=practitioner_id,
            start_time=window.start_time,
            end_time=window.end_time,
            duration_minutes=window.duration_minutes(),
        )


class SlotDivisionPayload(BaseModel):
    """A complete, validated set of divisions ready to persist."""

    parent: TimeWindow
    divisions: list[SlotDivision]

    def by_practitioner(self) -> dict[uuid.UUID, SlotDivision]:
        return {d.practitioner_id: d for d in self.divisions}


# ----------------------------------------------------------------------
# Appointments
# ----------------------------------------------------------------------


class AppointmentDraft(BaseModel):
    """Caller-supplied fields for a new appointment."""

    practitioner_ids: list[uuid.UUID] = Field(min_length=1)
    primary_practitioner_id: Optional[uuid.UUID] = None
    location_id: Optional[uuid.UUID] = None
    mode: AppointmentMode
    window: TimeWindow
    status: AppointmentStatus = AppointmentStatus.PENDING
    patient_id: Optional[uuid.UUID] = None
    service_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None

    @field_validator("practitioner_ids")
    @classmethod
    def _dedupe(cls, value: list[uuid.UUID]) -> list[uuid.UUID]:
        return list(dict.fromkeys(value))

    @property
    def primary_id(self) -> uuid.UUID:
        return self.primary_practitioner_id or self.practitioner_ids[0]


class PractitionerAssignment(BaseModel):
    """A practitioner linked to an appointment, with their time segment."""

    practitioner_id: uuid.UUID
    start: dt.datetime
    end: dt.datetime
    is_primary: bool = False


class Appointment(BaseModel):
    """A persisted appointment with its practitioner links and divisions."""

    id: uuid.UUID
    practitioner_ids: list[uuid.UUID]
    primary_practitioner_id: uuid.UUID
    location_id: Optional[uuid.UUID] = None
    mode: AppointmentMode
    window: TimeWindow
    status: AppointmentStatus
    patient_id: Optional[uuid.UUID] = None
    service_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    practitioners: list[PractitionerAssignment] = Field(default_factory=list)
    slot_divisions: list[SlotDivision] = Field(default_factory=list)
    created_at: dt.datetime = Field(default_factory=_utcnow)
    updated_at: dt.datetime = Field(default_factory=_utcnow)

    @property
    def is_divided(self) -> bool:
        return bool(self.slot_divisions)
