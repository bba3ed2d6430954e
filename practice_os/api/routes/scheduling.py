"""Scheduling API endpoints: availability, conflicts, slot divisions and booking."""

import datetime as dt
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from practice_os.api.dependencies import (
    get_appointment_store,
    get_availability_resolver,
    get_booking_orchestrator,
    get_conflict_detector,
    get_rule_store,
    get_tenant_context,
)
from practice_os.scheduling.availability import AvailabilityResolver
from practice_os.scheduling.booking import BookingOrchestrator
from practice_os.scheduling.conflicts import ConflictDetector
from practice_os.scheduling.division import DivisionState, SlotDivisionEngine
from practice_os.scheduling.errors import (
    AppointmentNotFoundError,
    ConfigurationError,
    DivisionError,
    IncompleteAssignmentError,
    InvalidTransitionError,
    InvalidWindow,
    SchedulingError,
    SlotNoLongerAvailableError,
)
from practice_os.scheduling.models import (
    Appointment,
    AppointmentDraft,
    AppointmentMode,
    AppointmentStatus,
    AvailabilitySnapshot,
    BlockedTime,
    ConflictReport,
    DateRange,
    SlotDivision,
    SlotDivisionPayload,
    TenantContext,
    WeeklyAvailabilityRule,
)
from practice_os.scheduling.stores import SqlAppointmentStore, SqlAvailabilityRuleStore
from practice_os.scheduling.timewindow import TimeWindow, WallClockTime, get_zone

router = APIRouter(prefix="/scheduling")


# ---------------------------------------------------------------------------
# Pydantic request/response schemas
# ---------------------------------------------------------------------------

class SlotDivisionIn(BaseModel):
    practitioner_id: uuid.UUID
    start_time: WallClockTime
    end_time: WallClockTime


class BookingRequest(BaseModel):
    practitioner_ids: list[uuid.UUID] = Field(min_length=1)
    primary_practitioner_id: Optional[uuid.UUID] = None
    location_id: Optional[uuid.UUID] = None
    mode: AppointmentMode = AppointmentMode.IN_PERSON
    date: dt.date
    start_time: WallClockTime
    end_time: Optional[WallClockTime] = Field(
        default=None, description="Defaults to one session after start_time"
    )
    status: AppointmentStatus = AppointmentStatus.PENDING
    patient_id: Optional[uuid.UUID] = None
    service_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    slot_divisions: Optional[list[SlotDivisionIn]] = None
    check_conflicts: bool = False
    acknowledge_conflicts: bool = False


class StatusUpdate(BaseModel):
    status: AppointmentStatus


class RescheduleRequest(BaseModel):
    date: dt.date
    start_time: WallClockTime
    end_time: Optional[WallClockTime] = Field(
        default=None, description="Defaults to the appointment's current length"
    )
    slot_divisions: Optional[list[SlotDivisionIn]] = None


class DivisionValidationRequest(BaseModel):
    practitioner_ids: list[uuid.UUID] = Field(min_length=1)
    date: dt.date
    start_time: WallClockTime
    end_time: WallClockTime
    divisions: list[SlotDivisionIn] = Field(default_factory=list)


class DivisionValidationResponse(BaseModel):
    state: DivisionState
    complete: bool
    missing_practitioners: list[uuid.UUID] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    divisions: list[SlotDivision] = Field(default_factory=list)


class AvailabilityRuleIn(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: WallClockTime
    end_time: WallClockTime
    modes: list[AppointmentMode] = Field(default_factory=lambda: list(AppointmentMode))
    effective_date: Optional[dt.date] = None
    expiry_date: Optional[dt.date] = None


class HoursUpdate(BaseModel):
    location_id: uuid.UUID
    rules: list[AvailabilityRuleIn]


class BlockedTimeIn(BaseModel):
    start: dt.datetime
    end: dt.datetime
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def error_status(exc: SchedulingError) -> int:
    if isinstance(exc, SlotNoLongerAvailableError):
        return 409
    if isinstance(exc, InvalidTransitionError):
        return 409
    if isinstance(exc, AppointmentNotFoundError):
        return 404
    if isinstance(exc, (ConfigurationError, DivisionError, InvalidWindow)):
        return 422
    return 400


def error_detail(exc: SchedulingError) -> Any:
    if isinstance(exc, SlotNoLongerAvailableError):
        return {
            "error": "slot_no_longer_available",
            "message": str(exc),
            "practitioner_ids": [str(p) for p in exc.practitioner_ids],
            "refetch_availability": True,
        }
    if isinstance(exc, IncompleteAssignmentError):
        return {
            "error": "incomplete_assignment",
            "message": str(exc),
            "missing_practitioners": [str(p) for p in exc.missing],
        }
    if isinstance(exc, DivisionError):
        return {
            "error": type(exc).__name__,
            "message": str(exc),
            "practitioner_id": str(exc.practitioner_id) if exc.practitioner_id else None,
        }
    return str(exc)


def _raise_http(exc: SchedulingError) -> None:
    raise HTTPException(status_code=error_status(exc), detail=error_detail(exc)) from exc


def _window(day: dt.date, start: dt.time, end: dt.time, tenant: TenantContext) -> TimeWindow:
    return TimeWindow(date=day, start_time=start, end_time=end, timezone=tenant.timezone)


def _division_payload(
    parent: TimeWindow,
    practitioner_ids: list[uuid.UUID],
    divisions: list[SlotDivisionIn],
) -> SlotDivisionPayload:
    """Run client-supplied divisions through the engine; raises on the first problem."""
    seen = [d.practitioner_id for d in divisions]
    if len(seen) != len(set(seen)):
        raise ConfigurationError("Each practitioner may have only one slot division")
    engine = SlotDivisionEngine(parent, practitioner_ids)
    for d in divisions:
        engine.set_division(
            d.practitioner_id,
            TimeWindow(
                date=parent.date,
                start_time=d.start_time,
                end_time=d.end_time,
                timezone=parent.timezone,
            ),
        )
    return engine.to_persistable_payload()


def _localize(value: dt.datetime, tenant: TenantContext) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=get_zone(tenant.timezone))
    return value


# ---------------------------------------------------------------------------
# Availability and conflicts
# ---------------------------------------------------------------------------

@router.get("/availability", response_model=AvailabilitySnapshot)
async def get_availability(
    practitioner_ids: list[uuid.UUID] = Query(...),
    start_date: dt.date = Query(...),
    end_date: dt.date = Query(...),
    mode: AppointmentMode = Query(AppointmentMode.IN_PERSON),
    location_id: Optional[uuid.UUID] = Query(None),
    tenant: TenantContext = Depends(get_tenant_context),
    resolver: AvailabilityResolver = Depends(get_availability_resolver),
) -> AvailabilitySnapshot:
    """Open slots per practitioner plus existing appointments in the range."""
    try:
        return await resolver.resolve(
            practitioner_ids,
            location_id,
            mode,
            DateRange(start=start_date, end=end_date),
            tenant,
        )
    except SchedulingError as e:
        _raise_http(e)


@router.get("/conflicts", response_model=ConflictReport)
async def get_conflicts(
    practitioner_ids: list[uuid.UUID] = Query(...),
    date: dt.date = Query(...),
    start_time: WallClockTime = Query(...),
    end_time: WallClockTime = Query(...),
    tenant: TenantContext = Depends(get_tenant_context),
    detector: ConflictDetector = Depends(get_conflict_detector),
) -> ConflictReport:
    """Advisory external-calendar conflicts for a candidate window."""
    try:
        return await detector.detect(_window(date, start_time, end_time, tenant), practitioner_ids)
    except SchedulingError as e:
        _raise_http(e)


# ---------------------------------------------------------------------------
# Slot divisions
# ---------------------------------------------------------------------------

@router.post("/slot-divisions/validate", response_model=DivisionValidationResponse)
async def validate_slot_divisions(
    body: DivisionValidationRequest,
    tenant: TenantContext = Depends(get_tenant_context),
) -> DivisionValidationResponse:
    """Authoritative check of a draft division set; reports every problem at once."""
    try:
        engine = SlotDivisionEngine(
            _window(body.date, body.start_time, body.end_time, tenant), body.practitioner_ids
        )
    except SchedulingError as e:
        _raise_http(e)

    errors: dict[str, str] = {}
    for d in body.divisions:
        key = str(d.practitioner_id)
        if key in errors or d.practitioner_id in engine.divisions:
            errors[key] = "Each practitioner may have only one slot division"
            continue
        try:
            engine.set_division(
                d.practitioner_id, _window(body.date, d.start_time, d.end_time, tenant)
            )
        except SchedulingError as e:
            errors[key] = str(e)

    complete = engine.is_complete() and not errors
    return DivisionValidationResponse(
        state=engine.state,
        complete=complete,
        missing_practitioners=engine.missing_practitioners(),
        errors=errors,
        divisions=[SlotDivision.from_window(pid, w) for pid, w in engine.divisions.items()],
    )


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@router.post("/appointments", response_model=Appointment, status_code=201)
async def book_appointment(
    body: BookingRequest,
    tenant: TenantContext = Depends(get_tenant_context),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    detector: ConflictDetector = Depends(get_conflict_detector),
) -> Appointment:
    """Book an appointment, optionally divided among its practitioners."""
    try:
        if body.end_time is None:
            window = TimeWindow.for_session(
                body.date, body.start_time, tenant.session_minutes, tenant.timezone
            )
        else:
            window = _window(body.date, body.start_time, body.end_time, tenant)

        draft = AppointmentDraft(
            practitioner_ids=body.practitioner_ids,
            primary_practitioner_id=body.primary_practitioner_id,
            location_id=body.location_id,
            mode=body.mode,
            window=window,
            status=body.status,
            patient_id=body.patient_id,
            service_id=body.service_id,
            notes=body.notes,
        )
        divisions = None
        if body.slot_divisions:
            divisions = _division_payload(window, draft.practitioner_ids, body.slot_divisions)

        if body.check_conflicts and not body.acknowledge_conflicts:
            report = await detector.detect(window, draft.practitioner_ids)
            if report.has_conflicts:
                raise HTTPException(
                    status_code=409,
                    detail={
                        "error": "external_calendar_conflict",
                        "requires_acknowledgement": True,
                        "report": report.model_dump(mode="json"),
                    },
                )

        return await orchestrator.book(draft, divisions)
    except SchedulingError as e:
        _raise_http(e)


@router.get("/appointments/{appointment_id}", response_model=Appointment)
async def get_appointment(
    appointment_id: uuid.UUID,
    store: SqlAppointmentStore = Depends(get_appointment_store),
) -> Appointment:
    appointment = await store.get(appointment_id)
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appointment


@router.post("/appointments/{appointment_id}/status", response_model=Appointment)
async def update_appointment_status(
    appointment_id: uuid.UUID,
    body: StatusUpdate,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> Appointment:
    """Move an appointment along its lifecycle; cancelling frees the slot."""
    try:
        return await orchestrator.transition(appointment_id, body.status)
    except SchedulingError as e:
        _raise_http(e)


@router.put("/appointments/{appointment_id}/time", response_model=Appointment)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    body: RescheduleRequest,
    tenant: TenantContext = Depends(get_tenant_context),
    store: SqlAppointmentStore = Depends(get_appointment_store),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> Appointment:
    """Move an appointment; its own current time never blocks the move."""
    current = await store.get(appointment_id)
    if not current:
        raise HTTPException(status_code=404, detail="Appointment not found")

    try:
        if body.end_time is None:
            window = TimeWindow.for_session(
                body.date,
                body.start_time,
                current.window.duration_minutes(),
                tenant.timezone,
            )
        else:
            window = _window(body.date, body.start_time, body.end_time, tenant)

        divisions = None
        if body.slot_divisions:
            divisions = _division_payload(window, current.practitioner_ids, body.slot_divisions)

        return await orchestrator.reschedule(appointment_id, window, divisions)
    except SchedulingError as e:
        _raise_http(e)


# ---------------------------------------------------------------------------
# Practitioner hours and blocked time
# ---------------------------------------------------------------------------

@router.get("/practitioners/{practitioner_id}/hours", response_model=list[WeeklyAvailabilityRule])
async def get_practitioner_hours(
    practitioner_id: uuid.UUID,
    location_id: Optional[uuid.UUID] = Query(None),
    rules: SqlAvailabilityRuleStore = Depends(get_rule_store),
) -> list[WeeklyAvailabilityRule]:
    return await rules.list_rules(practitioner_id, location_id)


@router.put("/practitioners/{practitioner_id}/hours", response_model=list[WeeklyAvailabilityRule])
async def set_practitioner_hours(
    practitioner_id: uuid.UUID,
    body: HoursUpdate,
    rules: SqlAvailabilityRuleStore = Depends(get_rule_store),
) -> list[WeeklyAvailabilityRule]:
    """Replace a practitioner's weekly hours at one location."""
    try:
        replacement = [
            WeeklyAvailabilityRule(
                practitioner_id=practitioner_id,
                location_id=body.location_id,
                day_of_week=r.day_of_week,
                start_time=r.start_time,
                end_time=r.end_time,
                modes=frozenset(r.modes),
                effective_date=r.effective_date,
                expiry_date=r.expiry_date,
            )
            for r in body.rules
        ]
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        return await rules.replace_rules(practitioner_id, body.location_id, replacement)
    except SchedulingError as e:
        _raise_http(e)


@router.post("/practitioners/{practitioner_id}/blocked-time", response_model=BlockedTime, status_code=201)
async def add_blocked_time(
    practitioner_id: uuid.UUID,
    body: BlockedTimeIn,
    tenant: TenantContext = Depends(get_tenant_context),
    rules: SqlAvailabilityRuleStore = Depends(get_rule_store),
) -> BlockedTime:
    """Block out time (leave, meetings); it removes availability like a booking."""
    try:
        blocked = BlockedTime(
            practitioner_id=practitioner_id,
            start=_localize(body.start, tenant),
            end=_localize(body.end, tenant),
            reason=body.reason,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return await rules.add_blocked_time(blocked)
