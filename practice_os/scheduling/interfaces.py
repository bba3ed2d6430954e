"""Collaborator interfaces consumed by the scheduling core.

Implementations live in ``practice_os.scheduling.stores`` (relational and
in-process) and ``practice_os.integrations`` (external services).
"""

from __future__ import annotations

import datetime as dt
import uuid
from contextlib import AbstractAsyncContextManager
from typing import Iterable, Optional, Protocol, Sequence

from practice_os.scheduling.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    BlockedTime,
    CalendarEvent,
    ExistingAppointment,
    PractitionerAssignment,
    SlotDivision,
    WeeklyAvailabilityRule,
)
from practice_os.scheduling.timewindow import TimeWindow


class AvailabilityRuleStore(Protocol):
    async def list_rules(
        self, practitioner_id: uuid.UUID, location_id: Optional[uuid.UUID] = None
    ) -> Sequence[WeeklyAvailabilityRule]: ...

    async def replace_rules(
        self,
        practitioner_id: uuid.UUID,
        location_id: uuid.UUID,
        rules: Iterable[WeeklyAvailabilityRule],
    ) -> Sequence[WeeklyAvailabilityRule]: ...

    async def list_blocked_time(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> Sequence[BlockedTime]: ...

    async def add_blocked_time(self, blocked: BlockedTime) -> BlockedTime: ...


class BookingTransaction(Protocol):
    """Operations available inside one all-or-nothing booking write."""

    async def find_overlapping(
        self,
        practitioner_id: uuid.UUID,
        start: dt.datetime,
        end: dt.datetime,
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> Sequence[ExistingAppointment]: ...

    async def find_blocked_time(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> Sequence[BlockedTime]: ...

    async def insert_appointment(
        self,
        draft: AppointmentDraft,
        assignments: Sequence[PractitionerAssignment],
        divisions: Sequence[SlotDivision],
    ) -> Appointment: ...

    async def reschedule_appointment(
        self,
        appointment_id: uuid.UUID,
        window: TimeWindow,
        assignments: Sequence[PractitionerAssignment],
        divisions: Sequence[SlotDivision],
    ) -> Appointment: ...

    async def get_appointment(self, appointment_id: uuid.UUID) -> Optional[Appointment]: ...

    async def set_status(
        self, appointment_id: uuid.UUID, status: AppointmentStatus
    ) -> Appointment: ...


class AppointmentStore(Protocol):
    async def list_for_practitioner(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> Sequence[ExistingAppointment]: ...

    async def get(self, appointment_id: uuid.UUID) -> Optional[Appointment]: ...

    def transaction(self) -> AbstractAsyncContextManager[BookingTransaction]: ...


class ExternalCalendarGateway(Protocol):
    async def is_connected(self, practitioner_id: uuid.UUID) -> bool: ...

    async def busy_events(
        self, practitioner_id: uuid.UUID, window: TimeWindow
    ) -> Sequence[CalendarEvent]: ...


class NotificationDispatcher(Protocol):
    async def booking_created(self, appointment: Appointment) -> None: ...


class PractitionerDirectory(Protocol):
    async def display_names(
        self, practitioner_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, str]: ...
