"""Store implementations: SQLAlchemy-backed and in-process.

SQL stores take an ``async_sessionmaker``; reads open their own short
sessions so per-practitioner lookups can run concurrently, while a booking
runs inside one session and one transaction.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from practice_os.core.models import (
    AppointmentDB,
    AppointmentPractitionerDB,
    AvailabilityRuleDB,
    BlockedTimeDB,
    SlotDivisionDB,
)
from practice_os.core.repository import (
    AppointmentRepository,
    AvailabilityRuleRepository,
    BlockedTimeRepository,
    PractitionerRepository,
    to_utc,
)
from practice_os.scheduling.errors import ConfigurationError, SlotNoLongerAvailableError
from practice_os.scheduling.models import (
    Appointment,
    AppointmentDraft,
    AppointmentMode,
    AppointmentStatus,
    BlockedTime,
    ExistingAppointment,
    PractitionerAssignment,
    SlotDivision,
    WeeklyAvailabilityRule,
)
from practice_os.scheduling.timewindow import TimeWindow, to_timezone

logger = logging.getLogger(__name__)

EXCLUSION_CONSTRAINT = "ex_appointment_practitioners_no_overlap"


def validate_weekly_rules(
    practitioner_id: uuid.UUID,
    location_id: uuid.UUID,
    rules: Iterable[WeeklyAvailabilityRule],
) -> list[WeeklyAvailabilityRule]:
    """Check a replacement rule set for one practitioner at one location.

    Rules must belong to that pair and must not overlap on the same weekday.
    """
    checked = sorted(rules, key=lambda r: (r.day_of_week, r.start_time))
    previous: Optional[WeeklyAvailabilityRule] = None
    for rule in checked:
        if rule.practitioner_id != practitioner_id or rule.location_id != location_id:
            raise ConfigurationError(
                "Availability rules must belong to the practitioner and location being updated"
            )
        if (
            previous is not None
            and previous.day_of_week == rule.day_of_week
            and rule.start_time < previous.end_time
        ):
            raise ConfigurationError(
                f"Availability rules overlap on day {rule.day_of_week}: "
                f"{previous.start_time}-{previous.end_time} and {rule.start_time}-{rule.end_time}"
            )
        previous = rule
    return checked


# ----------------------------------------------------------------------
# Row <-> domain conversion
# ----------------------------------------------------------------------


def _rule_from_row(row: AvailabilityRuleDB) -> WeeklyAvailabilityRule:
    return WeeklyAvailabilityRule(
        id=row.id,
        practitioner_id=row.practitioner_id,
        location_id=row.location_id,
        day_of_week=row.day_of_week,
        start_time=row.start_time,
        end_time=row.end_time,
        modes=frozenset(AppointmentMode(m) for m in (row.modes or [])),
        effective_date=row.effective_date,
        expiry_date=row.expiry_date,
    )


def _blocked_from_row(row: BlockedTimeDB) -> BlockedTime:
    return BlockedTime(
        id=row.id,
        practitioner_id=row.practitioner_id,
        start=to_utc(row.start_time),
        end=to_utc(row.end_time),
        reason=row.reason,
    )


def _existing_from_link(link: AppointmentPractitionerDB, status: str) -> ExistingAppointment:
    return ExistingAppointment(
        appointment_id=link.appointment_id,
        practitioner_id=link.practitioner_id,
        start=to_utc(link.start_time),
        end=to_utc(link.end_time),
        status=AppointmentStatus(status),
        is_primary=link.is_primary,
    )


def _appointment_from_row(row: AppointmentDB) -> Appointment:
    tz_name = row.timezone
    links = sorted(row.practitioners, key=lambda link: (not link.is_primary, str(link.practitioner_id)))
    primary = next((link.practitioner_id for link in links if link.is_primary), links[0].practitioner_id)
    return Appointment(
        id=row.id,
        practitioner_ids=[link.practitioner_id for link in links],
        primary_practitioner_id=primary,
        location_id=row.location_id,
        mode=AppointmentMode(row.mode),
        window=TimeWindow.from_datetimes(row.start_time, row.end_time, tz_name),
        status=AppointmentStatus(row.status),
        patient_id=row.patient_id,
        service_id=row.service_id,
        notes=row.notes,
        practitioners=[
            PractitionerAssignment(
                practitioner_id=link.practitioner_id,
                start=to_timezone(link.start_time, tz_name),
                end=to_timezone(link.end_time, tz_name),
                is_primary=link.is_primary,
            )
            for link in links
        ],
        slot_divisions=[
            SlotDivision(
                practitioner_id=d.practitioner_id,
                start_time=d.start_time,
                end_time=d.end_time,
                duration_minutes=d.duration_minutes,
            )
            for d in sorted(row.slot_divisions, key=lambda d: (d.start_time, str(d.practitioner_id)))
        ],
        created_at=to_utc(row.created_at),
        updated_at=to_utc(row.updated_at),
    )


# ----------------------------------------------------------------------
# SQL stores
# ----------------------------------------------------------------------


class SqlAvailabilityRuleStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    async def list_rules(
        self, practitioner_id: uuid.UUID, location_id: Optional[uuid.UUID] = None
    ) -> list[WeeklyAvailabilityRule]:
        async with self._factory() as session:
            rows = await AvailabilityRuleRepository(session).list_for_practitioner(
                practitioner_id, location_id
            )
            return [_rule_from_row(r) for r in rows]

    async def replace_rules(
        self,
        practitioner_id: uuid.UUID,
        location_id: uuid.UUID,
        rules: Iterable[WeeklyAvailabilityRule],
    ) -> list[WeeklyAvailabilityRule]:
        checked = validate_weekly_rules(practitioner_id, location_id, rules)
        async with self._factory() as session:
            async with session.begin():
                repo = AvailabilityRuleRepository(session)
                await repo.delete_for(practitioner_id, location_id)
                created = [
                    await repo.create(
                        practitioner_id=practitioner_id,
                        location_id=location_id,
                        day_of_week=rule.day_of_week,
                        start_time=rule.start_time,
                        end_time=rule.end_time,
                        modes=sorted(m.value for m in rule.modes),
                        effective_date=rule.effective_date,
                        expiry_date=rule.expiry_date,
                    )
                    for rule in checked
                ]
            logger.info(
                "Replaced availability for practitioner %s at %s: %d rule(s)",
                practitioner_id,
                location_id,
                len(created),
            )
            return [_rule_from_row(r) for r in created]

    async def list_blocked_time(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> list[BlockedTime]:
        async with self._factory() as session:
            rows = await BlockedTimeRepository(session).list_overlapping(practitioner_id, start, end)
            return [_blocked_from_row(r) for r in rows]

    async def add_blocked_time(self, blocked: BlockedTime) -> BlockedTime:
        async with self._factory() as session:
            async with session.begin():
                row = await BlockedTimeRepository(session).create(
                    practitioner_id=blocked.practitioner_id,
                    start_time=blocked.start,
                    end_time=blocked.end,
                    reason=blocked.reason,
                )
            return _blocked_from_row(row)


class _SqlBookingTransaction:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.appointments = AppointmentRepository(session)
        self.blocked = BlockedTimeRepository(session)
        self.written_practitioners: list[uuid.UUID] = []

    async def find_overlapping(
        self,
        practitioner_id: uuid.UUID,
        start: dt.datetime,
        end: dt.datetime,
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> list[ExistingAppointment]:
        rows = await self.appointments.list_links(
            practitioner_id,
            start,
            end,
            active_only=True,
            exclude_appointment_id=exclude_appointment_id,
        )
        return [_existing_from_link(link, status) for link, status in rows]

    async def find_blocked_time(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> list[BlockedTime]:
        rows = await self.blocked.list_overlapping(practitioner_id, start, end)
        return [_blocked_from_row(r) for r in rows]

    async def insert_appointment(
        self,
        draft: AppointmentDraft,
        assignments: Sequence[PractitionerAssignment],
        divisions: Sequence[SlotDivision],
    ) -> Appointment:
        self.written_practitioners = [a.practitioner_id for a in assignments]
        row = await self.appointments.create(
            location_id=draft.location_id,
            patient_id=draft.patient_id,
            service_id=draft.service_id,
            mode=draft.mode.value,
            appointment_date=draft.window.date,
            start_time=draft.window.start,
            end_time=draft.window.end,
            timezone=draft.window.timezone,
            status=draft.status.value,
            notes=draft.notes,
            practitioners=[
                AppointmentPractitionerDB(
                    practitioner_id=a.practitioner_id,
                    start_time=to_utc(a.start),
                    end_time=to_utc(a.end),
                    is_primary=a.is_primary,
                    is_active=draft.status.is_blocking,
                )
                for a in assignments
            ],
            slot_divisions=[
                SlotDivisionDB(
                    practitioner_id=d.practitioner_id,
                    start_time=d.start_time,
                    end_time=d.end_time,
                    duration_minutes=d.duration_minutes,
                )
                for d in divisions
            ],
        )
        return _appointment_from_row(row)

    async def reschedule_appointment(
        self,
        appointment_id: uuid.UUID,
        window: TimeWindow,
        assignments: Sequence[PractitionerAssignment],
        divisions: Sequence[SlotDivision],
    ) -> Appointment:
        self.written_practitioners = [a.practitioner_id for a in assignments]
        row = await self.appointments.reschedule(
            appointment_id,
            appointment_date=window.date,
            start_time=window.start,
            end_time=window.end,
            tz_name=window.timezone,
            segments={a.practitioner_id: (a.start, a.end) for a in assignments},
            slot_divisions=[
                SlotDivisionDB(
                    practitioner_id=d.practitioner_id,
                    start_time=d.start_time,
                    end_time=d.end_time,
                    duration_minutes=d.duration_minutes,
                )
                for d in divisions
            ],
        )
        if row is None:
            raise LookupError(f"Appointment {appointment_id} disappeared mid-transaction")
        return _appointment_from_row(row)

    async def get_appointment(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        row = await self.appointments.get_by_id(appointment_id)
        return _appointment_from_row(row) if row else None

    async def set_status(self, appointment_id: uuid.UUID, status: AppointmentStatus) -> Appointment:
        row = await self.appointments.update_status(
            appointment_id, status.value, active=status.is_blocking
        )
        if row is None:
            raise LookupError(f"Appointment {appointment_id} disappeared mid-transaction")
        return _appointment_from_row(row)


class SqlAppointmentStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    async def list_for_practitioner(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> list[ExistingAppointment]:
        async with self._factory() as session:
            rows = await AppointmentRepository(session).list_links(practitioner_id, start, end)
            return [_existing_from_link(link, status) for link, status in rows]

    async def get(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        async with self._factory() as session:
            row = await AppointmentRepository(session).get_by_id(appointment_id)
            return _appointment_from_row(row) if row else None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SqlBookingTransaction]:
        async with self._factory() as session:
            tx = _SqlBookingTransaction(session)
            try:
                async with session.begin():
                    yield tx
            except IntegrityError as e:
                if EXCLUSION_CONSTRAINT not in str(e.orig):
                    raise
                logger.warning("Overlap rejected by the database at commit: %s", e.orig)
                raise SlotNoLongerAvailableError(tx.written_practitioners) from e


class SqlPractitionerDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    async def display_names(self, practitioner_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, str]:
        async with self._factory() as session:
            rows = await PractitionerRepository(session).get_many(practitioner_ids)
            return {p.id: p.display_name for p in rows}


# ----------------------------------------------------------------------
# In-process stores
# ----------------------------------------------------------------------


class InMemoryAvailabilityRuleStore:
    """Process-local rule and blocked-time store."""

    def __init__(self, rules: Iterable[WeeklyAvailabilityRule] = ()):
        self._rules: dict[tuple[uuid.UUID, uuid.UUID], list[WeeklyAvailabilityRule]] = defaultdict(list)
        self._blocked: list[BlockedTime] = []
        for rule in rules:
            self._rules[(rule.practitioner_id, rule.location_id)].append(rule)

    async def list_rules(
        self, practitioner_id: uuid.UUID, location_id: Optional[uuid.UUID] = None
    ) -> list[WeeklyAvailabilityRule]:
        return [
            rule
            for (pid, loc), rules in self._rules.items()
            if pid == practitioner_id and (location_id is None or loc == location_id)
            for rule in rules
        ]

    async def replace_rules(
        self,
        practitioner_id: uuid.UUID,
        location_id: uuid.UUID,
        rules: Iterable[WeeklyAvailabilityRule],
    ) -> list[WeeklyAvailabilityRule]:
        checked = [
            rule.model_copy(update={"id": rule.id or uuid.uuid4()})
            for rule in validate_weekly_rules(practitioner_id, location_id, rules)
        ]
        self._rules[(practitioner_id, location_id)] = checked
        return list(checked)

    async def list_blocked_time(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> list[BlockedTime]:
        return [
            b
            for b in self._blocked
            if b.practitioner_id == practitioner_id and b.start < end and start < b.end
        ]

    async def add_blocked_time(self, blocked: BlockedTime) -> BlockedTime:
        stored = blocked.model_copy(update={"id": blocked.id or uuid.uuid4()})
        self._blocked.append(stored)
        return stored


class _InMemoryBookingTransaction:
    def __init__(self, store: "InMemoryAppointmentStore"):
        self._store = store
        self.staged: dict[uuid.UUID, Appointment] = {}

    def _current(self) -> dict[uuid.UUID, Appointment]:
        return {**self._store._appointments, **self.staged}

    async def find_overlapping(
        self,
        practitioner_id: uuid.UUID,
        start: dt.datetime,
        end: dt.datetime,
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> list[ExistingAppointment]:
        return [
            existing
            for existing in self._store._links(self._current().values(), practitioner_id, start, end)
            if existing.is_blocking and existing.appointment_id != exclude_appointment_id
        ]

    async def find_blocked_time(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> list[BlockedTime]:
        if self._store.rules is None:
            return []
        return await self._store.rules.list_blocked_time(practitioner_id, start, end)

    async def insert_appointment(
        self,
        draft: AppointmentDraft,
        assignments: Sequence[PractitionerAssignment],
        divisions: Sequence[SlotDivision],
    ) -> Appointment:
        appointment = Appointment(
            id=uuid.uuid4(),
            practitioner_ids=list(draft.practitioner_ids),
            primary_practitioner_id=draft.primary_id,
            location_id=draft.location_id,
            mode=draft.mode,
            window=draft.window,
            status=draft.status,
            patient_id=draft.patient_id,
            service_id=draft.service_id,
            notes=draft.notes,
            practitioners=list(assignments),
            slot_divisions=list(divisions),
        )
        self.staged[appointment.id] = appointment
        return appointment

    async def reschedule_appointment(
        self,
        appointment_id: uuid.UUID,
        window: TimeWindow,
        assignments: Sequence[PractitionerAssignment],
        divisions: Sequence[SlotDivision],
    ) -> Appointment:
        current = self._current()[appointment_id]
        moved = current.model_copy(
            update={
                "window": window,
                "practitioners": list(assignments),
                "slot_divisions": list(divisions),
                "updated_at": dt.datetime.now(dt.timezone.utc),
            }
        )
        self.staged[appointment_id] = moved
        return moved

    async def get_appointment(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        return self._current().get(appointment_id)

    async def set_status(self, appointment_id: uuid.UUID, status: AppointmentStatus) -> Appointment:
        current = self._current()[appointment_id]
        updated = current.model_copy(
            update={"status": status, "updated_at": dt.datetime.now(dt.timezone.utc)}
        )
        self.staged[appointment_id] = updated
        return updated


class InMemoryAppointmentStore:
    """Process-local appointment store.

    Transactions are serialized on a lock and staged; nothing is visible to
    other callers until the transaction body completes without error.
    """

    def __init__(self, rules: Optional[InMemoryAvailabilityRuleStore] = None):
        self.rules = rules
        self._appointments: dict[uuid.UUID, Appointment] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _links(
        appointments: Iterable[Appointment],
        practitioner_id: uuid.UUID,
        start: dt.datetime,
        end: dt.datetime,
    ) -> list[ExistingAppointment]:
        found = [
            ExistingAppointment(
                appointment_id=appt.id,
                practitioner_id=link.practitioner_id,
                start=link.start,
                end=link.end,
                status=appt.status,
                is_primary=link.is_primary,
            )
            for appt in appointments
            for link in appt.practitioners
            if link.practitioner_id == practitioner_id and link.start < end and start < link.end
        ]
        return sorted(found, key=lambda e: e.start)

    async def list_for_practitioner(
        self, practitioner_id: uuid.UUID, start: dt.datetime, end: dt.datetime
    ) -> list[ExistingAppointment]:
        return self._links(list(self._appointments.values()), practitioner_id, start, end)

    async def get(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        return self._appointments.get(appointment_id)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryBookingTransaction]:
        async with self._lock:
            tx = _InMemoryBookingTransaction(self)
            yield tx
            self._appointments.update(tx.staged)
