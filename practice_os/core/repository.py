"""CRUD repositories for the scheduling schema.

Datetimes are normalized to UTC before they are written or compared, so
SQLite (which stores no offset) and PostgreSQL behave the same.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from practice_os.core.models import (
    AppointmentDB,
    AppointmentPractitionerDB,
    AvailabilityRuleDB,
    BlockedTimeDB,
    Location,
    Organization,
    Practitioner,
    SlotDivisionDB,
)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OrganizationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Organization:
        org = Organization(**kwargs)
        self.session.add(org)
        await self.session.flush()
        return org

    async def get_by_id(self, organization_id: uuid.UUID) -> Optional[Organization]:
        return await self.session.get(Organization, organization_id)


class PractitionerRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Practitioner:
        practitioner = Practitioner(**kwargs)
        self.session.add(practitioner)
        await self.session.flush()
        return practitioner

    async def get_by_id(self, practitioner_id: uuid.UUID) -> Optional[Practitioner]:
        return await self.session.get(Practitioner, practitioner_id)

    async def get_many(self, practitioner_ids: Iterable[uuid.UUID]) -> Sequence[Practitioner]:
        ids = list(practitioner_ids)
        if not ids:
            return []
        result = await self.session.execute(select(Practitioner).where(Practitioner.id.in_(ids)))
        return result.scalars().all()

    async def list(self, organization_id: Optional[uuid.UUID] = None, active_only: bool = True) -> Sequence[Practitioner]:
        stmt = select(Practitioner)
        if organization_id:
            stmt = stmt.where(Practitioner.organization_id == organization_id)
        if active_only:
            stmt = stmt.where(Practitioner.active.is_(True))
        stmt = stmt.order_by(Practitioner.last_name, Practitioner.first_name)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class LocationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Location:
        location = Location(**kwargs)
        self.session.add(location)
        await self.session.flush()
        return location

    async def get_by_id(self, location_id: uuid.UUID) -> Optional[Location]:
        return await self.session.get(Location, location_id)


class AvailabilityRuleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> AvailabilityRuleDB:
        rule = AvailabilityRuleDB(**kwargs)
        self.session.add(rule)
        await self.session.flush()
        return rule

    async def list_for_practitioner(
        self, practitioner_id: uuid.UUID, location_id: Optional[uuid.UUID] = None
    ) -> Sequence[AvailabilityRuleDB]:
        stmt = select(AvailabilityRuleDB).where(AvailabilityRuleDB.practitioner_id == practitioner_id)
        if location_id:
            stmt = stmt.where(AvailabilityRuleDB.location_id == location_id)
        stmt = stmt.order_by(AvailabilityRuleDB.day_of_week, AvailabilityRuleDB.start_time)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def delete_for(self, practitioner_id: uuid.UUID, location_id: uuid.UUID) -> None:
        await self.session.execute(
            delete(AvailabilityRuleDB).where(
                AvailabilityRuleDB.practitioner_id == practitioner_id,
                AvailabilityRuleDB.location_id == location_id,
            )
        )


class BlockedTimeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> BlockedTimeDB:
        kwargs["start_time"] = to_utc(kwargs["start_time"])
        kwargs["end_time"] = to_utc(kwargs["end_time"])
        blocked = BlockedTimeDB(**kwargs)
        self.session.add(blocked)
        await self.session.flush()
        return blocked

    async def list_overlapping(
        self, practitioner_id: uuid.UUID, start: datetime, end: datetime
    ) -> Sequence[BlockedTimeDB]:
        stmt = (
            select(BlockedTimeDB)
            .where(
                BlockedTimeDB.practitioner_id == practitioner_id,
                BlockedTimeDB.start_time < to_utc(end),
                BlockedTimeDB.end_time > to_utc(start),
            )
            .order_by(BlockedTimeDB.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class AppointmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> AppointmentDB:
        kwargs["start_time"] = to_utc(kwargs["start_time"])
        kwargs["end_time"] = to_utc(kwargs["end_time"])
        appt = AppointmentDB(**kwargs)
        self.session.add(appt)
        await self.session.flush()
        return appt

    async def get_by_id(self, appointment_id: uuid.UUID) -> Optional[AppointmentDB]:
        return await self.session.get(AppointmentDB, appointment_id)

    async def list_links(
        self,
        practitioner_id: uuid.UUID,
        start: datetime,
        end: datetime,
        active_only: bool = False,
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> Sequence[tuple[AppointmentPractitionerDB, str]]:
        """Links of *practitioner_id* overlapping ``[start, end)`` with their appointment status."""
        stmt = (
            select(AppointmentPractitionerDB, AppointmentDB.status)
            .join(AppointmentDB, AppointmentDB.id == AppointmentPractitionerDB.appointment_id)
            .where(
                AppointmentPractitionerDB.practitioner_id == practitioner_id,
                AppointmentPractitionerDB.start_time < to_utc(end),
                AppointmentPractitionerDB.end_time > to_utc(start),
            )
            .order_by(AppointmentPractitionerDB.start_time)
        )
        if active_only:
            stmt = stmt.where(AppointmentPractitionerDB.is_active.is_(True))
        if exclude_appointment_id:
            stmt = stmt.where(AppointmentPractitionerDB.appointment_id != exclude_appointment_id)
        result = await self.session.execute(stmt)
        return [(link, status) for link, status in result.all()]

    async def update_status(self, appointment_id: uuid.UUID, status: str, active: bool) -> Optional[AppointmentDB]:
        appt = await self.get_by_id(appointment_id)
        if appt:
            appt.status = status
            appt.updated_at = datetime.now(timezone.utc)
            for link in appt.practitioners:
                link.is_active = active
            await self.session.flush()
        return appt

    async def reschedule(
        self,
        appointment_id: uuid.UUID,
        appointment_date: date,
        start_time: datetime,
        end_time: datetime,
        tz_name: str,
        segments: dict[uuid.UUID, tuple[datetime, datetime]],
        slot_divisions: Sequence[SlotDivisionDB],
    ) -> Optional[AppointmentDB]:
        """Move an appointment and its links in place; replaces its slot divisions."""
        appt = await self.get_by_id(appointment_id)
        if appt is None:
            return None
        appt.appointment_date = appointment_date
        appt.start_time = to_utc(start_time)
        appt.end_time = to_utc(end_time)
        appt.timezone = tz_name
        appt.updated_at = datetime.now(timezone.utc)
        for link in appt.practitioners:
            link_start, link_end = segments[link.practitioner_id]
            link.start_time = to_utc(link_start)
            link.end_time = to_utc(link_end)
        # Delete first; (appointment_id, practitioner_id) is unique.
        appt.slot_divisions.clear()
        await self.session.flush()
        appt.slot_divisions.extend(slot_divisions)
        await self.session.flush()
        return appt
