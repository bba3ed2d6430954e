"""Availability resolution: weekly rules minus bookings and blocked time."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from typing import Iterable, Iterator, Optional, Sequence

from practice_os.observability import ObservabilityLogger, get_observability_logger
from practice_os.scheduling.errors import ConfigurationError
from practice_os.scheduling.interfaces import AppointmentStore, AvailabilityRuleStore
from practice_os.scheduling.models import (
    AppointmentMode,
    AvailabilitySnapshot,
    DateRange,
    ExistingAppointment,
    TenantContext,
    WeeklyAvailabilityRule,
)
from practice_os.scheduling.timewindow import (
    Span,
    TimeWindow,
    get_zone,
    merge_spans,
    subtract_spans,
    to_timezone,
)

logger = logging.getLogger(__name__)


def generate_grid(
    day: dt.date, window: Span, session_minutes: int, tz_name: str
) -> Iterator[TimeWindow]:
    """Lay session-length slots on the wall clock from the window's start.

    A slot is produced only if the whole session fits; trailing minutes are
    dropped. Slots starting or ending inside a DST gap are skipped, the rest
    of the grid keeps its wall-clock positions.
    """
    cursor = window[0].replace(tzinfo=None)
    limit = window[1].replace(tzinfo=None)
    step = dt.timedelta(minutes=session_minutes)
    while cursor + step <= limit:
        slot = TimeWindow(
            date=day,
            start_time=cursor.time(),
            end_time=(cursor + step).time(),
            timezone=tz_name,
        )
        if slot.exists_on_wall_clock():
            yield slot
        cursor += step


def _fits(slot: TimeWindow, free: Sequence[Span]) -> bool:
    return any(start <= slot.start and slot.end <= end for start, end in free)


class AvailabilityResolver:
    """Computes bookable slots per practitioner for a date range.

    Each practitioner is resolved independently (and concurrently); slots of
    different practitioners are never intersected here.
    """

    def __init__(
        self,
        rules: AvailabilityRuleStore,
        appointments: AppointmentStore,
        max_range_days: int = 62,
        observability: Optional[ObservabilityLogger] = None,
    ) -> None:
        self._rules = rules
        self._appointments = appointments
        self.max_range_days = max_range_days
        self._obs = observability

    @property
    def observability(self) -> ObservabilityLogger:
        if self._obs is None:
            self._obs = get_observability_logger()
        return self._obs

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_request(
        self,
        practitioner_ids: Iterable[uuid.UUID],
        location_id: Optional[uuid.UUID],
        mode: AppointmentMode,
        date_range: DateRange,
        tenant: TenantContext,
    ) -> list[uuid.UUID]:
        """Reject invalid input combinations before any store access."""
        ids = list(dict.fromkeys(practitioner_ids))
        if not ids:
            raise ConfigurationError("At least one practitioner is required")
        if mode == AppointmentMode.IN_PERSON and location_id is None:
            raise ConfigurationError("A location is required for in-person appointments")
        if date_range.end < date_range.start:
            raise ConfigurationError("Date range end precedes its start")
        if date_range.days > self.max_range_days:
            raise ConfigurationError(
                f"Date range of {date_range.days} days exceeds the "
                f"{self.max_range_days}-day limit"
            )
        get_zone(tenant.timezone)
        return ids

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        practitioner_ids: Iterable[uuid.UUID],
        location_id: Optional[uuid.UUID],
        mode: AppointmentMode,
        date_range: DateRange,
        tenant: TenantContext,
    ) -> AvailabilitySnapshot:
        """Return open slots for every practitioner plus the bookings in range."""
        ids = self.validate_request(practitioner_ids, location_id, mode, date_range, tenant)
        tz = get_zone(tenant.timezone)
        range_start = dt.datetime.combine(date_range.start, dt.time.min, tzinfo=tz)
        range_end = dt.datetime.combine(
            date_range.end + dt.timedelta(days=1), dt.time.min, tzinfo=tz
        )

        with self.observability.availability_run(
            practitioner_ids=[str(p) for p in ids],
            mode=mode.value,
            start_date=date_range.start.isoformat(),
            end_date=date_range.end.isoformat(),
            location_id=str(location_id) if location_id else None,
            timezone=tenant.timezone,
            session_minutes=tenant.session_minutes,
        ) as event:
            results = await asyncio.gather(
                *(
                    self._resolve_practitioner(
                        pid, location_id, mode, date_range, tenant, range_start, range_end
                    )
                    for pid in ids
                )
            )

            slots: dict[uuid.UUID, list[TimeWindow]] = {}
            existing: list[ExistingAppointment] = []
            for pid, (practitioner_slots, booked) in zip(ids, results):
                slots[pid] = practitioner_slots
                existing.extend(booked)
            existing.sort(key=lambda a: (a.start, str(a.practitioner_id), str(a.appointment_id)))

            event.slot_count = sum(len(s) for s in slots.values())
            event.existing_appointment_count = len(existing)

        logger.info(
            "Resolved %d slot(s) for %d practitioner(s) %s..%s mode=%s",
            sum(len(s) for s in slots.values()),
            len(ids),
            date_range.start,
            date_range.end,
            mode.value,
        )
        return AvailabilitySnapshot(
            slots=slots,
            existing_appointments=existing,
            timezone=tenant.timezone,
            session_minutes=tenant.session_minutes,
            date_range=date_range,
        )

    async def _resolve_practitioner(
        self,
        practitioner_id: uuid.UUID,
        location_id: Optional[uuid.UUID],
        mode: AppointmentMode,
        date_range: DateRange,
        tenant: TenantContext,
        range_start: dt.datetime,
        range_end: dt.datetime,
    ) -> tuple[list[TimeWindow], list[ExistingAppointment]]:
        rules, booked, blocked = await asyncio.gather(
            self._rules.list_rules(practitioner_id, location_id),
            self._appointments.list_for_practitioner(practitioner_id, range_start, range_end),
            self._rules.list_blocked_time(practitioner_id, range_start, range_end),
        )

        tz_name = tenant.timezone
        booked_local = [
            appt.model_copy(
                update={
                    "start": to_timezone(appt.start, tz_name),
                    "end": to_timezone(appt.end, tz_name),
                }
            )
            for appt in booked
        ]
        blocks: list[Span] = [(a.start, a.end) for a in booked_local if a.is_blocking]
        blocks.extend(
            (to_timezone(b.start, tz_name), to_timezone(b.end, tz_name)) for b in blocked
        )

        serving = [r for r in rules if r.serves(mode)]
        slots: list[TimeWindow] = []
        for day in date_range.dates():
            for window in self._rule_windows(serving, day, tz_name):
                free = subtract_spans(window, blocks)
                if not free:
                    continue
                slots.extend(
                    slot
                    for slot in generate_grid(day, window, tenant.session_minutes, tz_name)
                    if _fits(slot, free)
                )

        slots.sort(key=lambda w: w.start)
        return slots, booked_local

    @staticmethod
    def _rule_windows(
        rules: Sequence[WeeklyAvailabilityRule], day: dt.date, tz_name: str
    ) -> list[Span]:
        tz = get_zone(tz_name)
        return merge_spans(
            (
                dt.datetime.combine(day, rule.start_time, tzinfo=tz),
                dt.datetime.combine(day, rule.end_time, tzinfo=tz),
            )
            for rule in rules
            if rule.applies_on(day)
        )
