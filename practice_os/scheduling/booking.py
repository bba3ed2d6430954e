"""Booking transaction orchestration.

One booking writes the appointment, its practitioner links and (when the
slot is divided) its slot divisions in a single transaction. Availability is
re-checked inside that transaction; confirmation notifications go out only
after commit and never affect the booking result.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Optional

from practice_os.observability import ObservabilityLogger, get_observability_logger
from practice_os.scheduling.division import SlotDivisionEngine
from practice_os.scheduling.errors import (
    AppointmentNotFoundError,
    ConfigurationError,
    InvalidTransitionError,
    InvalidWindow,
    SlotNoLongerAvailableError,
)
from practice_os.scheduling.interfaces import (
    AppointmentStore,
    BookingTransaction,
    NotificationDispatcher,
)
from practice_os.scheduling.models import (
    ALLOWED_TRANSITIONS,
    Appointment,
    AppointmentDraft,
    AppointmentMode,
    AppointmentStatus,
    PractitionerAssignment,
    SlotDivision,
    SlotDivisionPayload,
)
from practice_os.scheduling.timewindow import TimeWindow, duration_minutes

logger = logging.getLogger(__name__)

_INITIAL_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})


class BookingOrchestrator:
    """The sole mutating entry point of the scheduling core."""

    def __init__(
        self,
        appointments: AppointmentStore,
        notifier: NotificationDispatcher,
        observability: Optional[ObservabilityLogger] = None,
    ) -> None:
        self._appointments = appointments
        self._notifier = notifier
        self._obs = observability
        self._pending_notifications: set[asyncio.Task] = set()

    @property
    def observability(self) -> ObservabilityLogger:
        if self._obs is None:
            self._obs = get_observability_logger()
        return self._obs

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def prepare(
        self,
        draft: AppointmentDraft,
        divisions: Optional[SlotDivisionPayload] = None,
    ) -> tuple[list[PractitionerAssignment], list[SlotDivision]]:
        """Validate a draft and compute each practitioner's time segment.

        Raises every validation error before any write begins.
        """
        if draft.mode == AppointmentMode.IN_PERSON and draft.location_id is None:
            raise ConfigurationError("A location is required for in-person appointments")
        if draft.primary_id not in draft.practitioner_ids:
            raise ConfigurationError("Primary practitioner must be one of the assigned practitioners")
        if draft.status not in _INITIAL_STATUSES:
            raise ConfigurationError(
                f"New appointments must be pending or confirmed, not {draft.status.value}"
            )
        duration_minutes(draft.window)
        if not draft.window.exists_on_wall_clock():
            raise InvalidWindow(f"{draft.window} falls in a daylight-saving gap")

        division_rows: list[SlotDivision] = []
        segments = {pid: draft.window for pid in draft.practitioner_ids}
        if divisions is not None:
            parent = divisions.parent
            if parent.start != draft.window.start or parent.end != draft.window.end:
                raise ConfigurationError(
                    f"Slot divisions were prepared for {parent}, not {draft.window}"
                )
            engine = SlotDivisionEngine.from_payload(
                divisions.model_copy(update={"parent": draft.window}),
                draft.practitioner_ids,
            )
            payload = engine.to_persistable_payload()
            division_rows = payload.divisions
            segments.update(engine.divisions)
            for pid, segment in engine.divisions.items():
                if not segment.exists_on_wall_clock():
                    raise InvalidWindow(
                        f"Division {segment} for {pid} falls in a daylight-saving gap"
                    )

        assignments = [
            PractitionerAssignment(
                practitioner_id=pid,
                start=segments[pid].start,
                end=segments[pid].end,
                is_primary=pid == draft.primary_id,
            )
            for pid in draft.practitioner_ids
        ]
        return assignments, division_rows

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self,
        draft: AppointmentDraft,
        divisions: Optional[SlotDivisionPayload] = None,
    ) -> Appointment:
        """Atomically create an appointment with its links and divisions."""
        assignments, division_rows = self.prepare(draft, divisions)

        with self.observability.booking_run(
            practitioner_ids=[str(p) for p in draft.practitioner_ids],
            mode=draft.mode.value,
            window=str(draft.window),
            is_divided=bool(division_rows),
        ) as event:
            async with self._appointments.transaction() as tx:
                await self._ensure_free(tx, draft.window, assignments)
                appointment = await tx.insert_appointment(draft, assignments, division_rows)

            event.appointment_id = str(appointment.id)
            event.status = appointment.status.value

        logger.info(
            "Booked appointment %s at %s for %d practitioner(s)%s",
            appointment.id,
            appointment.window,
            len(appointment.practitioner_ids),
            " (divided)" if division_rows else "",
        )
        self._dispatch_confirmation(appointment)
        return appointment

    @staticmethod
    async def _ensure_free(
        tx: BookingTransaction,
        window: TimeWindow,
        assignments: list[PractitionerAssignment],
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Raise ``SlotNoLongerAvailableError`` naming every busy practitioner."""
        unavailable: list[uuid.UUID] = []
        for assignment in assignments:
            clashes = await tx.find_overlapping(
                assignment.practitioner_id,
                assignment.start,
                assignment.end,
                exclude_appointment_id=exclude_appointment_id,
            )
            blocked = await tx.find_blocked_time(
                assignment.practitioner_id, assignment.start, assignment.end
            )
            if clashes or blocked:
                unavailable.append(assignment.practitioner_id)

        if unavailable:
            logger.warning(
                "Booking rejected, slot %s taken for %s",
                window,
                ", ".join(str(p) for p in unavailable),
            )
            raise SlotNoLongerAvailableError(unavailable)

    async def reschedule(
        self,
        appointment_id: uuid.UUID,
        window: TimeWindow,
        divisions: Optional[SlotDivisionPayload] = None,
    ) -> Appointment:
        """Move an appointment to *window*, keeping its practitioners.

        The appointment's own links never block the move. Divisions are
        replaced by *divisions* (none means every practitioner takes the
        whole new window).
        """
        async with self._appointments.transaction() as tx:
            current = await tx.get_appointment(appointment_id)
            if current is None:
                raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
            if current.status not in _INITIAL_STATUSES:
                raise InvalidTransitionError(
                    f"Cannot reschedule a {current.status.value} appointment"
                )

            moved = AppointmentDraft(
                practitioner_ids=current.practitioner_ids,
                primary_practitioner_id=current.primary_practitioner_id,
                location_id=current.location_id,
                mode=current.mode,
                window=window,
                status=current.status,
                patient_id=current.patient_id,
                service_id=current.service_id,
                notes=current.notes,
            )
            assignments, division_rows = self.prepare(moved, divisions)
            await self._ensure_free(tx, window, assignments, exclude_appointment_id=appointment_id)
            updated = await tx.reschedule_appointment(
                appointment_id, window, assignments, division_rows
            )

        logger.info(
            "Rescheduled appointment %s from %s to %s", appointment_id, current.window, window
        )
        return updated

    async def transition(
        self, appointment_id: uuid.UUID, status: AppointmentStatus
    ) -> Appointment:
        """Move an appointment along its lifecycle."""
        async with self._appointments.transaction() as tx:
            current = await tx.get_appointment(appointment_id)
            if current is None:
                raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    f"Cannot move appointment from {current.status.value} to {status.value}"
                )
            updated = await tx.set_status(appointment_id, status)

        logger.info(
            "Appointment %s: %s -> %s", appointment_id, current.status.value, status.value
        )
        return updated

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _dispatch_confirmation(self, appointment: Appointment) -> None:
        task = asyncio.create_task(self._send_confirmation(appointment))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _send_confirmation(self, appointment: Appointment) -> None:
        started = time.time()
        try:
            await self._notifier.booking_created(appointment)
        except Exception as e:
            # Booking already committed; a failed confirmation is only logged.
            logger.warning(f"Confirmation for appointment {appointment.id} failed: {e}")
            self.observability.log_notification(
                str(appointment.id), error=e, duration_ms=(time.time() - started) * 1000
            )
            return
        self.observability.log_notification(
            str(appointment.id), duration_ms=(time.time() - started) * 1000
        )

    async def drain_notifications(self) -> None:
        """Wait for outstanding confirmation dispatches."""
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications))
