"""Slot division: per-practitioner sub-windows inside one appointment slot.

Divisions must stay inside the parent slot and have a positive length.
Divisions of different practitioners may overlap each other (co-treatment,
handoff care).
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Iterable, Optional

from practice_os.scheduling.errors import (
    ConfigurationError,
    DivisionError,
    IncompleteAssignmentError,
    InvalidWindow,
    OutOfBoundsError,
    ZeroDurationError,
)
from practice_os.scheduling.models import SlotDivision, SlotDivisionPayload
from practice_os.scheduling.timewindow import TimeWindow, contains, duration_minutes

logger = logging.getLogger(__name__)


class DivisionState(str, Enum):
    UNASSIGNED = "unassigned"
    PARTIALLY_ASSIGNED = "partially_assigned"
    FULLY_ASSIGNED = "fully_assigned"


class SlotDivisionEngine:
    """Collects and validates slot divisions for one appointment-in-progress."""

    def __init__(self, parent: TimeWindow, practitioner_ids: Iterable[uuid.UUID]) -> None:
        try:
            duration_minutes(parent)
        except InvalidWindow as e:
            raise ConfigurationError(f"Parent slot is not a valid window: {e}") from e
        self.parent = parent
        self.practitioner_ids: list[uuid.UUID] = list(dict.fromkeys(practitioner_ids))
        if not self.practitioner_ids:
            raise ConfigurationError("At least one practitioner is required")
        self._divisions: dict[uuid.UUID, TimeWindow] = {}
        self._invalid: dict[uuid.UUID, str] = {}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_division(self, practitioner_id: uuid.UUID, window: TimeWindow) -> None:
        """Assign *window* to a practitioner; other divisions are untouched."""
        self._require(practitioner_id)
        self._validate(practitioner_id, window)
        self._divisions[practitioner_id] = window
        self._invalid.pop(practitioner_id, None)

    def set_entire_slot(self, practitioner_id: uuid.UUID) -> None:
        """Assign the whole parent slot, discarding any custom edit."""
        self._require(practitioner_id)
        self._divisions[practitioner_id] = self.parent
        self._invalid.pop(practitioner_id, None)

    def clear_division(self, practitioner_id: uuid.UUID) -> None:
        self._require(practitioner_id)
        self._divisions.pop(practitioner_id, None)
        self._invalid.pop(practitioner_id, None)

    def move_parent(self, new_parent: TimeWindow) -> None:
        """Change the parent slot and re-validate each division independently.

        Entire-slot assignments follow the new parent. Custom divisions that
        no longer fit are moved to ``invalid_divisions``.
        """
        try:
            duration_minutes(new_parent)
        except InvalidWindow as e:
            raise ConfigurationError(f"Parent slot is not a valid window: {e}") from e

        old_parent = self.parent
        self.parent = new_parent
        for pid, window in list(self._divisions.items()):
            if window == old_parent:
                self._divisions[pid] = new_parent
                continue
            try:
                window = window.model_copy(
                    update={"date": new_parent.date, "timezone": new_parent.timezone}
                )
                self._validate(pid, window)
                self._divisions[pid] = window
            except DivisionError as e:
                del self._divisions[pid]
                self._invalid[pid] = str(e)
                logger.debug("Division for %s invalidated by parent move: %s", pid, e)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def divisions(self) -> dict[uuid.UUID, TimeWindow]:
        return dict(self._divisions)

    @property
    def invalid_divisions(self) -> dict[uuid.UUID, str]:
        return dict(self._invalid)

    @property
    def state(self) -> DivisionState:
        assigned = sum(1 for pid in self.practitioner_ids if pid in self._divisions)
        if assigned == 0:
            return DivisionState.UNASSIGNED
        if assigned < len(self.practitioner_ids):
            return DivisionState.PARTIALLY_ASSIGNED
        return DivisionState.FULLY_ASSIGNED

    def missing_practitioners(self) -> list[uuid.UUID]:
        return [pid for pid in self.practitioner_ids if pid not in self._divisions]

    def is_entire_slot(self, practitioner_id: uuid.UUID) -> bool:
        return self._divisions.get(practitioner_id) == self.parent

    def is_complete(self) -> bool:
        if len(self._divisions) != len(self.practitioner_ids):
            return False
        for pid in self.practitioner_ids:
            window = self._divisions.get(pid)
            if window is None:
                return False
            try:
                self._validate(pid, window)
            except DivisionError:
                return False
        return True

    def to_persistable_payload(self) -> SlotDivisionPayload:
        if not self.is_complete():
            raise IncompleteAssignmentError(self.missing_practitioners())
        return SlotDivisionPayload(
            parent=self.parent,
            divisions=[
                SlotDivision.from_window(pid, self._divisions[pid])
                for pid in self.practitioner_ids
            ],
        )

    @classmethod
    def from_payload(
        cls,
        payload: SlotDivisionPayload,
        practitioner_ids: Optional[Iterable[uuid.UUID]] = None,
    ) -> "SlotDivisionEngine":
        """Rebuild an engine from a client payload, re-validating every division.

        The payload must cover exactly *practitioner_ids* (defaults to the
        payload's own practitioners) with one division each.
        """
        seen: list[uuid.UUID] = [d.practitioner_id for d in payload.divisions]
        if len(seen) != len(set(seen)):
            raise ConfigurationError("Each practitioner may have only one slot division")
        required = list(practitioner_ids) if practitioner_ids is not None else seen
        unknown = set(seen) - set(required)
        if unknown:
            raise ConfigurationError(
                "Slot divisions given for practitioners not on the appointment: "
                + ", ".join(str(p) for p in sorted(unknown))
            )

        engine = cls(payload.parent, required)
        for division in payload.divisions:
            engine.set_division(division.practitioner_id, division.window(payload.parent))
        return engine

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, practitioner_id: uuid.UUID) -> None:
        if practitioner_id not in self.practitioner_ids:
            raise ConfigurationError(
                f"Practitioner {practitioner_id} is not assigned to this appointment"
            )

    def _validate(self, practitioner_id: uuid.UUID, window: TimeWindow) -> None:
        if not contains(self.parent, window):
            raise OutOfBoundsError(
                f"Division {window} is outside the appointment slot {self.parent}",
                practitioner_id=practitioner_id,
            )
        try:
            duration_minutes(window)
        except InvalidWindow as e:
            raise ZeroDurationError(str(e), practitioner_id=practitioner_id) from e
