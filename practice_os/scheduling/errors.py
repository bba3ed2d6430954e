"""Exception taxonomy for the scheduling core."""

from __future__ import annotations

import uuid
from typing import Iterable


class SchedulingError(Exception):
    """Base class for every error raised by the scheduling core."""


class ConfigurationError(SchedulingError):
    """Caller supplied an invalid combination of inputs.

    Raised before any store access, surfaced to the caller verbatim.
    """


class InvalidWindow(SchedulingError):
    """A time window whose end is not after its start."""


class DivisionError(SchedulingError):
    """Base class for slot division validation failures."""

    def __init__(self, message: str, practitioner_id: uuid.UUID | None = None):
        super().__init__(message)
        self.practitioner_id = practitioner_id


class OutOfBoundsError(DivisionError):
    """A division is not contained in its parent slot."""


class ZeroDurationError(DivisionError):
    """A division has a non-positive duration."""


class IncompleteAssignmentError(DivisionError):
    """Divisions were requested before every practitioner had a valid one."""

    def __init__(self, missing: Iterable[uuid.UUID]):
        self.missing = sorted(missing)
        names = ", ".join(str(p) for p in self.missing)
        super().__init__(f"Slot divisions missing or invalid for: {names}")


class SlotNoLongerAvailableError(SchedulingError):
    """A practitioner acquired a conflicting booking since availability was fetched."""

    def __init__(self, practitioner_ids: Iterable[uuid.UUID]):
        self.practitioner_ids = sorted(set(practitioner_ids))
        names = ", ".join(str(p) for p in self.practitioner_ids)
        super().__init__(
            f"Selected time is no longer available for practitioner(s): {names}. "
            "Please pick a new time."
        )


class AppointmentNotFoundError(SchedulingError):
    """No appointment exists with the requested id."""


class InvalidTransitionError(SchedulingError):
    """An appointment status change that the lifecycle does not allow."""


class ExternalIntegrationUnavailable(SchedulingError):
    """An external calendar or notification service could not be reached.

    Never surfaced to end users; treated as "no data".
    """
