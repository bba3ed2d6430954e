"""Scheduling core: availability, conflicts, slot divisions and booking."""

from practice_os.scheduling.availability import AvailabilityResolver
from practice_os.scheduling.booking import BookingOrchestrator
from practice_os.scheduling.conflicts import ConflictDetector, ConnectionStatusCache
from practice_os.scheduling.division import DivisionState, SlotDivisionEngine
from practice_os.scheduling.errors import (
    AppointmentNotFoundError,
    ConfigurationError,
    DivisionError,
    ExternalIntegrationUnavailable,
    IncompleteAssignmentError,
    InvalidTransitionError,
    InvalidWindow,
    OutOfBoundsError,
    SchedulingError,
    SlotNoLongerAvailableError,
    ZeroDurationError,
)
from practice_os.scheduling.models import (
    Appointment,
    AppointmentDraft,
    AppointmentMode,
    AppointmentStatus,
    AvailabilitySnapshot,
    ConflictReport,
    DateRange,
    SlotDivision,
    SlotDivisionPayload,
    TenantContext,
    WeeklyAvailabilityRule,
)
from practice_os.scheduling.timewindow import TimeWindow, contains, duration_minutes, overlaps

__all__ = [
    "Appointment",
    "AppointmentDraft",
    "AppointmentMode",
    "AppointmentNotFoundError",
    "AppointmentStatus",
    "AvailabilityResolver",
    "AvailabilitySnapshot",
    "BookingOrchestrator",
    "ConfigurationError",
    "ConflictDetector",
    "ConflictReport",
    "ConnectionStatusCache",
    "DateRange",
    "DivisionError",
    "DivisionState",
    "ExternalIntegrationUnavailable",
    "IncompleteAssignmentError",
    "InvalidTransitionError",
    "InvalidWindow",
    "OutOfBoundsError",
    "SchedulingError",
    "SlotDivision",
    "SlotDivisionEngine",
    "SlotDivisionPayload",
    "SlotNoLongerAvailableError",
    "TenantContext",
    "TimeWindow",
    "WeeklyAvailabilityRule",
    "ZeroDurationError",
    "contains",
    "duration_minutes",
    "overlaps",
]
