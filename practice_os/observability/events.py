"""Structured observability events for scheduling telemetry."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of observability events."""

    AVAILABILITY_START = "availability_start"
    AVAILABILITY_SUCCESS = "availability_success"
    AVAILABILITY_ERROR = "availability_error"
    BOOKING_START = "booking_start"
    BOOKING_SUCCESS = "booking_success"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_ERROR = "booking_error"
    CONFLICT_CHECK = "conflict_check"
    CALENDAR_LOOKUP_FAILED = "calendar_lookup_failed"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"


class ObservabilityEvent(BaseModel):
    """Base class for all observability events."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AvailabilityEvent(ObservabilityEvent):
    """Event for availability resolution runs."""

    practitioner_ids: list[str] = Field(default_factory=list)
    location_id: Optional[str] = None
    mode: str
    start_date: str
    end_date: str
    timezone: str = "UTC"
    session_minutes: Optional[int] = None

    # Results
    slot_count: int = 0
    existing_appointment_count: int = 0

    # Error fields
    error_type: Optional[str] = None
    error_message: Optional[str] = None


class BookingEvent(ObservabilityEvent):
    """Event for booking transactions."""

    practitioner_ids: list[str] = Field(default_factory=list)
    mode: str
    window: str
    is_divided: bool = False

    # Results
    appointment_id: Optional[str] = None
    status: Optional[str] = None
    unavailable_practitioners: list[str] = Field(default_factory=list)

    # Error fields
    error_type: Optional[str] = None
    error_message: Optional[str] = None


class IntegrationEvent(ObservabilityEvent):
    """Event for external calendar and notification calls."""

    integration: str  # calendar, notifications
    practitioner_id: Optional[str] = None
    appointment_id: Optional[str] = None
    conflict_count: int = 0
    undetermined_count: int = 0

    error_type: Optional[str] = None
    error_message: Optional[str] = None
