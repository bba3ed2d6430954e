"""Observability module for scheduling telemetry."""

from practice_os.observability.events import (
    AvailabilityEvent,
    BookingEvent,
    EventType,
    IntegrationEvent,
    ObservabilityEvent,
)
from practice_os.observability.logger import ObservabilityLogger, get_observability_logger

__all__ = [
    "AvailabilityEvent",
    "BookingEvent",
    "EventType",
    "IntegrationEvent",
    "ObservabilityEvent",
    "ObservabilityLogger",
    "get_observability_logger",
]
