"""Observability logger for structured scheduling telemetry."""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from practice_os.observability.events import (
    AvailabilityEvent,
    BookingEvent,
    EventType,
    IntegrationEvent,
    ObservabilityEvent,
)

logger = logging.getLogger(__name__)


class ObservabilityLogger:
    """Central logger for availability, booking and integration events.

    Writes structured events to JSON Lines files for later analysis.
    """

    _instance: Optional["ObservabilityLogger"] = None

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        enabled: bool = True,
        max_content_length: int = 200,
    ):
        """Initialize observability logger.

        Args:
            log_dir: Directory for log files (default: data/logs)
            enabled: Whether logging is enabled
            max_content_length: Max length for error messages
        """
        self.enabled = enabled
        self.max_content_length = max_content_length

        if log_dir is None:
            log_dir = Path("data/logs")
        self.log_dir = log_dir
        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._log_files: dict[str, Path] = {
            "availability": self.log_dir / "availability.jsonl",
            "bookings": self.log_dir / "bookings.jsonl",
            "integrations": self.log_dir / "integrations.jsonl",
        }

        # Event callbacks for real-time monitoring
        self._callbacks: list[Callable[[ObservabilityEvent], None]] = []

    @classmethod
    def get_instance(cls) -> "ObservabilityLogger":
        """Get or create singleton instance configured from settings."""
        if cls._instance is None:
            from practice_os.config import get_settings

            settings = get_settings()
            cls._instance = cls(
                log_dir=settings.observability_log_dir,
                enabled=settings.observability_enabled,
            )
        return cls._instance

    def generate_request_id(self) -> str:
        """Generate a unique request ID."""
        return str(uuid.uuid4())[:8]

    def add_callback(self, callback: Callable[[ObservabilityEvent], None]) -> None:
        """Add callback for real-time event monitoring."""
        self._callbacks.append(callback)

    def _write_event(self, event: ObservabilityEvent, log_type: str) -> None:
        """Write event to appropriate log file."""
        if not self.enabled:
            return

        try:
            log_file = self._log_files.get(log_type)
            if log_file:
                with open(log_file, "a") as f:
                    f.write(event.model_dump_json() + "\n")

            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.warning(f"Observability callback failed: {e}")

        except OSError as e:
            logger.warning(f"Failed to write observability event: {e}")

    def _truncate(self, content: str) -> str:
        if len(content) <= self.max_content_length:
            return content
        return content[: self.max_content_length] + "..."

    # Availability

    @contextmanager
    def availability_run(
        self,
        practitioner_ids: list[str],
        mode: str,
        start_date: str,
        end_date: str,
        location_id: Optional[str] = None,
        timezone: str = "UTC",
        session_minutes: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        """Context manager for logging availability resolution.

        Usage:
            with obs.availability_run(ids, "virtual", "2026-03-02", "2026-03-06") as event:
                snapshot = await resolver.resolve(...)
                event.slot_count = sum(len(s) for s in snapshot.slots.values())
        """
        start_time = time.time()

        event = AvailabilityEvent(
            event_type=EventType.AVAILABILITY_START,
            practitioner_ids=practitioner_ids,
            location_id=location_id,
            mode=mode,
            start_date=start_date,
            end_date=end_date,
            timezone=timezone,
            session_minutes=session_minutes,
            request_id=request_id or self.generate_request_id(),
        )

        try:
            yield event
            event.event_type = EventType.AVAILABILITY_SUCCESS

        except Exception as e:
            event.event_type = EventType.AVAILABILITY_ERROR
            event.error_type = type(e).__name__
            event.error_message = self._truncate(str(e))
            raise

        finally:
            event.duration_ms = (time.time() - start_time) * 1000
            self._write_event(event, "availability")

    # Bookings

    @contextmanager
    def booking_run(
        self,
        practitioner_ids: list[str],
        mode: str,
        window: str,
        is_divided: bool = False,
        request_id: Optional[str] = None,
    ):
        """Context manager for logging a booking transaction.

        Scheduling errors (validation, stale slots) are recorded as
        ``booking_rejected``; anything else as ``booking_error``.
        """
        from practice_os.scheduling.errors import SchedulingError, SlotNoLongerAvailableError

        start_time = time.time()

        event = BookingEvent(
            event_type=EventType.BOOKING_START,
            practitioner_ids=practitioner_ids,
            mode=mode,
            window=window,
            is_divided=is_divided,
            request_id=request_id or self.generate_request_id(),
        )

        try:
            yield event
            event.event_type = EventType.BOOKING_SUCCESS

        except SchedulingError as e:
            event.event_type = EventType.BOOKING_REJECTED
            event.error_type = type(e).__name__
            event.error_message = self._truncate(str(e))
            if isinstance(e, SlotNoLongerAvailableError):
                event.unavailable_practitioners = [str(p) for p in e.practitioner_ids]
            raise

        except Exception as e:
            event.event_type = EventType.BOOKING_ERROR
            event.error_type = type(e).__name__
            event.error_message = self._truncate(str(e))
            raise

        finally:
            event.duration_ms = (time.time() - start_time) * 1000
            self._write_event(event, "bookings")

    # Integrations

    def log_conflict_check(
        self,
        conflict_count: int,
        undetermined_count: int,
        duration_ms: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> None:
        """Log the outcome of an external calendar conflict check."""
        event = IntegrationEvent(
            event_type=EventType.CONFLICT_CHECK,
            integration="calendar",
            conflict_count=conflict_count,
            undetermined_count=undetermined_count,
            duration_ms=duration_ms,
            request_id=request_id,
        )
        self._write_event(event, "integrations")

    def log_calendar_failure(
        self,
        practitioner_id: str,
        error: BaseException,
        request_id: Optional[str] = None,
    ) -> None:
        """Log a calendar lookup that degraded to 'undetermined'."""
        event = IntegrationEvent(
            event_type=EventType.CALENDAR_LOOKUP_FAILED,
            integration="calendar",
            practitioner_id=practitioner_id,
            error_type=type(error).__name__,
            error_message=self._truncate(str(error)),
            request_id=request_id,
        )
        self._write_event(event, "integrations")

    def log_notification(
        self,
        appointment_id: str,
        error: Optional[BaseException] = None,
        duration_ms: Optional[float] = None,
    ) -> None:
        """Log a booking confirmation dispatch."""
        event = IntegrationEvent(
            event_type=EventType.NOTIFICATION_FAILED if error else EventType.NOTIFICATION_SENT,
            integration="notifications",
            appointment_id=appointment_id,
            error_type=type(error).__name__ if error else None,
            error_message=self._truncate(str(error)) if error else None,
            duration_ms=duration_ms,
        )
        self._write_event(event, "integrations")

    # Utility methods

    def get_recent_events(
        self,
        log_type: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Read recent events from a log file."""
        log_file = self._log_files.get(log_type)
        if not log_file or not log_file.exists():
            return []

        events = []
        with open(log_file) as f:
            for line in f:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

        return events[-limit:]

    def get_stats(self, log_type: str) -> dict[str, Any]:
        """Get basic statistics for a log type."""
        events = self.get_recent_events(log_type, limit=1000)
        if not events:
            return {"total": 0}

        total = len(events)
        errors = sum(
            1 for e in events
            if e.get("event_type", "").endswith(("error", "failed", "rejected"))
        )
        avg_duration = sum(e.get("duration_ms") or 0 for e in events) / total

        return {
            "total": total,
            "errors": errors,
            "error_rate": errors / total if total > 0 else 0,
            "avg_duration_ms": avg_duration,
        }


def get_observability_logger() -> ObservabilityLogger:
    """Get the global observability logger instance."""
    return ObservabilityLogger.get_instance()
