"""Advisory conflict detection against practitioners' external calendars."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Iterable, Optional, Sequence

from practice_os.observability import ObservabilityLogger, get_observability_logger
from practice_os.scheduling.errors import ExternalIntegrationUnavailable
from practice_os.scheduling.interfaces import ExternalCalendarGateway, PractitionerDirectory
from practice_os.scheduling.models import (
    CalendarEvent,
    ConflictReport,
    ExternalCalendarConflict,
)
from practice_os.scheduling.timewindow import TimeWindow, duration_minutes, overlaps

logger = logging.getLogger(__name__)


class ConnectionStatusCache:
    """Remembers whether a practitioner's calendar is connected.

    One instance lives for a single booking session. Only definite answers
    are cached; failed lookups are retried next time.
    """

    def __init__(
        self,
        ttl_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[uuid.UUID, tuple[bool, float]] = {}

    def get(self, practitioner_id: uuid.UUID) -> Optional[bool]:
        entry = self._entries.get(practitioner_id)
        if entry is None:
            return None
        connected, stored_at = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[practitioner_id]
            return None
        return connected

    def set(self, practitioner_id: uuid.UUID, connected: bool) -> None:
        self._entries[practitioner_id] = (connected, self._clock())

    def __len__(self) -> int:
        return len(self._entries)


class ConflictDetector:
    """Cross-checks a candidate window against external busy blocks.

    Never blocks a booking. Practitioners without a connected calendar are
    skipped silently; lookups that fail or time out are reported as
    ``undetermined`` rather than as conflicts or errors.
    """

    def __init__(
        self,
        gateway: ExternalCalendarGateway,
        directory: Optional[PractitionerDirectory] = None,
        timeout_seconds: float = 3.0,
        cache: Optional[ConnectionStatusCache] = None,
        observability: Optional[ObservabilityLogger] = None,
    ) -> None:
        self._gateway = gateway
        self._directory = directory
        self.timeout_seconds = timeout_seconds
        self.cache = cache or ConnectionStatusCache()
        self._obs = observability

    @property
    def observability(self) -> ObservabilityLogger:
        if self._obs is None:
            self._obs = get_observability_logger()
        return self._obs

    async def detect(
        self, window: TimeWindow, practitioner_ids: Iterable[uuid.UUID]
    ) -> ConflictReport:
        """Return per-practitioner conflicts for *window*, ordered by practitioner id."""
        duration_minutes(window)
        ids = sorted(set(practitioner_ids))
        started = time.time()

        outcomes = await asyncio.gather(*(self._check(pid, window) for pid in ids))

        conflicting: dict[uuid.UUID, list[CalendarEvent]] = {}
        undetermined: list[uuid.UUID] = []
        for pid, (events, failed) in zip(ids, outcomes):
            if failed:
                undetermined.append(pid)
            elif events:
                conflicting[pid] = events

        names = await self._display_names(list(conflicting))
        conflicts = [
            ExternalCalendarConflict(
                practitioner_id=pid,
                practitioner_name=names.get(pid, "Practitioner"),
                conflicting_events=sorted(events, key=lambda e: e.start),
            )
            for pid, events in sorted(conflicting.items())
        ]

        self.observability.log_conflict_check(
            conflict_count=len(conflicts),
            undetermined_count=len(undetermined),
            duration_ms=(time.time() - started) * 1000,
        )
        if conflicts:
            logger.info(
                "Calendar conflicts for %s at %s",
                ", ".join(str(c.practitioner_id) for c in conflicts),
                window,
            )
        return ConflictReport(window=window, conflicts=conflicts, undetermined=undetermined)

    async def _check(
        self, practitioner_id: uuid.UUID, window: TimeWindow
    ) -> tuple[list[CalendarEvent], bool]:
        """Return (overlapping events, lookup failed)."""
        try:
            if not await self._is_connected(practitioner_id):
                return [], False
            events: Sequence[CalendarEvent] = await asyncio.wait_for(
                self._gateway.busy_events(practitioner_id, window),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, ExternalIntegrationUnavailable) as e:
            logger.warning(
                f"Calendar lookup failed for practitioner {practitioner_id}: "
                f"{type(e).__name__}: {e}"
            )
            self.observability.log_calendar_failure(str(practitioner_id), e)
            return [], True
        except Exception as e:
            logger.exception(f"Unexpected calendar gateway error for practitioner {practitioner_id}")
            self.observability.log_calendar_failure(str(practitioner_id), e)
            return [], True

        return [event for event in events if overlaps(event, window)], False

    async def _is_connected(self, practitioner_id: uuid.UUID) -> bool:
        cached = self.cache.get(practitioner_id)
        if cached is not None:
            return cached
        connected = await asyncio.wait_for(
            self._gateway.is_connected(practitioner_id),
            timeout=self.timeout_seconds,
        )
        self.cache.set(practitioner_id, connected)
        return connected

    async def _display_names(self, practitioner_ids: list[uuid.UUID]) -> dict[uuid.UUID, str]:
        if not practitioner_ids or self._directory is None:
            return {}
        try:
            return await self._directory.display_names(practitioner_ids)
        except Exception as e:
            logger.warning(f"Practitioner name lookup failed, using placeholders: {e}")
            return {}
