"""Tests for external calendar conflict detection."""

import asyncio
import datetime as dt
from unittest.mock import AsyncMock

import pytest

from practice_os.scheduling.conflicts import ConflictDetector, ConnectionStatusCache
from practice_os.scheduling.errors import ExternalIntegrationUnavailable, InvalidWindow
from practice_os.scheduling.models import CalendarEvent
from tests.conftest import MONDAY, PRACTITIONER_A, PRACTITIONER_B, t, window

UTC = dt.timezone.utc


def _event(start: str, end: str, title: str = "Busy") -> CalendarEvent:
    return CalendarEvent(
        title=title,
        start=dt.datetime.combine(MONDAY, t(start), tzinfo=UTC),
        end=dt.datetime.combine(MONDAY, t(end), tzinfo=UTC),
    )


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def gateway():
    gw = AsyncMock()
    gw.is_connected = AsyncMock(return_value=True)
    gw.busy_events = AsyncMock(return_value=[])
    return gw


@pytest.fixture
def directory():
    d = AsyncMock()
    d.display_names = AsyncMock(
        return_value={PRACTITIONER_A: "Sarah Chen, PT", PRACTITIONER_B: "Mark Diaz, OT"}
    )
    return d


class TestConnectionStatusCache:
    def test_miss_then_hit(self):
        cache = ConnectionStatusCache(ttl_seconds=60, clock=FakeClock())
        assert cache.get(PRACTITIONER_A) is None
        cache.set(PRACTITIONER_A, False)
        assert cache.get(PRACTITIONER_A) is False
        assert len(cache) == 1

    def test_entries_expire(self):
        clock = FakeClock()
        cache = ConnectionStatusCache(ttl_seconds=60, clock=clock)
        cache.set(PRACTITIONER_A, True)

        clock.now = 59
        assert cache.get(PRACTITIONER_A) is True
        clock.now = 61
        assert cache.get(PRACTITIONER_A) is None
        assert len(cache) == 0


class TestConflictDetector:
    @pytest.mark.asyncio
    async def test_overlapping_event_is_reported(self, gateway, directory):
        gateway.busy_events.return_value = [_event("14:15", "15:00", "Dentist")]
        detector = ConflictDetector(gateway, directory)

        report = await detector.detect(window("14:00", "14:30"), [PRACTITIONER_A])

        assert report.has_conflicts
        conflict = report.conflicts[0]
        assert conflict.practitioner_id == PRACTITIONER_A
        assert conflict.practitioner_name == "Sarah Chen, PT"
        assert [e.title for e in conflict.conflicting_events] == ["Dentist"]
        assert report.undetermined == []

    @pytest.mark.asyncio
    async def test_touching_and_outside_events_are_ignored(self, gateway):
        gateway.busy_events.return_value = [_event("13:00", "14:00"), _event("14:30", "15:00")]
        detector = ConflictDetector(gateway)

        report = await detector.detect(window("14:00", "14:30"), [PRACTITIONER_A])

        assert not report.has_conflicts

    @pytest.mark.asyncio
    async def test_unconnected_practitioner_is_skipped(self, gateway):
        gateway.is_connected.return_value = False
        detector = ConflictDetector(gateway)

        report = await detector.detect(window(), [PRACTITIONER_A])

        assert report.conflicts == []
        assert report.undetermined == []
        gateway.busy_events.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_results_are_ordered_by_practitioner(self, gateway, directory):
        gateway.busy_events.return_value = [_event("14:00", "14:30")]
        detector = ConflictDetector(gateway, directory)

        report = await detector.detect(window(), [PRACTITIONER_B, PRACTITIONER_A])

        assert [c.practitioner_id for c in report.conflicts] == [PRACTITIONER_A, PRACTITIONER_B]

    @pytest.mark.asyncio
    async def test_slow_calendar_is_undetermined(self, gateway):
        async def slow(practitioner_id, w):
            await asyncio.sleep(1)
            return [_event("14:00", "14:30")]

        gateway.busy_events.side_effect = slow
        detector = ConflictDetector(gateway, timeout_seconds=0.05)

        report = await detector.detect(window(), [PRACTITIONER_A])

        assert report.conflicts == []
        assert report.undetermined == [PRACTITIONER_A]

    @pytest.mark.asyncio
    async def test_unreachable_calendar_is_undetermined(self, gateway, observability):
        gateway.busy_events.side_effect = ExternalIntegrationUnavailable("503 from provider")
        detector = ConflictDetector(gateway)

        report = await detector.detect(window(), [PRACTITIONER_A, PRACTITIONER_B])

        assert report.undetermined == [PRACTITIONER_A, PRACTITIONER_B]
        failures = [
            e
            for e in observability.get_recent_events("integrations")
            if e["event_type"] == "calendar_lookup_failed"
        ]
        assert len(failures) == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_hide_other_conflicts(self, gateway):
        async def busy(practitioner_id, w):
            if practitioner_id == PRACTITIONER_A:
                raise ExternalIntegrationUnavailable("timeout")
            return [_event("14:00", "14:30")]

        gateway.busy_events.side_effect = busy
        detector = ConflictDetector(gateway)

        report = await detector.detect(window(), [PRACTITIONER_A, PRACTITIONER_B])

        assert report.undetermined == [PRACTITIONER_A]
        assert [c.practitioner_id for c in report.conflicts] == [PRACTITIONER_B]

    @pytest.mark.asyncio
    async def test_connection_status_is_cached_per_session(self, gateway):
        detector = ConflictDetector(gateway, cache=ConnectionStatusCache(ttl_seconds=60))

        await detector.detect(window("14:00", "14:30"), [PRACTITIONER_A])
        await detector.detect(window("15:00", "15:30"), [PRACTITIONER_A])

        assert gateway.is_connected.await_count == 1
        assert gateway.busy_events.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_connection_lookup_is_not_cached(self, gateway):
        gateway.is_connected.side_effect = [ExternalIntegrationUnavailable("down"), True]
        detector = ConflictDetector(gateway)

        first = await detector.detect(window(), [PRACTITIONER_A])
        second = await detector.detect(window(), [PRACTITIONER_A])

        assert first.undetermined == [PRACTITIONER_A]
        assert second.undetermined == []
        assert gateway.is_connected.await_count == 2

    @pytest.mark.asyncio
    async def test_name_falls_back_without_directory(self, gateway):
        gateway.busy_events.return_value = [_event("14:00", "14:30")]
        detector = ConflictDetector(gateway)

        report = await detector.detect(window(), [PRACTITIONER_A])

        assert report.conflicts[0].practitioner_name == "Practitioner"

    @pytest.mark.asyncio
    async def test_name_lookup_failure_keeps_conflicts(self, gateway, directory):
        gateway.busy_events.return_value = [_event("14:00", "14:30")]
        directory.display_names.side_effect = RuntimeError("database unavailable")
        detector = ConflictDetector(gateway, directory)

        report = await detector.detect(window(), [PRACTITIONER_A])

        assert [c.practitioner_name for c in report.conflicts] == ["Practitioner"]

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_is_undetermined(self, gateway, observability):
        gateway.busy_events.side_effect = AttributeError("'list' object has no attribute 'get'")
        detector = ConflictDetector(gateway)

        report = await detector.detect(window(), [PRACTITIONER_A])

        assert report.undetermined == [PRACTITIONER_A]
        assert any(
            e["event_type"] == "calendar_lookup_failed"
            for e in observability.get_recent_events("integrations")
        )

    @pytest.mark.asyncio
    async def test_invalid_window(self, gateway):
        detector = ConflictDetector(gateway)
        with pytest.raises(InvalidWindow):
            await detector.detect(window("14:30", "14:00"), [PRACTITIONER_A])
        gateway.is_connected.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_check_is_logged(self, gateway, observability):
        gateway.busy_events.return_value = [_event("14:00", "14:30")]
        detector = ConflictDetector(gateway)

        await detector.detect(window(), [PRACTITIONER_A])

        events = observability.get_recent_events("integrations")
        assert events[-1]["event_type"] == "conflict_check"
        assert events[-1]["conflict_count"] == 1
