"""Tests for availability resolution."""

import datetime as dt
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from practice_os.scheduling.availability import AvailabilityResolver, generate_grid
from practice_os.scheduling.errors import ConfigurationError
from practice_os.scheduling.models import (
    AppointmentDraft,
    AppointmentMode,
    AppointmentStatus,
    BlockedTime,
    DateRange,
    PractitionerAssignment,
    TenantContext,
)
from practice_os.scheduling.stores import InMemoryAppointmentStore, InMemoryAvailabilityRuleStore
from tests.conftest import (
    LOCATION,
    MONDAY,
    OTHER_LOCATION,
    PRACTITIONER_A,
    PRACTITIONER_B,
    draft,
    t,
    weekly_rule,
)

UTC_TENANT = TenantContext(timezone="UTC", session_minutes=30)
ONE_DAY = DateRange(start=MONDAY, end=MONDAY)


async def _seed(store: InMemoryAppointmentStore, appointment: AppointmentDraft):
    assignments = [
        PractitionerAssignment(
            practitioner_id=pid,
            start=appointment.window.start,
            end=appointment.window.end,
            is_primary=pid == appointment.primary_id,
        )
        for pid in appointment.practitioner_ids
    ]
    async with store.transaction() as tx:
        return await tx.insert_appointment(appointment, assignments, [])


def _starts(snapshot, practitioner_id=PRACTITIONER_A):
    return [w.start_time.strftime("%H:%M") for w in snapshot.slots[practitioner_id]]


@pytest.fixture
def resolver(rule_store, appointment_store):
    return AvailabilityResolver(rule_store, appointment_store, max_range_days=14)


class TestGenerateGrid:
    def test_trailing_minutes_are_dropped(self):
        tz = dt.timezone.utc
        span = (
            dt.datetime.combine(MONDAY, t("09:00"), tzinfo=tz),
            dt.datetime.combine(MONDAY, t("10:45"), tzinfo=tz),
        )
        grid = list(generate_grid(MONDAY, span, 30, "UTC"))
        assert [w.start_time for w in grid] == [t("09:00"), t("09:30"), t("10:00")]
        assert all(w.duration_minutes() == 30 for w in grid)

    def test_slots_in_spring_forward_gap_are_skipped(self):
        tz = ZoneInfo("America/New_York")
        sunday = dt.date(2026, 3, 8)
        span = (
            dt.datetime.combine(sunday, t("01:30"), tzinfo=tz),
            dt.datetime.combine(sunday, t("03:30"), tzinfo=tz),
        )
        grid = list(generate_grid(sunday, span, 30, "America/New_York"))
        assert [w.start_time for w in grid] == [t("03:00")]

    def test_fall_back_hour_is_kept(self):
        tz = ZoneInfo("America/New_York")
        sunday = dt.date(2026, 11, 1)
        span = (
            dt.datetime.combine(sunday, t("01:00"), tzinfo=tz),
            dt.datetime.combine(sunday, t("02:00"), tzinfo=tz),
        )
        grid = list(generate_grid(sunday, span, 30, "America/New_York"))
        assert [w.start_time for w in grid] == [t("01:00"), t("01:30")]


class TestRuleValidityWindow:
    EFFECTIVE = dt.date(2026, 3, 9)
    EXPIRY = dt.date(2026, 3, 16)

    def _rule(self):
        return weekly_rule().model_copy(
            update={"effective_date": self.EFFECTIVE, "expiry_date": self.EXPIRY}
        )

    def test_bounds_are_inclusive(self):
        rule = self._rule()
        assert not rule.applies_on(self.EFFECTIVE - dt.timedelta(days=7))
        assert rule.applies_on(self.EFFECTIVE)
        assert rule.applies_on(self.EXPIRY)
        assert not rule.applies_on(self.EXPIRY + dt.timedelta(days=7))

    def test_bounds_between_rule_days(self):
        rule = weekly_rule().model_copy(
            update={
                "effective_date": dt.date(2026, 3, 10),
                "expiry_date": dt.date(2026, 3, 22),
            }
        )
        assert not rule.applies_on(dt.date(2026, 3, 9))
        assert rule.applies_on(dt.date(2026, 3, 16))
        assert not rule.applies_on(dt.date(2026, 3, 23))

    @pytest.mark.asyncio
    async def test_resolve_honours_effective_and_expiry_dates(
        self, rule_store, appointment_store
    ):
        resolver = AvailabilityResolver(rule_store, appointment_store)
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [self._rule()])

        snapshot = await resolver.resolve(
            [PRACTITIONER_A],
            LOCATION,
            AppointmentMode.IN_PERSON,
            DateRange(start=MONDAY, end=dt.date(2026, 3, 23)),
            UTC_TENANT,
        )

        days = sorted({w.date for w in snapshot.slots[PRACTITIONER_A]})
        assert days == [self.EFFECTIVE, self.EXPIRY]


class TestResolve:
    @pytest.mark.asyncio
    async def test_weekly_rule_produces_session_slots(self, resolver, rule_store):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])

        snapshot = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
        )

        assert _starts(snapshot) == ["09:00", "09:30", "10:00", "10:30", "11:00", "11:30"]
        assert snapshot.existing_appointments == []
        assert snapshot.session_minutes == 30
        assert snapshot.timezone == "UTC"

    @pytest.mark.asyncio
    async def test_confirmed_appointment_removes_its_slot(
        self, resolver, rule_store, appointment_store
    ):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        await _seed(appointment_store, draft(status=AppointmentStatus.CONFIRMED))

        snapshot = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
        )

        assert _starts(snapshot) == ["09:00", "09:30", "10:30", "11:00", "11:30"]
        assert len(snapshot.existing_appointments) == 1
        assert snapshot.existing_appointments[0].status == AppointmentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_off_grid_appointment_removes_every_touched_slot(
        self, resolver, rule_store, appointment_store
    ):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        await _seed(appointment_store, draft(start="10:15", end="10:45"))

        snapshot = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
        )

        assert _starts(snapshot) == ["09:00", "09:30", "11:00", "11:30"]

    @pytest.mark.asyncio
    async def test_cancelled_appointment_does_not_block(
        self, resolver, rule_store, appointment_store
    ):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        await _seed(appointment_store, draft(status=AppointmentStatus.CANCELLED))

        snapshot = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
        )

        assert len(snapshot.slots[PRACTITIONER_A]) == 6
        # Still reported so callers can show it.
        assert snapshot.existing_appointments[0].status == AppointmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_blocked_time_removes_slots(self, resolver, rule_store):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        utc = dt.timezone.utc
        await rule_store.add_blocked_time(
            BlockedTime(
                practitioner_id=PRACTITIONER_A,
                start=dt.datetime.combine(MONDAY, t("10:00"), tzinfo=utc),
                end=dt.datetime.combine(MONDAY, t("11:00"), tzinfo=utc),
                reason="Staff meeting",
            )
        )

        snapshot = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
        )

        assert _starts(snapshot) == ["09:00", "09:30", "11:00", "11:30"]

    @pytest.mark.asyncio
    async def test_mode_filtering(self, resolver, rule_store):
        await rule_store.replace_rules(
            PRACTITIONER_A, LOCATION, [weekly_rule(modes=[AppointmentMode.VIRTUAL])]
        )

        in_person = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
        )
        virtual = await resolver.resolve(
            [PRACTITIONER_A], None, AppointmentMode.VIRTUAL, ONE_DAY, UTC_TENANT
        )

        assert in_person.slots[PRACTITIONER_A] == []
        assert len(virtual.slots[PRACTITIONER_A]) == 6

    @pytest.mark.asyncio
    async def test_without_location_rules_from_all_locations_apply(self, resolver, rule_store):
        await rule_store.replace_rules(
            PRACTITIONER_A, LOCATION, [weekly_rule(start="09:00", end="10:00")]
        )
        await rule_store.replace_rules(
            PRACTITIONER_A,
            OTHER_LOCATION,
            [weekly_rule(start="10:00", end="11:00", location_id=OTHER_LOCATION)],
        )

        anywhere = await resolver.resolve(
            [PRACTITIONER_A], None, AppointmentMode.VIRTUAL, ONE_DAY, UTC_TENANT
        )
        here = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.VIRTUAL, ONE_DAY, UTC_TENANT
        )

        assert _starts(anywhere) == ["09:00", "09:30", "10:00", "10:30"]
        assert _starts(here) == ["09:00", "09:30"]

    @pytest.mark.asyncio
    async def test_practitioners_are_resolved_independently(
        self, resolver, rule_store, appointment_store
    ):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        await rule_store.replace_rules(
            PRACTITIONER_B, LOCATION, [weekly_rule(practitioner_id=PRACTITIONER_B)]
        )
        await _seed(appointment_store, draft(practitioner_ids=[PRACTITIONER_A]))

        snapshot = await resolver.resolve(
            [PRACTITIONER_A, PRACTITIONER_B],
            LOCATION,
            AppointmentMode.IN_PERSON,
            ONE_DAY,
            UTC_TENANT,
        )

        assert len(snapshot.slots[PRACTITIONER_A]) == 5
        assert len(snapshot.slots[PRACTITIONER_B]) == 6

    @pytest.mark.asyncio
    async def test_refetch_is_idempotent(self, resolver, rule_store):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        args = ([PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT)

        first = await resolver.resolve(*args)
        second = await resolver.resolve(*args)

        assert first.slots == second.slots

    @pytest.mark.asyncio
    async def test_only_matching_weekdays_in_range(self, resolver, rule_store):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        week = DateRange(start=MONDAY, end=MONDAY + dt.timedelta(days=7))

        snapshot = await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, week, UTC_TENANT
        )

        dates = {w.date for w in snapshot.slots[PRACTITIONER_A]}
        assert dates == {MONDAY, MONDAY + dt.timedelta(days=7)}
        assert len(snapshot.slots[PRACTITIONER_A]) == 12

    @pytest.mark.asyncio
    async def test_tenant_session_duration(self, resolver, rule_store):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])

        snapshot = await resolver.resolve(
            [PRACTITIONER_A],
            LOCATION,
            AppointmentMode.IN_PERSON,
            ONE_DAY,
            TenantContext(timezone="UTC", session_minutes=45),
        )

        assert _starts(snapshot) == ["09:00", "09:45", "10:30", "11:15"]

    @pytest.mark.asyncio
    async def test_dst_gap_slots_are_skipped_on_the_wall_clock_grid(self, rule_store, appointment_store):
        resolver = AvailabilityResolver(rule_store, appointment_store)
        await rule_store.replace_rules(
            PRACTITIONER_A,
            LOCATION,
            [weekly_rule(day_of_week=6, start="01:00", end="04:00")],
        )
        tenant = TenantContext(timezone="America/New_York", session_minutes=30)
        spring_forward = dt.date(2026, 3, 8)
        regular = dt.date(2026, 3, 1)

        dst = await resolver.resolve(
            [PRACTITIONER_A],
            LOCATION,
            AppointmentMode.IN_PERSON,
            DateRange(start=spring_forward, end=spring_forward),
            tenant,
        )
        normal = await resolver.resolve(
            [PRACTITIONER_A],
            LOCATION,
            AppointmentMode.IN_PERSON,
            DateRange(start=regular, end=regular),
            tenant,
        )

        # 02:00-03:00 does not exist that night; slots touching it are dropped.
        assert _starts(normal) == ["01:00", "01:30", "02:00", "02:30", "03:00", "03:30"]
        assert _starts(dst) == ["01:00", "03:00", "03:30"]
        assert all(slot.exists_on_wall_clock() for slot in dst.slots[PRACTITIONER_A])

    @pytest.mark.asyncio
    async def test_appointment_in_other_zone_blocks_local_slot(
        self, rule_store, appointment_store
    ):
        resolver = AvailabilityResolver(rule_store, appointment_store)
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])
        # 15:00 UTC is 10:00 in New York on this date.
        await _seed(appointment_store, draft(start="15:00", end="15:30"))

        snapshot = await resolver.resolve(
            [PRACTITIONER_A],
            LOCATION,
            AppointmentMode.IN_PERSON,
            ONE_DAY,
            TenantContext(timezone="America/New_York", session_minutes=30),
        )

        assert "10:00" not in _starts(snapshot)
        assert snapshot.existing_appointments[0].start.hour == 10

    @pytest.mark.asyncio
    async def test_run_is_logged(self, resolver, rule_store, observability):
        await rule_store.replace_rules(PRACTITIONER_A, LOCATION, [weekly_rule()])

        await resolver.resolve(
            [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
        )

        events = observability.get_recent_events("availability")
        assert len(events) == 1
        assert events[0]["event_type"] == "availability_success"
        assert events[0]["slot_count"] == 6


class TestValidation:
    @pytest.mark.asyncio
    async def test_in_person_without_location_fails_before_store_access(self):
        rules = AsyncMock(spec=InMemoryAvailabilityRuleStore)
        appointments = AsyncMock(spec=InMemoryAppointmentStore)
        resolver = AvailabilityResolver(rules, appointments)

        with pytest.raises(ConfigurationError):
            await resolver.resolve(
                [PRACTITIONER_A], None, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT
            )

        rules.list_rules.assert_not_awaited()
        rules.list_blocked_time.assert_not_awaited()
        appointments.list_for_practitioner.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_range_too_long(self, resolver):
        too_long = DateRange(start=MONDAY, end=MONDAY + dt.timedelta(days=14))
        with pytest.raises(ConfigurationError, match="exceeds"):
            await resolver.resolve(
                [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, too_long, UTC_TENANT
            )

    @pytest.mark.asyncio
    async def test_inverted_range(self, resolver):
        backwards = DateRange(start=MONDAY, end=MONDAY - dt.timedelta(days=1))
        with pytest.raises(ConfigurationError):
            await resolver.resolve(
                [PRACTITIONER_A], LOCATION, AppointmentMode.IN_PERSON, backwards, UTC_TENANT
            )

    @pytest.mark.asyncio
    async def test_no_practitioners(self, resolver):
        with pytest.raises(ConfigurationError):
            await resolver.resolve([], LOCATION, AppointmentMode.IN_PERSON, ONE_DAY, UTC_TENANT)

    @pytest.mark.asyncio
    async def test_unknown_timezone(self, resolver):
        with pytest.raises(ConfigurationError):
            await resolver.resolve(
                [PRACTITIONER_A],
                LOCATION,
                AppointmentMode.IN_PERSON,
                ONE_DAY,
                TenantContext(timezone="Nowhere/Special"),
            )
