"""Pytest configuration and fixtures."""

import datetime as dt
import uuid
from typing import Iterable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from practice_os.core.models import Base
from practice_os.observability import ObservabilityLogger
from practice_os.scheduling.models import AppointmentDraft, AppointmentMode, WeeklyAvailabilityRule
from practice_os.scheduling.stores import InMemoryAppointmentStore, InMemoryAvailabilityRuleStore
from practice_os.scheduling.timewindow import TimeWindow

PRACTITIONER_A = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
PRACTITIONER_B = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
LOCATION = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
OTHER_LOCATION = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")

MONDAY = dt.date(2026, 3, 2)


def t(value: str) -> dt.time:
    return dt.time.fromisoformat(value)


def weekly_rule(
    practitioner_id: uuid.UUID = PRACTITIONER_A,
    day_of_week: int = 0,
    start: str = "09:00",
    end: str = "12:00",
    location_id: uuid.UUID = LOCATION,
    modes: Optional[Iterable[AppointmentMode]] = None,
) -> WeeklyAvailabilityRule:
    return WeeklyAvailabilityRule(
        practitioner_id=practitioner_id,
        location_id=location_id,
        day_of_week=day_of_week,
        start_time=t(start),
        end_time=t(end),
        modes=frozenset(modes) if modes is not None else frozenset(AppointmentMode),
    )


def window(
    start: str = "14:00",
    end: str = "14:30",
    day: dt.date = MONDAY,
    tz: str = "UTC",
) -> TimeWindow:
    return TimeWindow(date=day, start_time=t(start), end_time=t(end), timezone=tz)


def draft(
    practitioner_ids: Iterable[uuid.UUID] = (PRACTITIONER_A,),
    start: str = "10:00",
    end: str = "10:30",
    day: dt.date = MONDAY,
    tz: str = "UTC",
    **kwargs,
) -> AppointmentDraft:
    kwargs.setdefault("mode", AppointmentMode.IN_PERSON)
    kwargs.setdefault("location_id", LOCATION)
    return AppointmentDraft(
        practitioner_ids=list(practitioner_ids),
        window=window(start, end, day, tz),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def observability(tmp_path):
    """Route scheduling telemetry to a per-test directory."""
    obs = ObservabilityLogger(log_dir=tmp_path / "obs", enabled=True)
    ObservabilityLogger._instance = obs
    yield obs
    ObservabilityLogger._instance = None


@pytest.fixture
def rule_store():
    return InMemoryAvailabilityRuleStore()


@pytest.fixture
def appointment_store(rule_store):
    return InMemoryAppointmentStore(rule_store)


# ---------------------------------------------------------------------------
# SQLite-backed fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduling.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as sess:
        yield sess
        await sess.rollback()
