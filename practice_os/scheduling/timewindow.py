"""Dated wall-clock time windows and pure interval arithmetic.

Every window lives on a single calendar date in one IANA timezone (the
tenant's). Start and end are composed from the wall-clock date and time, so
adding minutes never drifts across a DST transition. Comparisons between
windows in the same zone are wall-clock comparisons; windows in different
zones compare as instants.
"""

from __future__ import annotations

import datetime as dt
from functools import lru_cache
from typing import Annotated, Iterable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AfterValidator, BaseModel, ConfigDict

from practice_os.scheduling.errors import ConfigurationError, InvalidWindow


def _reject_utc_offset(value: dt.time) -> dt.time:
    if value.tzinfo is not None:
        raise ValueError(
            f"Time {value.isoformat()} carries a UTC offset; send wall-clock time "
            "in the organization's timezone"
        )
    return value


# A time of day with no offset; the surrounding timezone gives it meaning.
WallClockTime = Annotated[dt.time, AfterValidator(_reject_utc_offset)]


class Interval(Protocol):
    """Anything with timezone-aware ``start`` and ``end`` datetimes."""

    @property
    def start(self) -> dt.datetime: ...

    @property
    def end(self) -> dt.datetime: ...


@lru_cache(maxsize=64)
def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, failing as a configuration error."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name!r}") from e


def to_timezone(value: dt.datetime, tz_name: str) -> dt.datetime:
    """Convert an instant to wall-clock time in *tz_name*.

    Naive datetimes are treated as UTC (SQLite drops offsets on read).
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(get_zone(tz_name))


def wall_clock_exists(value: dt.datetime) -> bool:
    """False for local times skipped by a DST gap (02:30 on a spring-forward night).

    Such times cannot survive a round trip through UTC storage.
    """
    if value.tzinfo is None:
        return True
    round_trip = value.astimezone(dt.timezone.utc).astimezone(value.tzinfo)
    return round_trip.replace(tzinfo=None) == value.replace(tzinfo=None)


class TimeWindow(BaseModel):
    """A dated wall-clock range ``[start_time, end_time)`` in one timezone."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    start_time: WallClockTime
    end_time: WallClockTime
    timezone: str = "UTC"

    @property
    def tz(self) -> ZoneInfo:
        return get_zone(self.timezone)

    @property
    def start(self) -> dt.datetime:
        return dt.datetime.combine(self.date, self.start_time, tzinfo=self.tz)

    @property
    def end(self) -> dt.datetime:
        return dt.datetime.combine(self.date, self.end_time, tzinfo=self.tz)

    def duration_minutes(self) -> int:
        return duration_minutes(self)

    def is_valid(self) -> bool:
        return self.start < self.end

    def exists_on_wall_clock(self) -> bool:
        return wall_clock_exists(self.start) and wall_clock_exists(self.end)

    @classmethod
    def from_datetimes(
        cls, start: dt.datetime, end: dt.datetime, tz_name: str = "UTC"
    ) -> "TimeWindow":
        """Build a window from two instants, expressed in *tz_name*."""
        local_start = to_timezone(start, tz_name)
        local_end = to_timezone(end, tz_name)
        if local_start.date() != local_end.date():
            raise InvalidWindow(
                f"Window {local_start.isoformat()} - {local_end.isoformat()} "
                "spans more than one calendar date"
            )
        return cls(
            date=local_start.date(),
            start_time=local_start.time(),
            end_time=local_end.time(),
            timezone=tz_name,
        )

    @classmethod
    def for_session(
        cls, day: dt.date, start_time: dt.time, minutes: int, tz_name: str = "UTC"
    ) -> "TimeWindow":
        """A window of *minutes* starting at *start_time* on *day* (wall clock)."""
        naive_start = dt.datetime.combine(day, start_time)
        naive_end = naive_start + dt.timedelta(minutes=minutes)
        if naive_end.date() != day:
            raise InvalidWindow("Session would run past midnight")
        return cls(
            date=day,
            start_time=naive_start.time(),
            end_time=naive_end.time(),
            timezone=tz_name,
        )

    def __str__(self) -> str:
        return (
            f"{self.date.isoformat()} {self.start_time.strftime('%H:%M')}-"
            f"{self.end_time.strftime('%H:%M')} {self.timezone}"
        )


# ----------------------------------------------------------------------
# Pure predicates
# ----------------------------------------------------------------------


def overlaps(a: Interval, b: Interval) -> bool:
    """Half-open overlap test; touching endpoints do not overlap."""
    return a.start < b.end and b.start < a.end


def contains(outer: Interval, inner: Interval) -> bool:
    """True iff *inner* lies entirely within *outer* (bounds inclusive)."""
    return outer.start <= inner.start and inner.end <= outer.end


def duration_minutes(window: Interval) -> int:
    """Length of *window* in whole minutes; non-positive lengths are invalid."""
    minutes = int((window.end - window.start).total_seconds() // 60)
    if minutes <= 0:
        raise InvalidWindow(f"Window {window} has non-positive duration ({minutes} min)")
    return minutes


# ----------------------------------------------------------------------
# Interval arithmetic on (start, end) pairs
# ----------------------------------------------------------------------

Span = tuple[dt.datetime, dt.datetime]


def merge_spans(spans: Iterable[Span]) -> list[Span]:
    """Union of spans; overlapping or touching spans are coalesced."""
    merged: list[Span] = []
    for start, end in sorted(s for s in spans if s[0] < s[1]):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def subtract_spans(base: Span, blocks: Iterable[Span]) -> list[Span]:
    """Remove every block from *base*, returning the ordered free pieces."""
    free: list[Span] = []
    cursor, limit = base
    for start, end in merge_spans(blocks):
        if end <= cursor or start >= limit:
            continue
        if start > cursor:
            free.append((cursor, start))
        cursor = max(cursor, end)
        if cursor >= limit:
            break
    if cursor < limit:
        free.append((cursor, limit))
    return free
