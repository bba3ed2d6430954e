"""FastAPI dependencies wiring the scheduling core to stores and integrations."""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from practice_os.config import get_settings
from practice_os.core.database import get_session_factory
from practice_os.core.repository import OrganizationRepository
from practice_os.integrations.calendar import NullCalendarGateway
from practice_os.integrations.notifications import LoggingNotificationDispatcher
from practice_os.scheduling.availability import AvailabilityResolver
from practice_os.scheduling.booking import BookingOrchestrator
from practice_os.scheduling.conflicts import ConflictDetector, ConnectionStatusCache
from practice_os.scheduling.interfaces import ExternalCalendarGateway, NotificationDispatcher
from practice_os.scheduling.models import TenantContext
from practice_os.scheduling.stores import (
    SqlAppointmentStore,
    SqlAvailabilityRuleStore,
    SqlPractitionerDirectory,
)


class BookingSessionCaches:
    """Connection-status caches keyed by booking session, oldest evicted first."""

    def __init__(self, ttl_seconds: float, max_sessions: int = 1024):
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._caches: OrderedDict[str, tuple[ConnectionStatusCache, float]] = OrderedDict()

    def for_session(self, session_key: Optional[str]) -> ConnectionStatusCache:
        if not session_key:
            return ConnectionStatusCache(ttl_seconds=self.ttl_seconds)

        now = time.monotonic()
        entry = self._caches.get(session_key)
        if entry is not None and now - entry[1] <= self.ttl_seconds:
            self._caches.move_to_end(session_key)
            return entry[0]

        cache = ConnectionStatusCache(ttl_seconds=self.ttl_seconds)
        self._caches[session_key] = (cache, now)
        self._caches.move_to_end(session_key)
        while len(self._caches) > self.max_sessions:
            self._caches.popitem(last=False)
        return cache

    def __len__(self) -> int:
        return len(self._caches)


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------

async def get_tenant_context(
    x_organization_id: Optional[uuid.UUID] = Header(default=None),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> TenantContext:
    """Tenant timezone and session length: the organization's, else the defaults."""
    settings = get_settings()
    if x_organization_id is None:
        return TenantContext(
            timezone=settings.tenant_timezone,
            session_minutes=settings.appointment_session_duration,
        )

    async with factory() as session:
        org = await OrganizationRepository(session).get_by_id(x_organization_id)
        if not org or not org.active:
            raise HTTPException(status_code=404, detail="Organization not found")
        return TenantContext(timezone=org.timezone, session_minutes=org.session_duration_minutes)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

def get_rule_store(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlAvailabilityRuleStore:
    return SqlAvailabilityRuleStore(factory)


def get_appointment_store(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlAppointmentStore:
    return SqlAppointmentStore(factory)


def get_practitioner_directory(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlPractitionerDirectory:
    return SqlPractitionerDirectory(factory)


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------

def get_calendar_gateway(request: Request) -> ExternalCalendarGateway:
    return getattr(request.app.state, "calendar_gateway", None) or NullCalendarGateway()


def get_notifier(request: Request) -> NotificationDispatcher:
    return getattr(request.app.state, "notifier", None) or LoggingNotificationDispatcher()


def _session_caches(request: Request) -> BookingSessionCaches:
    caches = getattr(request.app.state, "booking_session_caches", None)
    if caches is None:
        caches = BookingSessionCaches(get_settings().calendar_connection_cache_ttl)
        request.app.state.booking_session_caches = caches
    return caches


# ---------------------------------------------------------------------------
# Scheduling services
# ---------------------------------------------------------------------------

def get_availability_resolver(
    rules: SqlAvailabilityRuleStore = Depends(get_rule_store),
    appointments: SqlAppointmentStore = Depends(get_appointment_store),
) -> AvailabilityResolver:
    return AvailabilityResolver(
        rules, appointments, max_range_days=get_settings().max_availability_range_days
    )


def get_conflict_detector(
    request: Request,
    x_booking_session: Optional[str] = Header(default=None),
    gateway: ExternalCalendarGateway = Depends(get_calendar_gateway),
    directory: SqlPractitionerDirectory = Depends(get_practitioner_directory),
) -> ConflictDetector:
    return ConflictDetector(
        gateway,
        directory,
        timeout_seconds=get_settings().calendar_lookup_timeout,
        cache=_session_caches(request).for_session(x_booking_session),
    )


def get_booking_orchestrator(
    request: Request,
    appointments: SqlAppointmentStore = Depends(get_appointment_store),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> BookingOrchestrator:
    """One orchestrator per app so pending confirmations can be drained on shutdown."""
    orchestrator = getattr(request.app.state, "booking_orchestrator", None)
    if orchestrator is None:
        orchestrator = BookingOrchestrator(appointments, notifier)
        request.app.state.booking_orchestrator = orchestrator
    return orchestrator
