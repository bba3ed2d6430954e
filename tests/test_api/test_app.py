"""Tests for application wiring: error mapping and booking-session caches."""

import pytest
from fastapi.testclient import TestClient

from practice_os.api.app import create_app
from practice_os.api.dependencies import BookingSessionCaches
from practice_os.api.routes.scheduling import error_detail, error_status
from practice_os.scheduling.errors import (
    AppointmentNotFoundError,
    ConfigurationError,
    ExternalIntegrationUnavailable,
    IncompleteAssignmentError,
    InvalidTransitionError,
    OutOfBoundsError,
    SlotNoLongerAvailableError,
)
from tests.conftest import PRACTITIONER_A


@pytest.fixture
def app():
    app = create_app()

    @app.get("/boom/slot")
    async def slot_taken():
        raise SlotNoLongerAvailableError([PRACTITIONER_A])

    @app.get("/boom/unexpected")
    async def unexpected():
        raise RuntimeError("kaboom")

    return app


class TestCreateApp:
    def test_routes_are_mounted(self, app):
        paths = {route.path for route in app.routes}
        assert "/health" in paths
        assert "/api/v1/scheduling/availability" in paths
        assert "/api/v1/scheduling/appointments" in paths

    def test_scheduling_error_handler(self, app):
        response = TestClient(app).get("/boom/slot")

        assert response.status_code == 409
        assert response.json()["detail"]["refetch_availability"] is True
        assert "X-Process-Time" in response.headers

    def test_unexpected_error_hides_detail(self, app):
        response = TestClient(app, raise_server_exceptions=False).get("/boom/unexpected")

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc,status",
        [
            (SlotNoLongerAvailableError([PRACTITIONER_A]), 409),
            (InvalidTransitionError("no"), 409),
            (AppointmentNotFoundError("gone"), 404),
            (ConfigurationError("bad"), 422),
            (OutOfBoundsError("outside", practitioner_id=PRACTITIONER_A), 422),
            (IncompleteAssignmentError([PRACTITIONER_A]), 422),
            (ExternalIntegrationUnavailable("down"), 400),
        ],
    )
    def test_status(self, exc, status):
        assert error_status(exc) == status

    def test_incomplete_detail(self):
        detail = error_detail(IncompleteAssignmentError([PRACTITIONER_A]))
        assert detail["missing_practitioners"] == [str(PRACTITIONER_A)]

    def test_plain_detail(self):
        assert error_detail(ConfigurationError("location required")) == "location required"


class TestBookingSessionCaches:
    def test_same_session_shares_cache(self):
        caches = BookingSessionCaches(ttl_seconds=60)
        first = caches.for_session("session-1")
        first.set(PRACTITIONER_A, True)

        assert caches.for_session("session-1") is first
        assert caches.for_session("session-2") is not first

    def test_no_session_gets_fresh_cache(self):
        caches = BookingSessionCaches(ttl_seconds=60)

        assert caches.for_session(None) is not caches.for_session(None)
        assert len(caches) == 0

    def test_oldest_session_is_evicted(self):
        caches = BookingSessionCaches(ttl_seconds=60, max_sessions=2)
        oldest = caches.for_session("a")
        caches.for_session("b")
        caches.for_session("c")

        assert len(caches) == 2
        assert caches.for_session("a") is not oldest

