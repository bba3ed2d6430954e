"""HTTP client for the external calendar-sync service.

The service exposes, per practitioner:
- GET /practitioners/{id}/connection  ->  {"connected": bool}
- GET /practitioners/{id}/busy?start=&end=  ->  {"events": [{"title", "start", "end"}]}
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

import httpx

from practice_os.config import get_settings
from practice_os.scheduling.errors import ExternalIntegrationUnavailable
from practice_os.scheduling.models import CalendarEvent
from practice_os.scheduling.timewindow import TimeWindow

logger = logging.getLogger(__name__)


class HttpCalendarGateway:
    """Reads connection status and busy blocks from the calendar-sync service.

    Every transport or HTTP failure is raised as
    ``ExternalIntegrationUnavailable``; callers decide how to degrade.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.calendar_service_url
        self.token = token if token is not None else settings.calendar_service_token
        self.timeout = timeout or settings.calendar_lookup_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        client = await self._get_client()
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ExternalIntegrationUnavailable(f"Calendar service request {path} failed: {e}") from e
        except ValueError as e:
            raise ExternalIntegrationUnavailable(f"Calendar service returned invalid JSON for {path}") from e
        return data

    async def is_connected(self, practitioner_id: uuid.UUID) -> bool:
        data = await self._get_json(f"/practitioners/{practitioner_id}/connection")
        if not isinstance(data, dict):
            raise ExternalIntegrationUnavailable(
                f"Calendar service returned {type(data).__name__} for connection status"
            )
        return bool(data.get("connected", False))

    async def busy_events(self, practitioner_id: uuid.UUID, window: TimeWindow) -> list[CalendarEvent]:
        data = await self._get_json(
            f"/practitioners/{practitioner_id}/busy",
            params={"start": window.start.isoformat(), "end": window.end.isoformat()},
        )
        events = (data.get("events") or []) if isinstance(data, dict) else data
        if not isinstance(events, list):
            raise ExternalIntegrationUnavailable("Calendar service busy events are not a list")
        try:
            return [
                CalendarEvent(
                    title=e.get("title") or "Busy",
                    start=e["start"],
                    end=e["end"],
                )
                for e in events
            ]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ExternalIntegrationUnavailable(f"Malformed busy event from calendar service: {e}") from e


class NullCalendarGateway:
    """Used when no calendar service is configured: nobody is connected."""

    async def is_connected(self, practitioner_id: uuid.UUID) -> bool:
        return False

    async def busy_events(self, practitioner_id: uuid.UUID, window: TimeWindow) -> list[CalendarEvent]:
        return []

    async def close(self) -> None:
        return None
