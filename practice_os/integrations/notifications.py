"""Booking confirmation dispatchers."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from practice_os.config import get_settings
from practice_os.scheduling.errors import ExternalIntegrationUnavailable
from practice_os.scheduling.models import Appointment

logger = logging.getLogger(__name__)


def booking_payload(appointment: Appointment) -> dict:
    """Webhook body for a newly created appointment."""
    return {
        "event": "appointment.created",
        "appointment_id": str(appointment.id),
        "status": appointment.status.value,
        "mode": appointment.mode.value,
        "date": appointment.window.date.isoformat(),
        "start": appointment.window.start.isoformat(),
        "end": appointment.window.end.isoformat(),
        "timezone": appointment.window.timezone,
        "location_id": str(appointment.location_id) if appointment.location_id else None,
        "patient_id": str(appointment.patient_id) if appointment.patient_id else None,
        "practitioners": [
            {
                "practitioner_id": str(p.practitioner_id),
                "start": p.start.isoformat(),
                "end": p.end.isoformat(),
                "is_primary": p.is_primary,
            }
            for p in appointment.practitioners
        ],
    }


class HttpNotificationDispatcher:
    """POSTs booking confirmations to a notification webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.timeout = timeout or settings.notification_timeout
        self._transport = transport

    async def booking_created(self, appointment: Appointment) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=booking_payload(appointment))
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalIntegrationUnavailable(f"Notification webhook failed: {e}") from e
        logger.info("Confirmation sent for appointment %s", appointment.id)


class LoggingNotificationDispatcher:
    """Default dispatcher: records the confirmation in the application log."""

    async def booking_created(self, appointment: Appointment) -> None:
        logger.info(
            "Appointment %s booked (%s) for %s",
            appointment.id,
            appointment.window,
            ", ".join(str(p) for p in appointment.practitioner_ids),
        )
