"""External service adapters: calendar sync and booking notifications."""

from practice_os.integrations.calendar import HttpCalendarGateway, NullCalendarGateway
from practice_os.integrations.notifications import (
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
)

__all__ = [
    "HttpCalendarGateway",
    "HttpNotificationDispatcher",
    "LoggingNotificationDispatcher",
    "NullCalendarGateway",
]
