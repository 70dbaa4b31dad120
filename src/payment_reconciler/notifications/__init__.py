"""User notification delivery."""

from payment_reconciler.notifications.dispatcher import (
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    Notification,
    NotificationDispatcher,
    NotificationOutbox,
    format_amount,
)

__all__ = [
    "HttpNotificationDispatcher",
    "LoggingNotificationDispatcher",
    "Notification",
    "NotificationDispatcher",
    "NotificationOutbox",
    "format_amount",
]
