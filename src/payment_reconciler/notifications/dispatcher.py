"""User notification port.

Notifications are fire-and-forget. Handlers queue them in an outbox while
the financial transaction is open; the engine flushes the outbox only after
commit. Every send is isolated: a failing dispatcher is logged and never
affects financial state or the webhook response.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

_CURRENCY_SYMBOLS = {"GBP": "£", "EUR": "€", "USD": "$"}


def format_amount(amount_minor: int, currency: str) -> str:
    """Format a minor-unit amount for display, e.g. 10000 GBP -> £100.00."""
    code = currency.upper()
    major = (Decimal(amount_minor) / 100).quantize(Decimal("0.01"))
    symbol = _CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{major:,}"
    return f"{major:,} {code}"


@dataclass(frozen=True)
class Notification:
    """A user-facing alert."""

    user_id: str
    title: str
    body: str
    priority: str = "medium"  # low/medium/high
    action_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Protocol for notification delivery adapters."""

    async def send(self, notification: Notification) -> None:
        """Deliver one notification. May raise; callers isolate failures."""
        ...


class LoggingNotificationDispatcher:
    """Dispatcher that only logs. Default when no service URL is configured."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification for user %s: %s (priority=%s)",
            notification.user_id,
            notification.title,
            notification.priority,
        )


class HttpNotificationDispatcher:
    """Posts notifications as JSON to the notification service."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = base_url.rstrip("/") + "/notifications"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, notification: Notification) -> None:
        response = await self._client.post(self._url, json=notification.to_dict())
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


class NotificationOutbox:
    """Notifications collected during a transaction, flushed after commit."""

    def __init__(self) -> None:
        self._pending: list[Notification] = []

    def add(self, notification: Notification) -> None:
        self._pending.append(notification)

    def clear(self) -> None:
        self._pending = []

    @property
    def pending(self) -> list[Notification]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    async def flush(self, dispatcher: NotificationDispatcher) -> int:
        """Send everything queued. Returns the number delivered."""
        pending, self._pending = self._pending, []
        delivered = 0
        for notification in pending:
            try:
                await dispatcher.send(notification)
                delivered += 1
            except Exception:
                logger.exception(
                    "Notification %r for user %s failed",
                    notification.title,
                    notification.user_id,
                )
        return delivered
