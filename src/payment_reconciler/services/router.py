"""Event router: typed event variant -> handler."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from payment_reconciler.events.types import GatewayEvent, LoggedEvent, UnhandledEvent
from payment_reconciler.services.context import HandlerContext

logger = logging.getLogger(__name__)

Handler = Callable[[HandlerContext, Any], Awaitable[Any]]


class EventRouter:
    """Dispatches each event variant to exactly one handler.

    Observed-only and unknown variants have their own arms that log and
    return; nothing is silently dropped.

    Usage:
        router = EventRouter()
        router.on(PaymentSucceeded, payments.on_succeeded)
        await router.dispatch(ctx, event)
    """

    def __init__(self) -> None:
        self._routes: dict[type[GatewayEvent], Handler] = {
            LoggedEvent: _log_observed,
            UnhandledEvent: _log_unhandled,
        }

    def on(self, event_class: type[GatewayEvent], handler: Handler) -> None:
        """Register the handler for an event variant."""
        self._routes[event_class] = handler

    def handler_for(self, event: GatewayEvent) -> Handler:
        return self._routes.get(type(event), _log_unhandled)

    @property
    def routed_types(self) -> set[type[GatewayEvent]]:
        return set(self._routes)

    async def dispatch(self, ctx: HandlerContext, event: GatewayEvent) -> None:
        handler = self.handler_for(event)
        logger.debug("Routing %s (%s) to %s", event.event_id, event.kind, getattr(handler, "__qualname__", handler))
        await handler(ctx, event)


async def _log_observed(ctx: HandlerContext, event: LoggedEvent) -> None:
    logger.info("Event %s %s: %s (%s)", event.event_id, event.event_type, event.summary, event.object_id)


async def _log_unhandled(ctx: HandlerContext, event: GatewayEvent) -> None:
    logger.warning("Unhandled event type %s (%s); acknowledged", event.event_type, event.event_id)
