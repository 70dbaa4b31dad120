"""Tests for event routing."""

from payment_reconciler.engine import ReconciliationEngine
from payment_reconciler.events import (
    AccountUpdated,
    BalanceTopUp,
    DisputeClosed,
    DisputeCreated,
    LoggedEvent,
    PaymentFailed,
    PaymentSucceeded,
    PayoutFailed,
    PayoutPaid,
    TransferCreated,
    UnhandledEvent,
)
from payment_reconciler.notifications import NotificationOutbox
from payment_reconciler.services import EventRouter, HandlerContext


def unhandled(event_id="evt_1") -> UnhandledEvent:
    return UnhandledEvent(
        event_id=event_id, event_type="customer.created", created=None, account=None, object_id="cus_1"
    )


class TestEventRouter:
    async def test_registered_handler_receives_event(self):
        seen = []

        async def handler(ctx, event):
            seen.append(event)

        router = EventRouter()
        router.on(UnhandledEvent, handler)
        event = unhandled()

        await router.dispatch(HandlerContext(None, NotificationOutbox(), "evt_1"), event)

        assert seen == [event]

    async def test_unknown_types_are_logged(self, caplog):
        router = EventRouter()

        with caplog.at_level("WARNING", logger="payment_reconciler.services.router"):
            await router.dispatch(HandlerContext(None, NotificationOutbox(), "evt_1"), unhandled())

        assert "customer.created" in caplog.text

    async def test_observed_types_are_logged(self, caplog):
        event = LoggedEvent(
            event_id="evt_1",
            event_type="charge.refunded",
            created=None,
            account=None,
            object_id="ch_1",
            summary="charge refunded",
        )

        with caplog.at_level("INFO", logger="payment_reconciler.services.router"):
            await EventRouter().dispatch(HandlerContext(None, NotificationOutbox(), "evt_1"), event)

        assert "charge refunded" in caplog.text

    def test_engine_routes_every_variant(self, reconciler: ReconciliationEngine):
        assert reconciler.router.routed_types == {
            BalanceTopUp,
            PaymentSucceeded,
            PaymentFailed,
            AccountUpdated,
            TransferCreated,
            DisputeCreated,
            DisputeClosed,
            PayoutPaid,
            PayoutFailed,
            LoggedEvent,
            UnhandledEvent,
        }
