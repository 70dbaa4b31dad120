"""End-to-end tests for the reconciliation engine.

Tests verify:
1. Replays and concurrent deliveries apply side effects exactly once
2. Validation failures are acknowledged, annotated and never retried
3. Unexpected failures are retryable and reclaimed on redelivery
4. Notifications never affect financial state or the outcome
"""

import asyncio

import pytest

from payment_reconciler.engine import (
    EventNotFound,
    ProcessingFailed,
    ReconciliationEngine,
    WebhookStatus,
)
from payment_reconciler.errors import SignatureInvalid
from payment_reconciler.models import (
    AccountBalance,
    Dispute,
    EscrowTransaction,
    Order,
    PaymentEvent,
    TimesheetEntry,
)
from tests.factories import (
    FailingDispatcher,
    FakeChargeLookup,
    gateway_event,
    payment_intent,
    signed,
)


async def deliver(reconciler: ReconciliationEngine, body: dict):
    payload, header = signed(body)
    return await reconciler.handle(payload, header)


def order_paid(event_id="evt_1", payment_id="pi_1", amount=10000, currency="gbp", order_id="O1") -> dict:
    return gateway_event(
        event_id,
        "payment_intent.succeeded",
        payment_intent(payment_id, amount, currency, order_id=order_id),
    )


async def ledger_row(data, event_id: str) -> PaymentEvent:
    [row] = await data.all(PaymentEvent, PaymentEvent.external_event_id == event_id)
    return row


class FlakyChargeLookup(FakeChargeLookup):
    """Charge lookup whose first calls fail like a gateway outage."""

    def __init__(self, charges, failures: int = 1):
        super().__init__(charges)
        self.failures = failures

    async def payment_reference_for_charge(self, charge_id: str):
        if self.failures:
            self.failures -= 1
            raise TimeoutError("gateway timed out")
        return await super().payment_reference_for_charge(charge_id)


class TestSamplePayment:
    """A GBP order paid in full."""

    async def test_payment_holds_escrow(self, reconciler, data, dispatcher):
        await data.seller()
        await data.order("O1", total_amount="100.00", currency="GBP", payment_reference="pi_1")

        outcome = await deliver(reconciler, order_paid())

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.annotation is None
        assert outcome.notifications_sent == 2

        order = await data.get(Order, "O1")
        assert order.escrow_status == "held"

        [hold] = await data.all(EscrowTransaction)
        assert hold.kind == "hold"
        assert hold.amount == 10000

        assert len(dispatcher.to("seller_user")) == 1
        assert len(dispatcher.to("buyer_user")) == 1

        row = await ledger_row(data, "evt_1")
        assert row.processed is True
        assert row.error is None
        assert row.processed_at is not None


class TestIdempotency:
    async def test_replayed_event_applies_once(self, reconciler, data, dispatcher):
        await data.seller()
        await data.order("O1", payment_reference="pi_1")
        body = order_paid()

        first = await deliver(reconciler, body)
        replays = [await deliver(reconciler, body) for _ in range(3)]

        assert first.status == WebhookStatus.PROCESSED
        assert all(r.status == WebhookStatus.ALREADY_PROCESSED for r in replays)
        assert await data.count(EscrowTransaction) == 1
        assert len(dispatcher.sent) == 2

    async def test_concurrent_deliveries_single_side_effect(self, reconciler, data, dispatcher):
        """Both callers get an acknowledgement; one set of side effects."""
        await data.seller()
        await data.order("O1", payment_reference="pi_1")
        body = order_paid()

        outcomes = await asyncio.gather(deliver(reconciler, body), deliver(reconciler, body))

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses.count("processed") == 1
        assert set(statuses) <= {"processed", "processing", "already_processed"}
        assert await data.count(EscrowTransaction) == 1
        assert len(dispatcher.sent) == 2

    async def test_second_payment_for_held_order_is_ignored(self, reconciler, data):
        await data.order("O1", payment_reference="pi_1")

        await deliver(reconciler, order_paid("evt_1"))
        outcome = await deliver(reconciler, order_paid("evt_2"))

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.annotation is None
        assert await data.count(EscrowTransaction) == 1


class TestValidationFailures:
    """Permanently invalid events are acknowledged and annotated."""

    async def test_currency_mismatch_changes_nothing(self, reconciler, data, dispatcher):
        await data.order("O1", currency="GBP", payment_reference="pi_1")

        outcome = await deliver(reconciler, order_paid(currency="usd"))

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.annotation.startswith("currency_mismatch:")
        assert (await data.get(Order, "O1")).escrow_status == "pending"
        assert await data.count(EscrowTransaction) == 0
        assert dispatcher.sent == []

        row = await ledger_row(data, "evt_1")
        assert row.processed is True
        assert row.error == outcome.annotation

    async def test_annotated_event_is_not_retried(self, reconciler, data):
        await data.order("O1", currency="GBP", payment_reference="pi_1")
        body = order_paid(currency="usd")

        await deliver(reconciler, body)
        outcome = await deliver(reconciler, body)

        assert outcome.status == WebhookStatus.ALREADY_PROCESSED

    async def test_unknown_order(self, reconciler, data):
        outcome = await deliver(reconciler, order_paid(order_id="O404"))

        assert outcome.annotation.startswith("order_not_found:")
        assert (await ledger_row(data, "evt_1")).processed is True

    async def test_reference_mismatch(self, reconciler, data):
        await data.order("O1", payment_reference="pi_original")

        outcome = await deliver(reconciler, order_paid(payment_id="pi_forged"))

        assert outcome.annotation.startswith("reference_mismatch:")
        order = await data.get(Order, "O1")
        assert order.escrow_status == "pending"
        assert order.payment_reference == "pi_original"

    async def test_malformed_payload(self, reconciler, data):
        body = gateway_event("evt_1", "payment_intent.succeeded", {"id": "pi_1", "currency": "gbp"})

        outcome = await deliver(reconciler, body)

        assert outcome.annotation.startswith("malformed_payload:")

    async def test_amount_mismatch_still_holds(self, reconciler, data):
        """Amount differences are a security alert, not a rejection."""
        await data.order("O1", total_amount="100.00", payment_reference="pi_1")

        outcome = await deliver(reconciler, order_paid(amount=9000))

        assert outcome.annotation is None
        [hold] = await data.all(EscrowTransaction)
        assert hold.amount == 9000


class TestRetainerRouting:
    async def test_timesheet_wins_over_colliding_order(self, reconciler, data, dispatcher):
        """A reference that is a timesheet id never touches escrow."""
        await data.seller()
        await data.retainer()
        await data.timesheet("shared_1", payment_reference="pi_ts")
        await data.order("shared_1", payment_reference="pi_ts")

        outcome = await deliver(reconciler, order_paid(payment_id="pi_ts", order_id="shared_1"))

        assert outcome.annotation is None
        assert (await data.get(TimesheetEntry, "shared_1")).status == "paid"
        assert (await data.get(Order, "shared_1")).escrow_status == "pending"
        assert await data.count(EscrowTransaction) == 0
        assert [n.title for n in dispatcher.sent] == ["Retainer payment received"]

    async def test_failed_retainer_payment_clears_reference(self, reconciler, data, dispatcher):
        await data.seller()
        await data.retainer()
        await data.timesheet("ts_1", status="approved", payment_reference="pi_ts")
        body = gateway_event(
            "evt_f1",
            "payment_intent.payment_failed",
            payment_intent("pi_ts", 40000, order_id="ts_1"),
        )

        await deliver(reconciler, body)

        entry = await data.get(TimesheetEntry, "ts_1")
        assert entry.payment_reference is None
        assert entry.status == "approved"
        assert len(dispatcher.to("retainer_buyer")) == 1
        assert len(dispatcher.sent) == 1


class TestDisputes:
    async def test_dispute_on_released_order_forces_hold(self, reconciler, data, charge_lookup):
        await data.order("O1", escrow_status="released", status="completed", payment_reference="pi_1")
        charge_lookup.charges["ch_1"] = "pi_1"
        body = gateway_event(
            "evt_d1",
            "charge.dispute.created",
            {"id": "dp_1", "amount": 10000, "currency": "gbp", "reason": "fraudulent", "charge": "ch_1"},
        )

        await deliver(reconciler, body)

        order = await data.get(Order, "O1")
        assert order.escrow_status == "held"
        assert order.status == "disputed"
        assert await data.count(Dispute) == 1

    async def test_payment_after_dispute_records_hold(self, reconciler, data, charge_lookup):
        await data.order("O1", payment_reference="pi_1")
        charge_lookup.charges["ch_1"] = "pi_1"
        dispute = {"id": "dp_1", "amount": 10000, "currency": "gbp", "reason": "general", "charge": "ch_1"}

        await deliver(reconciler, gateway_event("evt_d1", "charge.dispute.created", dispute))
        outcome = await deliver(reconciler, order_paid("evt_p1"))

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.annotation is None
        order = await data.get(Order, "O1")
        assert order.escrow_status == "held"
        assert order.status == "disputed"
        [hold] = await data.all(EscrowTransaction)
        assert hold.amount == 10000
        assert hold.payment_reference == "pi_1"

    async def test_same_dispute_in_new_event_is_not_duplicated(self, reconciler, data, charge_lookup):
        """The gateway may resend a dispute under a new event id."""
        await data.order("O1", escrow_status="held", status="accepted", payment_reference="pi_1")
        charge_lookup.charges["ch_1"] = "pi_1"
        dispute = {"id": "dp_1", "amount": 10000, "currency": "gbp", "reason": "general", "charge": "ch_1"}

        await deliver(reconciler, gateway_event("evt_d1", "charge.dispute.created", dispute))
        outcome = await deliver(reconciler, gateway_event("evt_d2", "charge.dispute.created", dispute))

        assert outcome.status == WebhookStatus.PROCESSED
        assert await data.count(Dispute) == 1

    async def test_unresolvable_charge_is_annotated(self, reconciler, data):
        body = gateway_event(
            "evt_d1",
            "charge.dispute.created",
            {"id": "dp_1", "amount": 1, "currency": "gbp", "charge": "ch_unknown"},
        )

        outcome = await deliver(reconciler, body)

        assert outcome.annotation.startswith("reference_unresolvable:")


class TestFailureAndRetry:
    async def test_unexpected_failure_is_retryable(self, session_factory, engine_config, data, dispatcher):
        await data.order("O1", payment_reference="pi_1")
        lookup = FlakyChargeLookup({"ch_1": "pi_1"}, failures=1)
        reconciler = ReconciliationEngine(
            session_factory, engine_config, dispatcher=dispatcher, charge_lookup=lookup
        )
        body = gateway_event(
            "evt_d1",
            "charge.dispute.created",
            {"id": "dp_1", "amount": 10000, "currency": "gbp", "charge": "ch_1"},
        )

        with pytest.raises(ProcessingFailed) as exc_info:
            await deliver(reconciler, body)
        assert exc_info.value.event_id == "evt_d1"

        row = await ledger_row(data, "evt_d1")
        assert row.processed is False
        assert row.error.startswith("TimeoutError")
        assert await data.count(Dispute) == 0
        assert dispatcher.sent == []

        outcome = await deliver(reconciler, body)

        assert outcome.status == WebhookStatus.PROCESSED
        assert await data.count(Dispute) == 1
        row = await ledger_row(data, "evt_d1")
        assert row.processed is True
        assert row.attempt_count == 2

    async def test_replay_failed_event(self, session_factory, engine_config, data):
        await data.order("O1", payment_reference="pi_1")
        reconciler = ReconciliationEngine(
            session_factory,
            engine_config,
            charge_lookup=FlakyChargeLookup({"ch_1": "pi_1"}, failures=1),
        )
        body = gateway_event(
            "evt_d1",
            "charge.dispute.created",
            {"id": "dp_1", "amount": 10000, "currency": "gbp", "charge": "ch_1"},
        )
        with pytest.raises(ProcessingFailed):
            await deliver(reconciler, body)

        outcome = await reconciler.replay("evt_d1")

        assert outcome.status == WebhookStatus.PROCESSED
        assert await data.count(Dispute) == 1

    async def test_replay_processed_event(self, reconciler, data):
        await data.order("O1", payment_reference="pi_1")
        await deliver(reconciler, order_paid())

        outcome = await reconciler.replay("evt_1")

        assert outcome.status == WebhookStatus.ALREADY_PROCESSED

    async def test_replay_unknown_event(self, reconciler):
        with pytest.raises(EventNotFound):
            await reconciler.replay("evt_missing")


class TestNotifications:
    async def test_dispatcher_failure_does_not_change_outcome(self, session_factory, engine_config, data):
        await data.seller()
        await data.order("O1", payment_reference="pi_1")
        failing = FailingDispatcher()
        reconciler = ReconciliationEngine(session_factory, engine_config, dispatcher=failing)

        outcome = await deliver(reconciler, order_paid())

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.notifications_sent == 0
        assert failing.attempts == 2
        assert (await data.get(Order, "O1")).escrow_status == "held"
        assert (await ledger_row(data, "evt_1")).processed is True

    async def test_notification_metadata_carries_event(self, reconciler, data, dispatcher):
        await data.order("O1", payment_reference="pi_1")

        await deliver(reconciler, order_paid())

        [notification] = dispatcher.sent
        assert notification.metadata["event_id"] == "evt_1"
        assert notification.metadata["order_id"] == "O1"


class TestAuthenticity:
    async def test_bad_signature_stores_nothing(self, reconciler, data):
        payload, _ = signed(order_paid())
        _, forged_header = signed(order_paid(), secret="whsec_forged")

        with pytest.raises(SignatureInvalid):
            await reconciler.handle(payload, forged_header)

        assert await data.count(PaymentEvent) == 0

    async def test_missing_header_stores_nothing(self, reconciler, data):
        payload, _ = signed(order_paid())

        with pytest.raises(SignatureInvalid):
            await reconciler.handle(payload, None)

        assert await data.count(PaymentEvent) == 0


class TestOtherEvents:
    async def test_top_up_credited_once(self, reconciler, data):
        body = gateway_event(
            "evt_t1",
            "payment_intent.succeeded",
            payment_intent("pi_top", 2500, type="balance_top_up", user_id="u1"),
        )

        await deliver(reconciler, body)
        await deliver(reconciler, body)

        assert (await data.get(AccountBalance, "u1")).balance_amount == 2500

    async def test_onboarding_notifies_on_completion_only(self, reconciler, data, dispatcher):
        await data.seller(gateway_account_id=None)
        account = {
            "id": "acct_1",
            "metadata": {"user_id": "seller_user"},
            "charges_enabled": True,
            "payouts_enabled": False,
            "details_submitted": True,
        }

        await deliver(reconciler, gateway_event("evt_a1", "account.updated", account))
        assert dispatcher.sent == []

        await deliver(reconciler, gateway_event("evt_a2", "account.updated", {**account, "payouts_enabled": True}))
        await deliver(reconciler, gateway_event("evt_a3", "account.updated", {**account, "payouts_enabled": True}))

        assert [n.title for n in dispatcher.sent] == ["You're ready to get paid"]

    @pytest.mark.parametrize("event_type", ["customer.created", "charge.refunded"])
    async def test_observed_and_unknown_events_are_acknowledged(self, reconciler, data, event_type):
        outcome = await deliver(reconciler, gateway_event("evt_x", event_type, {"id": "obj_1"}))

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.annotation is None
        assert (await ledger_row(data, "evt_x")).processed is True
