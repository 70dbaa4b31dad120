"""Tests for balance top-ups and connected account status."""

import pytest

from payment_reconciler.errors import MissingReference
from payment_reconciler.events import AccountUpdated, BalanceTopUp
from payment_reconciler.models import AccountBalance, BalanceTransaction, ProviderProfile
from payment_reconciler.notifications import NotificationOutbox
from payment_reconciler.services import AccountStatusHandler, BalanceTopUpHandler, HandlerContext


def top_up(payment_id="pi_top", amount=2500, user_id="u1") -> BalanceTopUp:
    return BalanceTopUp(
        event_id="evt_1",
        event_type="payment_intent.succeeded",
        created=None,
        account=None,
        payment_id=payment_id,
        amount=amount,
        currency="gbp",
        user_id=user_id,
    )


def account_updated(user_id="seller_user", complete=True, charges=True) -> AccountUpdated:
    return AccountUpdated(
        event_id="evt_a1",
        event_type="account.updated",
        created=None,
        account="acct_new",
        account_id="acct_new",
        user_id=user_id,
        charges_enabled=charges,
        payouts_enabled=complete,
        details_submitted=complete,
    )


@pytest.fixture
def ctx(session) -> HandlerContext:
    return HandlerContext(session=session, outbox=NotificationOutbox(), event_id="evt_1")


class TestBalanceTopUp:
    """A payment id credits a balance at most once."""

    async def test_first_top_up_creates_balance(self, data, session, ctx):
        assert await BalanceTopUpHandler().credit(ctx, top_up()) is True
        await session.commit()

        balance = await data.get(AccountBalance, "u1")
        assert balance.balance_amount == 2500
        assert balance.currency == "GBP"
        assert balance.last_topped_up_at is not None

        [txn] = await data.all(BalanceTransaction)
        assert txn.transaction_type == "top_up"
        assert txn.payment_reference == "pi_top"

        [notification] = ctx.outbox.pending
        assert notification.user_id == "u1"
        assert "New balance: £25.00" in notification.body

    async def test_top_ups_accumulate(self, data, session, ctx):
        handler = BalanceTopUpHandler()
        await handler.credit(ctx, top_up("pi_a", 2500))
        await handler.credit(ctx, top_up("pi_b", 1000))
        await session.commit()

        balance = await data.get(AccountBalance, "u1")
        assert balance.balance_amount == 3500

    async def test_same_payment_credited_once(self, data, session, ctx):
        handler = BalanceTopUpHandler()
        await handler.credit(ctx, top_up())

        assert await handler.credit(ctx, top_up()) is False
        await session.commit()

        assert (await data.get(AccountBalance, "u1")).balance_amount == 2500
        assert await data.count(BalanceTransaction) == 1
        assert len(ctx.outbox) == 1


class TestAccountStatus:
    """Capability flags mirrored onto the seller profile."""

    async def test_onboarding_completion_notifies_once(self, data, session, ctx):
        await data.seller(gateway_account_id=None)
        handler = AccountStatusHandler()

        assert await handler.on_updated(ctx, account_updated()) is True
        assert await handler.on_updated(ctx, account_updated()) is False
        await session.commit()

        profile = await data.get(ProviderProfile, "prov_1")
        assert profile.gateway_account_id == "acct_new"
        assert profile.charges_enabled is True
        assert profile.payouts_enabled is True
        assert profile.onboarding_complete is True

        [notification] = ctx.outbox.pending
        assert notification.user_id == "seller_user"
        assert notification.title == "You're ready to get paid"

    async def test_partial_capabilities_do_not_notify(self, data, session, ctx):
        await data.seller()

        completed = await AccountStatusHandler().on_updated(ctx, account_updated(complete=False))
        await session.commit()

        assert completed is False
        profile = await data.get(ProviderProfile, "prov_1")
        assert profile.charges_enabled is True
        assert profile.payouts_enabled is False
        assert profile.onboarding_complete is False
        assert len(ctx.outbox) == 0

    async def test_losing_capabilities_clears_flags(self, data, session, ctx):
        await data.seller(onboarding_complete=True)

        await AccountStatusHandler().on_updated(ctx, account_updated(complete=False, charges=False))
        await session.commit()

        profile = await data.get(ProviderProfile, "prov_1")
        assert profile.onboarding_complete is False
        assert profile.charges_enabled is False
        assert len(ctx.outbox) == 0

    async def test_missing_user_metadata(self, ctx):
        with pytest.raises(MissingReference):
            await AccountStatusHandler().on_updated(ctx, account_updated(user_id=None))

    async def test_unknown_user_is_ignored(self, ctx):
        assert await AccountStatusHandler().on_updated(ctx, account_updated(user_id="nobody")) is False
