"""Account balance top-ups."""

from __future__ import annotations

import logging

from sqlalchemy import DateTime, bindparam, text

from payment_reconciler.events.types import BalanceTopUp
from payment_reconciler.models.base import new_id, utcnow
from payment_reconciler.notifications import format_amount
from payment_reconciler.services.context import HandlerContext

logger = logging.getLogger(__name__)

_TIMESTAMP = DateTime(timezone=True)

# The transaction row is the gate: a payment id credits a balance at most once
_INSERT_TOP_UP = text("""
    INSERT INTO balance_transaction (
        id, user_id, transaction_type, amount, currency, payment_reference, description, created_at
    )
    VALUES (
        :id, :user_id, 'top_up', :amount, :currency, :payment_reference, :description, :now
    )
    ON CONFLICT (payment_reference) DO NOTHING
    RETURNING id
""").bindparams(bindparam("now", type_=_TIMESTAMP))

_CREDIT_BALANCE = text("""
    INSERT INTO account_balance (user_id, balance_amount, currency, last_topped_up_at, updated_at)
    VALUES (:user_id, :amount, :currency, :now, :now)
    ON CONFLICT (user_id) DO UPDATE
    SET balance_amount = account_balance.balance_amount + excluded.balance_amount,
        last_topped_up_at = excluded.last_topped_up_at,
        updated_at = excluded.updated_at
    RETURNING balance_amount, currency
""").bindparams(bindparam("now", type_=_TIMESTAMP))


class BalanceTopUpHandler:
    """Credits a user's balance for a top-up payment."""

    async def credit(self, ctx: HandlerContext, event: BalanceTopUp) -> bool:
        """Returns False if this payment was already credited."""
        now = utcnow()
        currency = event.currency.upper()
        inserted = (
            await ctx.session.execute(
                _INSERT_TOP_UP,
                {
                    "id": new_id(),
                    "user_id": event.user_id,
                    "amount": event.amount,
                    "currency": currency,
                    "payment_reference": event.payment_id,
                    "description": "Balance top-up",
                    "now": now,
                },
            )
        ).first()
        if inserted is None:
            logger.info("Top-up %s already credited", event.payment_id)
            return False

        balance, balance_currency = (
            await ctx.session.execute(
                _CREDIT_BALANCE,
                {"user_id": event.user_id, "amount": event.amount, "currency": currency, "now": now},
            )
        ).one()
        if balance_currency != currency:
            logger.warning(
                "Top-up %s in %s credited to %s balance of user %s",
                event.payment_id,
                currency,
                balance_currency,
                event.user_id,
            )

        logger.info("Credited %d %s to user %s", event.amount, currency, event.user_id)
        ctx.notify(
            event.user_id,
            "Balance topped up",
            f"{format_amount(event.amount, currency)} was added to your balance. "
            f"New balance: {format_amount(balance, balance_currency)}.",
            action_url="/account/balance",
            payment_id=event.payment_id,
        )
        return True
