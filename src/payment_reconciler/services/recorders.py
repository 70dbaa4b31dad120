"""Dispute, transfer and payout recorders.

Append-only observers keyed by the gateway's own ids, so processing the
same notification twice writes nothing new. Only disputes touch order
state, and they do it through the escrow service.
"""

from __future__ import annotations

import logging

from sqlalchemy import DateTime, bindparam, select, text

from payment_reconciler.errors import OrderNotFound
from payment_reconciler.events.types import (
    DisputeClosed,
    DisputeCreated,
    PayoutFailed,
    PayoutPaid,
    TransferCreated,
)
from payment_reconciler.models import Order
from payment_reconciler.models.base import new_id, utcnow
from payment_reconciler.notifications import format_amount
from payment_reconciler.services.context import (
    HandlerContext,
    provider_by_account,
    provider_user_id,
)
from payment_reconciler.services.escrow import EscrowService, order_label
from payment_reconciler.services.resolver import PaymentReferenceResolver

logger = logging.getLogger(__name__)

_TIMESTAMP = DateTime(timezone=True)

_INSERT_DISPUTE = text("""
    INSERT INTO dispute (
        id, order_id, external_dispute_id, reason, raised_by, status, created_at
    )
    VALUES (
        :id, :order_id, :external_dispute_id, :reason, 'gateway', 'open', :now
    )
    ON CONFLICT (external_dispute_id) DO NOTHING
    RETURNING id
""").bindparams(bindparam("now", type_=_TIMESTAMP))

_RESOLVE_DISPUTE = text("""
    UPDATE dispute
    SET status = 'resolved', outcome = :outcome, resolved_at = :now
    WHERE external_dispute_id = :external_dispute_id AND status = 'open'
    RETURNING order_id
""").bindparams(bindparam("now", type_=_TIMESTAMP))

_INSERT_TRANSFER = text("""
    INSERT INTO transfer_log (
        id, external_transfer_id, order_id, milestone_id, destination_account_id,
        amount, currency, created_at
    )
    VALUES (
        :id, :external_transfer_id, :order_id, :milestone_id, :destination_account_id,
        :amount, :currency, :now
    )
    ON CONFLICT (external_transfer_id) DO NOTHING
    RETURNING id
""").bindparams(bindparam("now", type_=_TIMESTAMP))

_UPSERT_PAYOUT = text("""
    INSERT INTO payout_log (
        id, external_payout_id, gateway_account_id, amount, currency, status,
        arrival_date, failure_message, created_at, updated_at
    )
    VALUES (
        :id, :external_payout_id, :gateway_account_id, :amount, :currency, :status,
        :arrival_date, :failure_message, :now, :now
    )
    ON CONFLICT (external_payout_id) DO UPDATE
    SET status = excluded.status,
        arrival_date = COALESCE(excluded.arrival_date, payout_log.arrival_date),
        failure_message = excluded.failure_message,
        updated_at = excluded.updated_at
""").bindparams(
    bindparam("arrival_date", type_=_TIMESTAMP),
    bindparam("now", type_=_TIMESTAMP),
)


class DisputeRecorder:
    """Records chargebacks and freezes the affected order."""

    def __init__(self, resolver: PaymentReferenceResolver, escrow: EscrowService):
        self.resolver = resolver
        self.escrow = escrow

    async def on_created(self, ctx: HandlerContext, event: DisputeCreated) -> bool:
        """Record a dispute. Returns True if this call created the row.

        The order is frozen on every run, so a replay after a concurrent
        release still leaves it held.

        Raises:
            ReferenceUnresolvable: the disputed payment cannot be determined
            OrderNotFound: no order is bound to the disputed payment
        """
        payment_reference = await self.resolver.resolve(event)

        result = await ctx.session.execute(
            select(Order)
            .where(Order.payment_reference == payment_reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalars().first()
        if order is None:
            raise OrderNotFound(
                f"No order bound to disputed payment {payment_reference}",
                dispute_id=event.dispute_id,
            )

        inserted = (
            await ctx.session.execute(
                _INSERT_DISPUTE,
                {
                    "id": new_id(),
                    "order_id": order.id,
                    "external_dispute_id": event.dispute_id,
                    "reason": f"Gateway chargeback: {event.reason or 'unspecified'}",
                    "now": utcnow(),
                },
            )
        ).first()

        await self.escrow.force_dispute_hold(ctx, order)

        if inserted is None:
            logger.info("Dispute %s already recorded for order %s", event.dispute_id, order.id)
            return False

        logger.warning(
            "Dispute %s opened on order %s (%s); escrow frozen",
            event.dispute_id,
            order.id,
            event.reason,
        )
        amount = format_amount(event.amount, event.currency) if event.currency else "the payment"
        label = order_label(order)
        ctx.notify(
            order.buyer_id,
            "Payment disputed",
            f"A dispute was opened on {amount} for order {label}. We will be in touch.",
            priority="high",
            action_url=f"/orders/{order.id}",
            order_id=order.id,
        )
        seller_user_id = await provider_user_id(ctx.session, order.seller_id)
        ctx.notify(
            seller_user_id,
            "Order disputed",
            f"The buyer's bank disputed the payment for order {label}. "
            "Funds stay in escrow until it is resolved.",
            priority="high",
            action_url=f"/orders/{order.id}",
            order_id=order.id,
        )
        return True

    async def on_closed(self, ctx: HandlerContext, event: DisputeClosed) -> None:
        row = (
            await ctx.session.execute(
                _RESOLVE_DISPUTE,
                {
                    "external_dispute_id": event.dispute_id,
                    "outcome": event.outcome,
                    "now": utcnow(),
                },
            )
        ).first()
        if row is None:
            logger.info("Dispute %s unknown or already resolved", event.dispute_id)
            return
        logger.info(
            "Dispute %s on order %s closed with outcome %s", event.dispute_id, row[0], event.outcome
        )


class TransferRecorder:
    """Audit log of transfers to sellers' connected accounts."""

    async def on_created(self, ctx: HandlerContext, event: TransferCreated) -> bool:
        inserted = (
            await ctx.session.execute(
                _INSERT_TRANSFER,
                {
                    "id": new_id(),
                    "external_transfer_id": event.transfer_id,
                    "order_id": event.order_id,
                    "milestone_id": event.milestone_id,
                    "destination_account_id": event.destination,
                    "amount": event.amount,
                    "currency": event.currency.upper(),
                    "now": utcnow(),
                },
            )
        ).first()
        if inserted is None:
            logger.info("Transfer %s already recorded", event.transfer_id)
            return False

        seller_user_id = await self._seller_user_id(ctx, event)
        if seller_user_id is None:
            logger.info("Transfer %s recorded; no seller resolved to notify", event.transfer_id)
            return True
        ctx.notify(
            seller_user_id,
            "Funds released",
            f"{format_amount(event.amount, event.currency)} is on its way to your account.",
            action_url=f"/orders/{event.order_id}" if event.order_id else "/earnings",
            transfer_id=event.transfer_id,
            order_id=event.order_id,
        )
        return True

    async def _seller_user_id(self, ctx: HandlerContext, event: TransferCreated) -> str | None:
        if event.order_id:
            order = await ctx.session.get(Order, event.order_id)
            if order is not None:
                return await provider_user_id(ctx.session, order.seller_id)
        if event.destination:
            profile = await provider_by_account(ctx.session, event.destination)
            if profile is not None:
                return profile.user_id
        return None


class PayoutRecorder:
    """Audit log of payouts from connected accounts to sellers' banks."""

    async def on_paid(self, ctx: HandlerContext, event: PayoutPaid) -> None:
        await self._upsert(ctx, event, status="paid", failure_message=None, arrival_date=event.arrival_date)
        logger.info("Payout %s paid (%d %s)", event.payout_id, event.amount, event.currency)
        await self._notify_seller(
            ctx,
            event.account,
            "Payout sent",
            f"{format_amount(event.amount, event.currency)} has been paid out to your bank account.",
            priority="low",
            payout_id=event.payout_id,
        )

    async def on_failed(self, ctx: HandlerContext, event: PayoutFailed) -> None:
        await self._upsert(
            ctx, event, status="failed", failure_message=event.failure_message, arrival_date=None
        )
        logger.warning("Payout %s failed: %s", event.payout_id, event.failure_message)
        await self._notify_seller(
            ctx,
            event.account,
            "Payout failed",
            f"A payout of {format_amount(event.amount, event.currency)} failed: "
            f"{event.failure_message or 'no reason given'}. Please check your bank details.",
            priority="high",
            payout_id=event.payout_id,
        )

    async def _upsert(self, ctx, event, *, status, failure_message, arrival_date) -> None:
        await ctx.session.execute(
            _UPSERT_PAYOUT,
            {
                "id": new_id(),
                "external_payout_id": event.payout_id,
                "gateway_account_id": event.account,
                "amount": event.amount,
                "currency": event.currency.upper(),
                "status": status,
                "arrival_date": arrival_date,
                "failure_message": failure_message,
                "now": utcnow(),
            },
        )

    async def _notify_seller(self, ctx: HandlerContext, account_id: str | None, title: str, body: str, **kwargs) -> None:
        if not account_id:
            return
        profile = await provider_by_account(ctx.session, account_id)
        if profile is None:
            logger.info("No provider profile for connected account %s", account_id)
            return
        ctx.notify(profile.user_id, title, body, action_url="/earnings", **kwargs)
