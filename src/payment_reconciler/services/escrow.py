"""Escrow state machine for marketplace orders.

Escrow lifecycle: pending -> held -> {released | refunded}

Order.escrow_status is only written here. Every status write is a
conditional UPDATE that re-checks the current state, and every hold entry
is keyed on order and payment, so a handler that lost a race or replays an
old event changes nothing.
"""

from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy import DateTime, bindparam, text

from payment_reconciler.errors import OrderNotFound
from payment_reconciler.events.types import PaymentFailed
from payment_reconciler.models import Order
from payment_reconciler.models.base import new_id, utcnow
from payment_reconciler.notifications import format_amount
from payment_reconciler.services.context import HandlerContext, provider_user_id
from payment_reconciler.services.validator import PaymentValidator, ValidatedPayment

logger = logging.getLogger(__name__)


class EscrowStatus(str, Enum):
    """Escrow status values."""

    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class EscrowStateMachine:
    """Allowed escrow transitions.

    - pending -> held      (validated payment)
    - held -> released     (funds transferred to the seller)
    - held -> refunded     (funds returned to the buyer)

    Disputes may force 'held' from any state; see EscrowService.force_dispute_hold.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        EscrowStatus.PENDING.value: [EscrowStatus.HELD.value],
        EscrowStatus.HELD.value: [EscrowStatus.RELEASED.value, EscrowStatus.REFUNDED.value],
        EscrowStatus.RELEASED.value: [],  # Terminal state
        EscrowStatus.REFUNDED.value: [],  # Terminal state
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status, [])


_HOLD_ORDER = text("""
    UPDATE marketplace_order
    SET escrow_status = 'held',
        status = CASE WHEN status = 'pending' THEN 'accepted' ELSE status END,
        payment_reference = COALESCE(payment_reference, :payment_reference)
    WHERE id = :order_id AND escrow_status = 'pending'
    RETURNING id
""")

_INSERT_HOLD = text("""
    INSERT INTO escrow_transaction (
        id, order_id, kind, amount, currency, payment_reference, idempotency_key, created_at
    )
    VALUES (
        :id, :order_id, 'hold', :amount, :currency, :payment_reference, :idempotency_key, :now
    )
    ON CONFLICT (idempotency_key) DO NOTHING
    RETURNING id
""").bindparams(bindparam("now", type_=DateTime(timezone=True)))

_FORCE_DISPUTE_HOLD = text("""
    UPDATE marketplace_order
    SET escrow_status = 'held', status = 'disputed'
    WHERE id = :order_id
""")


def hold_idempotency_key(order_id: str, payment_reference: str) -> str:
    return f"hold:{order_id}:{payment_reference}"


def order_label(order: Order) -> str:
    return f"#{order.order_number}" if order.order_number else order.id


class EscrowService:
    """Applies payment outcomes to order escrow."""

    def __init__(self, validator: PaymentValidator):
        self.validator = validator

    async def hold(self, ctx: HandlerContext, payment: ValidatedPayment) -> bool:
        """Record a validated payment as held in escrow.

        The hold entry is keyed on order and payment, so it is written once
        whatever the order's escrow state, as long as the funds have not
        already left escrow. The order itself only moves while it is still
        pending; an order a dispute froze first keeps its disputed status.
        Seller and buyer are told only when the order moved.

        Returns True when a new hold entry was written.
        """
        order = payment.order
        if EscrowStateMachine.is_terminal(order.escrow_status):
            logger.info(
                "Order %s escrow already %s; payment %s ignored",
                order.id,
                order.escrow_status,
                payment.payment_reference,
            )
            return False

        moved = False
        if EscrowStateMachine.can_transition(order.escrow_status, EscrowStatus.HELD.value):
            # The UPDATE re-checks pending; a concurrent dispute may have won
            moved = (
                await ctx.session.execute(
                    _HOLD_ORDER,
                    {"order_id": order.id, "payment_reference": payment.payment_reference},
                )
            ).first() is not None

        inserted = (
            await ctx.session.execute(
                _INSERT_HOLD,
                {
                    "id": new_id(),
                    "order_id": order.id,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "payment_reference": payment.payment_reference,
                    "idempotency_key": hold_idempotency_key(order.id, payment.payment_reference),
                    "now": utcnow(),
                },
            )
        ).first()
        if inserted is None:
            logger.info(
                "Hold entry for order %s / %s already recorded",
                order.id,
                payment.payment_reference,
            )
            return False

        logger.info(
            "Escrow held for order %s: %d %s (payment %s)",
            order.id,
            payment.amount,
            payment.currency,
            payment.payment_reference,
        )
        if not moved:
            logger.warning(
                "Order %s was already %s when payment %s arrived; hold recorded without notifying",
                order.id,
                order.status,
                payment.payment_reference,
            )
            return True

        amount = format_amount(payment.amount, payment.currency)
        label = order_label(order)
        seller_user_id = await provider_user_id(ctx.session, order.seller_id)
        ctx.notify(
            seller_user_id,
            "Payment received",
            f"Payment of {amount} for order {label} is held in escrow. You can start work.",
            priority="high",
            action_url=f"/orders/{order.id}",
            order_id=order.id,
        )
        ctx.notify(
            order.buyer_id,
            "Payment confirmed",
            f"Your payment of {amount} for order {label} is held securely in escrow.",
            action_url=f"/orders/{order.id}",
            order_id=order.id,
        )
        return True

    async def payment_failed(self, ctx: HandlerContext, event: PaymentFailed) -> None:
        """A failed order payment never regresses escrow; the buyer is told.

        Raises:
            OrderNotFound: neither the order nor a buyer could be resolved.
        """
        order = None
        if event.reference_id:
            order = await self.validator.load_order(ctx.session, event.reference_id)

        buyer_id = order.buyer_id if order is not None else event.buyer_id
        if buyer_id is None:
            raise OrderNotFound(
                f"No order or buyer for failed payment {event.payment_id}",
                order_id=event.reference_id,
            )

        if order is not None:
            logger.info(
                "Payment %s failed for order %s (escrow %s unchanged)",
                event.payment_id,
                order.id,
                order.escrow_status,
            )
            label = order_label(order)
            action_url = f"/orders/{order.id}"
        else:
            logger.info("Payment %s failed; order %s not found", event.payment_id, event.reference_id)
            label = event.reference_id or "your order"
            action_url = None

        reason = event.failure_message or "The payment was declined."
        ctx.notify(
            buyer_id,
            "Payment failed",
            f"Payment for order {label} failed: {reason} Please try again.",
            priority="high",
            action_url=action_url,
            order_id=order.id if order is not None else event.reference_id,
        )

    async def force_dispute_hold(self, ctx: HandlerContext, order: Order) -> None:
        """Freeze an order under dispute.

        Permitted from any escrow state. Re-holding funds that already left
        escrow is flagged for operators.
        """
        if EscrowStateMachine.is_terminal(order.escrow_status):
            logger.warning(
                "Dispute on order %s after escrow was %s; forcing held for manual review",
                order.id,
                order.escrow_status,
            )
        await ctx.session.execute(_FORCE_DISPUTE_HOLD, {"order_id": order.id})
