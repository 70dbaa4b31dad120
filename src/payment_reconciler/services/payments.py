"""Payment intent outcomes: timesheet first, then order escrow."""

from __future__ import annotations

from payment_reconciler.events.types import PaymentFailed, PaymentSucceeded
from payment_reconciler.services.context import HandlerContext
from payment_reconciler.services.escrow import EscrowService
from payment_reconciler.services.retainer import RetainerPaymentHandler
from payment_reconciler.services.validator import PaymentValidator


class PaymentOutcomeHandler:
    """Routes a payment outcome to the retainer or escrow flow.

    Order ids and timesheet ids share the reference field of a payment, so
    the reference is probed against timesheet entries first. A match hands
    the event to the retainer handler and escrow is never consulted.
    """

    def __init__(
        self,
        validator: PaymentValidator,
        escrow: EscrowService,
        retainer: RetainerPaymentHandler,
    ):
        self.validator = validator
        self.escrow = escrow
        self.retainer = retainer

    async def on_succeeded(self, ctx: HandlerContext, event: PaymentSucceeded) -> None:
        entry = await self.retainer.find_entry(ctx, event.reference_id)
        if entry is not None:
            await self.retainer.payment_succeeded(ctx, entry, event)
            return

        payment = await self.validator.validate(ctx.session, event)
        await self.escrow.hold(ctx, payment)

    async def on_failed(self, ctx: HandlerContext, event: PaymentFailed) -> None:
        entry = await self.retainer.find_entry_for_failure(ctx, event.reference_id, event.payment_id)
        if entry is not None:
            await self.retainer.payment_failed(ctx, entry, event)
            return

        await self.escrow.payment_failed(ctx, event)
