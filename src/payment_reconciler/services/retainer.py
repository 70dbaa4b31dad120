"""Retainer timesheet payments.

A timesheet entry moves approved -> paid exactly once, and only for the
payment it was bound to. A failed payment unbinds the entry so the buyer
can pay again.
"""

from __future__ import annotations

import logging

from sqlalchemy import DateTime, bindparam, or_, select, text

from payment_reconciler.errors import ReferenceMismatch
from payment_reconciler.events.types import PaymentFailed, PaymentSucceeded
from payment_reconciler.models import Retainer, TimesheetEntry
from payment_reconciler.models.base import utcnow
from payment_reconciler.notifications import format_amount
from payment_reconciler.services.context import HandlerContext, provider_user_id

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("payment_reconciler.security")

_MARK_PAID = text("""
    UPDATE timesheet_entry
    SET status = 'paid', paid_at = :now
    WHERE id = :entry_id AND status != 'paid' AND payment_reference = :payment_reference
    RETURNING id
""").bindparams(bindparam("now", type_=DateTime(timezone=True)))

_CLEAR_REFERENCE = text("""
    UPDATE timesheet_entry
    SET payment_reference = NULL
    WHERE id = :entry_id AND status != 'paid' AND payment_reference = :payment_reference
    RETURNING id
""")


class RetainerPaymentHandler:
    """Applies payment outcomes to retainer timesheet entries."""

    async def find_entry(self, ctx: HandlerContext, reference_id: str | None) -> TimesheetEntry | None:
        """Probe a payment's reference id against timesheet entry ids."""
        if not reference_id:
            return None
        result = await ctx.session.execute(
            select(TimesheetEntry)
            .where(TimesheetEntry.id == reference_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_entry_for_failure(
        self, ctx: HandlerContext, reference_id: str | None, payment_id: str
    ) -> TimesheetEntry | None:
        """Failed payments may lack metadata; fall back to the bound payment id."""
        conditions = [TimesheetEntry.payment_reference == payment_id]
        if reference_id:
            conditions.append(TimesheetEntry.id == reference_id)
        result = await ctx.session.execute(
            select(TimesheetEntry)
            .where(or_(*conditions))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def payment_succeeded(
        self, ctx: HandlerContext, entry: TimesheetEntry, event: PaymentSucceeded
    ) -> bool:
        """Mark the entry paid. Returns False if it was already paid.

        Raises:
            ReferenceMismatch: the entry is bound to a different payment.
        """
        if entry.payment_reference != event.payment_id:
            security_logger.warning(
                "Timesheet %s payment reference mismatch: stored=%s inbound=%s",
                entry.id,
                entry.payment_reference,
                event.payment_id,
            )
            raise ReferenceMismatch(
                f"Timesheet {entry.id} is bound to {entry.payment_reference}, got {event.payment_id}",
                timesheet_id=entry.id,
            )

        updated = (
            await ctx.session.execute(
                _MARK_PAID,
                {"entry_id": entry.id, "payment_reference": event.payment_id, "now": utcnow()},
            )
        ).first()
        if updated is None:
            logger.info("Timesheet %s already paid; payment %s ignored", entry.id, event.payment_id)
            return False

        logger.info("Timesheet %s paid by %s", entry.id, event.payment_id)

        retainer = await self._retainer(ctx, entry.retainer_id)
        if retainer is not None:
            seller_user_id = await provider_user_id(ctx.session, retainer.seller_id)
            ctx.notify(
                seller_user_id,
                "Retainer payment received",
                f"Payment of {format_amount(event.amount, event.currency)} received "
                f"for the week of {entry.week_start:%d %b %Y}.",
                action_url=f"/retainers/{retainer.id}",
                retainer_id=retainer.id,
                timesheet_id=entry.id,
            )
        return True

    async def payment_failed(
        self, ctx: HandlerContext, entry: TimesheetEntry, event: PaymentFailed
    ) -> None:
        """Unbind the failed payment and tell the buyer."""
        cleared = (
            await ctx.session.execute(
                _CLEAR_REFERENCE,
                {"entry_id": entry.id, "payment_reference": event.payment_id},
            )
        ).first()
        if cleared is None:
            logger.info(
                "Timesheet %s not bound to failed payment %s; reference left as is",
                entry.id,
                event.payment_id,
            )
        else:
            logger.info("Timesheet %s payment reference cleared after failure", entry.id)

        retainer = await self._retainer(ctx, entry.retainer_id)
        if retainer is None:
            logger.warning("Retainer %s for timesheet %s not found", entry.retainer_id, entry.id)
            return
        reason = event.failure_message or "The payment was declined."
        ctx.notify(
            retainer.buyer_id,
            "Retainer payment failed",
            f"Payment for the week of {entry.week_start:%d %b %Y} failed: {reason} Please try again.",
            priority="high",
            action_url=f"/retainers/{retainer.id}",
            retainer_id=retainer.id,
            timesheet_id=entry.id,
        )

    async def _retainer(self, ctx: HandlerContext, retainer_id: str) -> Retainer | None:
        return await ctx.session.get(Retainer, retainer_id)
