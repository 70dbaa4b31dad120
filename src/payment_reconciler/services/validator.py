"""Payment validation.

Cross-checks a successful payment against the stored order before any
escrow mutation is allowed. Nothing here writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciler.engine_config import ValidationConfig
from payment_reconciler.errors import (
    AmountMismatch,
    CurrencyMismatch,
    MissingReference,
    OrderNotFound,
    ReferenceMismatch,
)
from payment_reconciler.events.types import PaymentSucceeded
from payment_reconciler.models import Order

security_logger = logging.getLogger("payment_reconciler.security")


def to_minor_units(amount: Decimal) -> int:
    """Major-unit decimal to integer minor units, rounding half up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ValidatedPayment:
    """A payment that may be applied to its order."""

    order: Order
    payment_reference: str
    amount: int  # captured, minor units
    currency: str
    expected_amount: int
    amount_mismatch: bool


class PaymentValidator:
    """Validates payment-succeeded events against their orders."""

    def __init__(self, config: ValidationConfig | None = None):
        self.config = config or ValidationConfig()

    async def load_order(self, session: AsyncSession, order_id: str) -> Order | None:
        """Re-read the order immediately before it is mutated."""
        result = await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def validate(self, session: AsyncSession, event: PaymentSucceeded) -> ValidatedPayment:
        """Run all checks in order; the first failing one raises.

        Raises:
            MissingReference: the payment carries no order id
            OrderNotFound: no order with that id
            ReferenceMismatch: the order is bound to a different payment
            CurrencyMismatch: captured currency differs from the order's
            AmountMismatch: out of tolerance, only when configured to block
        """
        if not event.reference_id:
            raise MissingReference(
                f"Payment {event.payment_id} has no order reference", payment_id=event.payment_id
            )

        order = await self.load_order(session, event.reference_id)
        if order is None:
            raise OrderNotFound(
                f"Order {event.reference_id} not found for payment {event.payment_id}",
                order_id=event.reference_id,
            )

        if order.payment_reference and order.payment_reference != event.payment_id:
            security_logger.warning(
                "Payment reference mismatch for order %s: stored=%s inbound=%s",
                order.id,
                order.payment_reference,
                event.payment_id,
            )
            raise ReferenceMismatch(
                f"Order {order.id} is bound to {order.payment_reference}, got {event.payment_id}",
                order_id=order.id,
            )

        expected = to_minor_units(order.total_amount)
        mismatch = abs(event.amount - expected) > self.config.amount_tolerance_minor
        if mismatch:
            security_logger.warning(
                "SECURITY ALERT: amount mismatch for order %s: expected=%d received=%d",
                order.id,
                expected,
                event.amount,
            )
            if self.config.block_on_amount_mismatch:
                raise AmountMismatch(
                    f"Order {order.id} expected {expected}, payment captured {event.amount}",
                    order_id=order.id,
                )

        if event.currency.lower() != order.currency.lower():
            security_logger.warning(
                "Currency mismatch for order %s: expected=%s received=%s",
                order.id,
                order.currency,
                event.currency,
            )
            raise CurrencyMismatch(
                f"Order {order.id} is in {order.currency.upper()}, payment in {event.currency.upper()}",
                order_id=order.id,
            )

        return ValidatedPayment(
            order=order,
            payment_reference=event.payment_id,
            amount=event.amount,
            currency=event.currency.upper(),
            expected_amount=expected,
            amount_mismatch=mismatch,
        )
