"""Dispute -> charge -> payment reference resolution."""

from __future__ import annotations

import logging

from payment_reconciler.errors import ReferenceUnresolvable
from payment_reconciler.events.types import DisputeCreated
from payment_reconciler.providers.base import ChargeLookup

logger = logging.getLogger(__name__)


class PaymentReferenceResolver:
    """Finds the payment a dispute was raised against.

    Uses the payment id on the dispute when the gateway supplied it, and
    otherwise asks the gateway which payment created the disputed charge.
    """

    def __init__(self, charge_lookup: ChargeLookup | None = None):
        self.charge_lookup = charge_lookup

    async def resolve(self, event: DisputeCreated) -> str:
        """Return the payment reference for a dispute.

        Raises:
            ReferenceUnresolvable: no charge, no lookup configured, or the
                charge has no payment.
        """
        if event.payment_id:
            return event.payment_id

        if not event.charge_id:
            raise ReferenceUnresolvable(
                f"Dispute {event.dispute_id} carries no charge", dispute_id=event.dispute_id
            )
        if self.charge_lookup is None:
            raise ReferenceUnresolvable(
                f"Dispute {event.dispute_id}: no gateway lookup configured for charge {event.charge_id}",
                dispute_id=event.dispute_id,
            )

        reference = await self.charge_lookup.payment_reference_for_charge(event.charge_id)
        if not reference:
            raise ReferenceUnresolvable(
                f"Charge {event.charge_id} for dispute {event.dispute_id} has no payment",
                dispute_id=event.dispute_id,
            )
        logger.debug(
            "Resolved dispute %s via %s charge %s to %s",
            event.dispute_id,
            self.charge_lookup.provider_name,
            event.charge_id,
            reference,
        )
        return reference
