"""Base protocol for payment gateway lookups.

The engine never talks to the gateway directly; lookups it needs go
through adapters implementing these protocols.
"""

from __future__ import annotations

from typing import Protocol


class ChargeLookup(Protocol):
    """Resolves a gateway charge to the payment it belongs to."""

    provider_name: str

    async def payment_reference_for_charge(self, charge_id: str) -> str | None:
        """Return the payment id that created the charge.

        Args:
            charge_id: Gateway charge id (e.g. "ch_...")

        Returns:
            The payment reference, or None if the charge has none.
            Transport failures propagate so the event is retried.
        """
        ...
