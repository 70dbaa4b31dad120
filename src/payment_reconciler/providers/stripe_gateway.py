"""Stripe adapter for gateway lookups."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import stripe

logger = logging.getLogger(__name__)


class StripeChargeLookup:
    """ChargeLookup backed by the Stripe API.

    The Stripe client is synchronous; calls run in a worker thread so the
    request loop is not blocked.
    """

    provider_name = "stripe"

    def __init__(self, api_key: str, client: stripe.StripeClient | None = None):
        if not api_key and client is None:
            raise ValueError("api_key is required")
        self._client = client or stripe.StripeClient(api_key)

    async def payment_reference_for_charge(self, charge_id: str) -> str | None:
        try:
            charge = await asyncio.to_thread(self._client.charges.retrieve, charge_id)
        except stripe.InvalidRequestError:
            # Unknown charge id: nothing to resolve, retrying will not help
            logger.warning("Charge %s not found at gateway", charge_id)
            return None
        return _payment_intent_id(getattr(charge, "payment_intent", None))


def _payment_intent_id(value: Any) -> str | None:
    # Unexpanded references are plain ids; expanded ones are PaymentIntent objects
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.id
