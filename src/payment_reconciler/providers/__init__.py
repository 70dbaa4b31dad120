"""Payment gateway adapters."""

from payment_reconciler.providers.base import ChargeLookup
from payment_reconciler.providers.stripe_gateway import StripeChargeLookup

__all__ = ["ChargeLookup", "StripeChargeLookup"]
