"""Gateway event parsing and typed variants."""

from payment_reconciler.events.parser import (
    SUPPORTED_EVENT_TYPES,
    GatewayEnvelope,
    envelope_to_payload,
    parse_envelope,
    parse_event,
)
from payment_reconciler.events.types import (
    AccountUpdated,
    BalanceTopUp,
    DisputeClosed,
    DisputeCreated,
    GatewayEvent,
    LoggedEvent,
    PaymentFailed,
    PaymentSucceeded,
    PayoutFailed,
    PayoutPaid,
    TransferCreated,
    UnhandledEvent,
)

__all__ = [
    "SUPPORTED_EVENT_TYPES",
    "AccountUpdated",
    "BalanceTopUp",
    "DisputeClosed",
    "DisputeCreated",
    "GatewayEnvelope",
    "GatewayEvent",
    "LoggedEvent",
    "PaymentFailed",
    "PaymentSucceeded",
    "PayoutFailed",
    "PayoutPaid",
    "TransferCreated",
    "UnhandledEvent",
    "envelope_to_payload",
    "parse_envelope",
    "parse_event",
]
