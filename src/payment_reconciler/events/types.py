"""Typed gateway event variants.

Every inbound notification is parsed into exactly one of these frozen
dataclasses. The set is closed: unknown type tags become UnhandledEvent,
known-but-observed-only tags become LoggedEvent, so nothing is silently
dropped.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class GatewayEvent:
    """Base class for all gateway events."""

    event_id: str
    event_type: str
    created: datetime | None
    account: str | None  # connected account the event originated from

    @property
    def kind(self) -> str:
        """Variant name for routing and logs."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if isinstance(data.get("created"), datetime):
            data["created"] = data["created"].isoformat()
        return data


# =============================================================================
# Payment intent events
# =============================================================================


@dataclass(frozen=True)
class BalanceTopUp(GatewayEvent):
    """A successful payment crediting a user's account balance."""

    payment_id: str
    amount: int
    currency: str
    user_id: str


@dataclass(frozen=True)
class PaymentSucceeded(GatewayEvent):
    """A successful payment for an order or a retainer timesheet.

    reference_id is the order id or timesheet id the payment was created for.
    """

    payment_id: str
    amount: int
    currency: str
    reference_id: str | None
    buyer_id: str | None


@dataclass(frozen=True)
class PaymentFailed(GatewayEvent):
    """A failed payment attempt."""

    payment_id: str
    amount: int
    currency: str
    reference_id: str | None
    buyer_id: str | None
    failure_message: str | None


# =============================================================================
# Connect account events
# =============================================================================


@dataclass(frozen=True)
class AccountUpdated(GatewayEvent):
    """Capability change on a seller's connected account."""

    account_id: str
    user_id: str | None
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @property
    def fully_onboarded(self) -> bool:
        return self.details_submitted and self.charges_enabled and self.payouts_enabled


# =============================================================================
# Funds movement events
# =============================================================================


@dataclass(frozen=True)
class TransferCreated(GatewayEvent):
    """Escrowed funds released to a seller's connected account."""

    transfer_id: str
    amount: int
    currency: str
    order_id: str | None
    milestone_id: str | None
    destination: str | None


@dataclass(frozen=True)
class PayoutPaid(GatewayEvent):
    """Funds arrived in a seller's bank account."""

    payout_id: str
    amount: int
    currency: str
    arrival_date: datetime | None
    destination: str | None


@dataclass(frozen=True)
class PayoutFailed(GatewayEvent):
    """A payout to a seller's bank account failed."""

    payout_id: str
    amount: int
    currency: str
    failure_message: str | None
    destination: str | None


# =============================================================================
# Dispute events
# =============================================================================


@dataclass(frozen=True)
class DisputeCreated(GatewayEvent):
    """A chargeback was opened against a charge.

    payment_id is present when the gateway expands it on the dispute;
    otherwise it is resolved from charge_id.
    """

    dispute_id: str
    charge_id: str | None
    payment_id: str | None
    amount: int
    currency: str
    reason: str | None


@dataclass(frozen=True)
class DisputeClosed(GatewayEvent):
    """A chargeback reached a final outcome (won, lost, ...)."""

    dispute_id: str
    outcome: str | None


# =============================================================================
# Observed-only and unknown events
# =============================================================================


@dataclass(frozen=True)
class LoggedEvent(GatewayEvent):
    """A recognised type that is recorded in the logs only."""

    object_id: str | None
    summary: str


@dataclass(frozen=True)
class UnhandledEvent(GatewayEvent):
    """An unrecognised type. Acknowledged and logged for operators."""

    object_id: str | None
