"""Wire schemas and parsing of gateway notifications into typed events."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payment_reconciler.errors import MalformedEvent, MalformedPayload
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

BALANCE_TOP_UP = "balance_top_up"


# ============================================================================
# Wire schemas
# ============================================================================


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EnvelopeData(_WireModel):
    object: dict[str, Any]


class GatewayEnvelope(_WireModel):
    """Outer notification envelope: {id, type, created, account, data: {object}}."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None
    account: str | None = None
    data: EnvelopeData


class PaymentIntentObject(_WireModel):
    id: str
    amount: int
    currency: str
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: dict[str, Any] | None = None


class AccountObject(_WireModel):
    id: str
    metadata: dict[str, str] = Field(default_factory=dict)
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class TransferObject(_WireModel):
    id: str
    amount: int
    currency: str
    destination: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class PayoutObject(_WireModel):
    id: str
    amount: int
    currency: str
    arrival_date: int | None = None
    destination: str | dict[str, Any] | None = None
    failure_message: str | None = None


class DisputeObject(_WireModel):
    id: str
    amount: int = 0
    currency: str = ""
    reason: str | None = None
    status: str | None = None
    charge: str | dict[str, Any] | None = None
    payment_intent: str | dict[str, Any] | None = None


class ChargeObject(_WireModel):
    id: str
    amount_refunded: int = 0
    payment_intent: str | dict[str, Any] | None = None


# ============================================================================
# Envelope parsing (runs on the verified raw body)
# ============================================================================


def parse_envelope(payload: str | bytes) -> GatewayEnvelope:
    """Parse a verified body into its envelope, raising MalformedEvent."""
    try:
        return GatewayEnvelope.model_validate(json.loads(payload))
    except (ValueError, ValidationError) as exc:
        # json.JSONDecodeError is a ValueError
        raise MalformedEvent(f"Invalid event envelope: {exc}") from exc


def envelope_to_payload(envelope: GatewayEnvelope) -> dict[str, Any]:
    """Serialisable form stored in the ledger's raw_payload column."""
    return envelope.model_dump(mode="json")


# ============================================================================
# Variant construction
# ============================================================================


def _epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _object_id(value: str | dict[str, Any] | None) -> str | None:
    """Gateway references arrive either as ids or as expanded objects."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    found = value.get("id")
    return str(found) if found else None


def _base(envelope: GatewayEnvelope) -> dict[str, Any]:
    return {
        "event_id": envelope.id,
        "event_type": envelope.type,
        "created": _epoch(envelope.created),
        "account": envelope.account,
    }


def _payment_succeeded(envelope: GatewayEnvelope) -> GatewayEvent:
    intent = PaymentIntentObject.model_validate(envelope.data.object)
    user_id = intent.metadata.get("user_id")
    if intent.metadata.get("type") == BALANCE_TOP_UP and user_id:
        return BalanceTopUp(
            **_base(envelope),
            payment_id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            user_id=user_id,
        )
    return PaymentSucceeded(
        **_base(envelope),
        payment_id=intent.id,
        amount=intent.amount,
        currency=intent.currency,
        reference_id=intent.metadata.get("order_id"),
        buyer_id=intent.metadata.get("buyer_id"),
    )


def _payment_failed(envelope: GatewayEnvelope) -> GatewayEvent:
    intent = PaymentIntentObject.model_validate(envelope.data.object)
    error = intent.last_payment_error or {}
    return PaymentFailed(
        **_base(envelope),
        payment_id=intent.id,
        amount=intent.amount,
        currency=intent.currency,
        reference_id=intent.metadata.get("order_id"),
        buyer_id=intent.metadata.get("buyer_id"),
        failure_message=error.get("message"),
    )


def _account_updated(envelope: GatewayEnvelope) -> GatewayEvent:
    account = AccountObject.model_validate(envelope.data.object)
    return AccountUpdated(
        **_base(envelope),
        account_id=account.id,
        user_id=account.metadata.get("user_id"),
        charges_enabled=account.charges_enabled,
        payouts_enabled=account.payouts_enabled,
        details_submitted=account.details_submitted,
    )


def _transfer_created(envelope: GatewayEnvelope) -> GatewayEvent:
    transfer = TransferObject.model_validate(envelope.data.object)
    return TransferCreated(
        **_base(envelope),
        transfer_id=transfer.id,
        amount=transfer.amount,
        currency=transfer.currency,
        order_id=transfer.metadata.get("order_id"),
        milestone_id=transfer.metadata.get("milestone_id"),
        destination=transfer.destination,
    )


def _dispute_created(envelope: GatewayEnvelope) -> GatewayEvent:
    dispute = DisputeObject.model_validate(envelope.data.object)
    payment_id = _object_id(dispute.payment_intent)
    if payment_id is None and isinstance(dispute.charge, dict):
        payment_id = _object_id(dispute.charge.get("payment_intent"))
    return DisputeCreated(
        **_base(envelope),
        dispute_id=dispute.id,
        charge_id=_object_id(dispute.charge),
        payment_id=payment_id,
        amount=dispute.amount,
        currency=dispute.currency,
        reason=dispute.reason,
    )


def _dispute_closed(envelope: GatewayEnvelope) -> GatewayEvent:
    dispute = DisputeObject.model_validate(envelope.data.object)
    return DisputeClosed(**_base(envelope), dispute_id=dispute.id, outcome=dispute.status)


def _dispute_updated(envelope: GatewayEnvelope) -> GatewayEvent:
    dispute = DisputeObject.model_validate(envelope.data.object)
    return LoggedEvent(
        **_base(envelope),
        object_id=dispute.id,
        summary=f"dispute updated (status={dispute.status})",
    )


def _payout_paid(envelope: GatewayEnvelope) -> GatewayEvent:
    payout = PayoutObject.model_validate(envelope.data.object)
    return PayoutPaid(
        **_base(envelope),
        payout_id=payout.id,
        amount=payout.amount,
        currency=payout.currency,
        arrival_date=_epoch(payout.arrival_date),
        destination=_object_id(payout.destination),
    )


def _payout_failed(envelope: GatewayEnvelope) -> GatewayEvent:
    payout = PayoutObject.model_validate(envelope.data.object)
    return PayoutFailed(
        **_base(envelope),
        payout_id=payout.id,
        amount=payout.amount,
        currency=payout.currency,
        failure_message=payout.failure_message,
        destination=_object_id(payout.destination),
    )


def _charge_refunded(envelope: GatewayEnvelope) -> GatewayEvent:
    charge = ChargeObject.model_validate(envelope.data.object)
    return LoggedEvent(
        **_base(envelope),
        object_id=charge.id,
        summary=f"charge refunded (amount_refunded={charge.amount_refunded})",
    )


_BUILDERS: dict[str, Callable[[GatewayEnvelope], GatewayEvent]] = {
    "payment_intent.succeeded": _payment_succeeded,
    "payment_intent.payment_failed": _payment_failed,
    "account.updated": _account_updated,
    "transfer.created": _transfer_created,
    "charge.dispute.created": _dispute_created,
    "charge.dispute.updated": _dispute_updated,
    "charge.dispute.closed": _dispute_closed,
    "payout.paid": _payout_paid,
    "payout.failed": _payout_failed,
    "charge.refunded": _charge_refunded,
}

SUPPORTED_EVENT_TYPES = frozenset(_BUILDERS)


def parse_event(envelope: GatewayEnvelope) -> GatewayEvent:
    """Build the typed variant for an envelope.

    Raises:
        MalformedPayload: the object lacks fields its type requires.
    """
    builder = _BUILDERS.get(envelope.type)
    if builder is None:
        raw_id = envelope.data.object.get("id")
        return UnhandledEvent(**_base(envelope), object_id=str(raw_id) if raw_id is not None else None)
    try:
        return builder(envelope)
    except ValidationError as exc:
        raise MalformedPayload(
            f"{envelope.type} payload is malformed: {exc.error_count()} error(s)",
            event_id=envelope.id,
        ) from exc
