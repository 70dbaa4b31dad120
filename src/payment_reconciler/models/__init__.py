"""ORM models for the payment reconciler."""

from payment_reconciler.models.audit import (
    AccountBalance,
    BalanceTransaction,
    PayoutLogEntry,
    TransferLogEntry,
)
from payment_reconciler.models.base import Base, TimestampMixin, utcnow
from payment_reconciler.models.events import PaymentEvent
from payment_reconciler.models.marketplace import Dispute, EscrowTransaction, Order, ProviderProfile
from payment_reconciler.models.retainers import Retainer, TimesheetEntry

__all__ = [
    "AccountBalance",
    "BalanceTransaction",
    "Base",
    "Dispute",
    "EscrowTransaction",
    "Order",
    "PaymentEvent",
    "PayoutLogEntry",
    "ProviderProfile",
    "Retainer",
    "TimesheetEntry",
    "TimestampMixin",
    "TransferLogEntry",
    "utcnow",
]
