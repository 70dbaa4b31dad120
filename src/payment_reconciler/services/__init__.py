"""Reconciliation services."""

from payment_reconciler.services.accounts import AccountStatusHandler
from payment_reconciler.services.balances import BalanceTopUpHandler
from payment_reconciler.services.context import HandlerContext
from payment_reconciler.services.escrow import (
    EscrowService,
    EscrowStateMachine,
    EscrowStatus,
)
from payment_reconciler.services.idempotency import AcquireResult, IdempotencyLedger
from payment_reconciler.services.payments import PaymentOutcomeHandler
from payment_reconciler.services.recorders import DisputeRecorder, PayoutRecorder, TransferRecorder
from payment_reconciler.services.resolver import PaymentReferenceResolver
from payment_reconciler.services.retainer import RetainerPaymentHandler
from payment_reconciler.services.router import EventRouter
from payment_reconciler.services.signature import SignatureVerifier
from payment_reconciler.services.validator import PaymentValidator, ValidatedPayment

__all__ = [
    # Ingress
    "SignatureVerifier",
    "IdempotencyLedger",
    "AcquireResult",
    "EventRouter",
    "HandlerContext",
    # Payments
    "PaymentValidator",
    "ValidatedPayment",
    "PaymentOutcomeHandler",
    "EscrowService",
    "EscrowStateMachine",
    "EscrowStatus",
    "RetainerPaymentHandler",
    "BalanceTopUpHandler",
    "AccountStatusHandler",
    # Observers
    "PaymentReferenceResolver",
    "DisputeRecorder",
    "TransferRecorder",
    "PayoutRecorder",
]
