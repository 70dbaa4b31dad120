"""Exception taxonomy for webhook reconciliation.

SignatureInvalid rejects a request before any processing. ValidationFailure
subclasses are permanent: the event is acknowledged and annotated, never
retried. Anything else escaping a handler is treated as transient.
"""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for reconciliation errors."""


class ConfigurationError(ReconciliationError):
    """Raised at startup when required configuration is missing."""


class SignatureInvalid(ReconciliationError):
    """The notification failed authenticity checks."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class MalformedEvent(SignatureInvalid):
    """A correctly signed body that is not a usable event envelope."""


class ValidationFailure(ReconciliationError):
    """A permanently invalid event. Logged, annotated, acknowledged."""

    code = "validation_failed"

    def __init__(self, message: str, **context: object):
        self.context = context
        super().__init__(message)

    def annotation(self) -> str:
        """Short text stored in the ledger row's error column."""
        return f"{self.code}: {self}"


class MalformedPayload(ValidationFailure):
    """The event's object does not carry the fields its type requires."""

    code = "malformed_payload"


class MissingReference(ValidationFailure):
    code = "missing_reference"


class OrderNotFound(ValidationFailure):
    code = "order_not_found"


class ReferenceMismatch(ValidationFailure):
    code = "reference_mismatch"


class CurrencyMismatch(ValidationFailure):
    code = "currency_mismatch"


class AmountMismatch(ValidationFailure):
    """Only raised when the amount policy is configured to block."""

    code = "amount_mismatch"


class ReferenceUnresolvable(ValidationFailure):
    """A dispute's charge could not be traced back to a payment reference."""

    code = "reference_unresolvable"
