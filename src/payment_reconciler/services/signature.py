"""Webhook signature verification.

Runs before any database access. A request that fails here never reaches
the idempotency ledger.
"""

from __future__ import annotations

import logging

import stripe

from payment_reconciler.engine_config import SignatureConfig
from payment_reconciler.errors import SignatureInvalid
from payment_reconciler.events.parser import GatewayEnvelope, parse_envelope

security_logger = logging.getLogger("payment_reconciler.security")


class SignatureVerifier:
    """Authenticates gateway notifications against the shared secret.

    The signature is recomputed over the exact raw bytes received; the body
    must not be re-serialised before verification.
    """

    def __init__(self, config: SignatureConfig):
        self.config = config

    def verify(self, payload: bytes | str, signature_header: str | None) -> GatewayEnvelope:
        """Verify a notification and return its trusted envelope.

        Raises:
            SignatureInvalid: secret or header missing, or signature mismatch.
            MalformedEvent: the signed body is not a valid envelope.
        """
        secret = self.config.webhook_secret
        if not secret:
            security_logger.error("Webhook rejected: no webhook secret configured")
            raise SignatureInvalid("webhook secret not configured")
        if not signature_header:
            security_logger.warning("Webhook rejected: missing signature header")
            raise SignatureInvalid("missing signature header")

        if isinstance(payload, bytes):
            try:
                body = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise SignatureInvalid("body is not valid UTF-8") from exc
        else:
            body = payload

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                secret,
                tolerance=self.config.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            security_logger.warning("Webhook signature verification failed: %s", exc)
            raise SignatureInvalid("signature verification failed") from exc

        return parse_envelope(body)
