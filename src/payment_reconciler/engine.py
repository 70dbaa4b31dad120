"""Reconciliation engine - orchestrates webhook processing.

Flow per notification:
    verify signature -> acquire ledger row -> parse + route -> handler
    -> mark processed (same transaction as handler effects) -> commit
    -> flush notifications

Transaction boundaries:
- The ledger acquire commits on its own so the lock is visible at once.
- Handler writes and the terminal ledger mark commit together.
- A ValidationFailure rolls back handler writes; the event is then marked
  processed with an annotation and acknowledged.
- Any other exception rolls back, marks the event failed in a separate
  transaction, and surfaces as ProcessingFailed so the gateway retries.
- Notifications are sent only after a successful commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciler.config import Settings
from payment_reconciler.engine_config import EngineConfig
from payment_reconciler.errors import ReconciliationError, ValidationFailure
from payment_reconciler.events import (
    AccountUpdated,
    BalanceTopUp,
    DisputeClosed,
    DisputeCreated,
    GatewayEnvelope,
    PaymentFailed,
    PaymentSucceeded,
    PayoutFailed,
    PayoutPaid,
    TransferCreated,
    envelope_to_payload,
    parse_event,
)
from payment_reconciler.notifications import (
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationOutbox,
)
from payment_reconciler.providers import ChargeLookup, StripeChargeLookup
from payment_reconciler.services import (
    AccountStatusHandler,
    BalanceTopUpHandler,
    DisputeRecorder,
    EscrowService,
    EventRouter,
    HandlerContext,
    IdempotencyLedger,
    PaymentOutcomeHandler,
    PaymentReferenceResolver,
    PaymentValidator,
    PayoutRecorder,
    RetainerPaymentHandler,
    SignatureVerifier,
    TransferRecorder,
)

logger = logging.getLogger(__name__)


class WebhookStatus(str, Enum):
    """Acknowledgement status returned to the gateway."""

    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    PROCESSING = "processing"


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of handling one notification.

    annotation is set when the event was rejected as permanently invalid;
    it is still acknowledged so the gateway stops retrying.
    """

    status: WebhookStatus
    event_id: str
    event_type: str
    annotation: str | None = None
    notifications_sent: int = 0


class ProcessingFailed(ReconciliationError):
    """A handler failed unexpectedly. The event is retryable."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Processing failed for event {event_id}")


class EventNotFound(ReconciliationError):
    """No ledger row exists for the requested event id."""


class ReconciliationEngine:
    """Webhook reconciliation engine.

    Usage:
        engine = ReconciliationEngine(session_factory, EngineConfig(...))
        outcome = await engine.handle(raw_body, signature_header)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: EngineConfig | None = None,
        *,
        dispatcher: NotificationDispatcher | None = None,
        charge_lookup: ChargeLookup | None = None,
    ):
        self.config = config or EngineConfig()
        self._session_factory = session_factory
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()

        self.verifier = SignatureVerifier(self.config.signature)
        self.ledger = IdempotencyLedger(session_factory, self.config.ledger)
        self.validator = PaymentValidator(self.config.validation)

        escrow = EscrowService(self.validator)
        payments = PaymentOutcomeHandler(self.validator, escrow, RetainerPaymentHandler())
        disputes = DisputeRecorder(PaymentReferenceResolver(charge_lookup), escrow)
        payouts = PayoutRecorder()

        self.router = EventRouter()
        self.router.on(BalanceTopUp, BalanceTopUpHandler().credit)
        self.router.on(PaymentSucceeded, payments.on_succeeded)
        self.router.on(PaymentFailed, payments.on_failed)
        self.router.on(AccountUpdated, AccountStatusHandler().on_updated)
        self.router.on(TransferCreated, TransferRecorder().on_created)
        self.router.on(DisputeCreated, disputes.on_created)
        self.router.on(DisputeClosed, disputes.on_closed)
        self.router.on(PayoutPaid, payouts.on_paid)
        self.router.on(PayoutFailed, payouts.on_failed)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> ReconciliationEngine:
        """Wire the engine and its adapters from process settings."""
        dispatcher: NotificationDispatcher
        if settings.notification_service_url:
            dispatcher = HttpNotificationDispatcher(
                settings.notification_service_url,
                timeout_seconds=settings.notification_timeout_seconds,
            )
        else:
            dispatcher = LoggingNotificationDispatcher()

        charge_lookup = None
        if settings.gateway_api_key:
            charge_lookup = StripeChargeLookup(settings.gateway_api_key)

        return cls(
            session_factory,
            EngineConfig.from_settings(settings),
            dispatcher=dispatcher,
            charge_lookup=charge_lookup,
        )

    async def handle(self, payload: bytes | str, signature_header: str | None) -> WebhookOutcome:
        """Verify and process one inbound notification.

        Raises:
            SignatureInvalid: authenticity check failed (nothing was stored)
            ProcessingFailed: unexpected handler failure (event marked failed)
        """
        envelope = self.verifier.verify(payload, signature_header)
        return await self.process_envelope(envelope)

    async def process_envelope(self, envelope: GatewayEnvelope) -> WebhookOutcome:
        """Process an already-trusted envelope under the idempotency ledger."""
        acquired = await self.ledger.acquire(envelope.id, envelope.type, envelope_to_payload(envelope))

        if acquired.already_processed:
            logger.info("Event %s already processed", envelope.id)
            return WebhookOutcome(WebhookStatus.ALREADY_PROCESSED, envelope.id, envelope.type)
        if not acquired.acquired:
            logger.info("Event %s is being processed by another worker", envelope.id)
            return WebhookOutcome(WebhookStatus.PROCESSING, envelope.id, envelope.type)

        outbox = NotificationOutbox()
        try:
            annotation = await self._run_handler(envelope, outbox)
        except Exception as exc:
            logger.exception(
                "Processing failed for event %s (%s), attempt %d",
                envelope.id,
                envelope.type,
                acquired.attempt,
            )
            outbox.clear()
            await self._record_failure(envelope.id, exc)
            raise ProcessingFailed(envelope.id) from exc

        sent = await outbox.flush(self.dispatcher)
        return WebhookOutcome(
            WebhookStatus.PROCESSED,
            envelope.id,
            envelope.type,
            annotation=annotation,
            notifications_sent=sent,
        )

    async def replay(self, external_event_id: str) -> WebhookOutcome:
        """Re-run a stored payload through the ledger.

        The stored payload was verified when it first arrived. Processed
        events are reported as such; failed ones are reclaimed and retried.

        Raises:
            EventNotFound: no such event in the ledger
        """
        stored = await self.ledger.get(external_event_id)
        if stored is None:
            raise EventNotFound(f"Event {external_event_id} not found")
        envelope = GatewayEnvelope.model_validate(stored.raw_payload)
        return await self.process_envelope(envelope)

    async def _run_handler(self, envelope: GatewayEnvelope, outbox: NotificationOutbox) -> str | None:
        """Run the routed handler and commit it with the terminal ledger mark."""
        async with self._session_factory() as session:
            ctx = HandlerContext(session=session, outbox=outbox, event_id=envelope.id)
            try:
                event = parse_event(envelope)
                await self.router.dispatch(ctx, event)
            except ValidationFailure as failure:
                await session.rollback()
                outbox.clear()
                annotation = failure.annotation()
                logger.warning("Event %s (%s) rejected: %s", envelope.id, envelope.type, annotation)
                await self.ledger.mark_processed(envelope.id, error=annotation, session=session)
                await session.commit()
                return annotation

            await self.ledger.mark_processed(envelope.id, session=session)
            await session.commit()
            logger.info("Event %s (%s) processed", envelope.id, event.kind)
            return None

    async def _record_failure(self, external_event_id: str, exc: Exception) -> None:
        try:
            await self.ledger.mark_failed(external_event_id, f"{type(exc).__name__}: {exc}")
        except Exception:
            # Row stays in flight; the stale lock timeout makes it reclaimable
            logger.exception("Could not mark event %s as failed", external_event_id)
