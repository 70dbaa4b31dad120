"""Idempotency ledger - the only mutual exclusion in the engine.

One payment_event row per external event id. The row's existence is the
lock: acquire inserts it with ON CONFLICT DO NOTHING, so of N concurrent
deliveries exactly one sees its insert succeed. Everything else is decided
by inspecting the existing row.

Row states:
- in flight:  processed=false, error IS NULL
- failed:     processed=false, error set       (reclaimable)
- processed:  processed=true, error optional   (terminal; error = annotation)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import DateTime, bindparam, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciler.engine_config import LedgerConfig
from payment_reconciler.models import PaymentEvent
from payment_reconciler.models.base import JsonType, new_id, utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

_TIMESTAMP = DateTime(timezone=True)

_INSERT_EVENT = text("""
    INSERT INTO payment_event (
        id, external_event_id, event_type, raw_payload, processed,
        attempt_count, received_at, processing_started_at
    )
    VALUES (
        :id, :external_event_id, :event_type, :raw_payload, false,
        1, :now, :now
    )
    ON CONFLICT (external_event_id) DO NOTHING
    RETURNING id
""").bindparams(
    bindparam("raw_payload", type_=JsonType),
    bindparam("now", type_=_TIMESTAMP),
)

# A failed row, or one abandoned in flight, can be taken over by exactly one
# redelivery: the WHERE clause is re-evaluated under the row lock.
_RECLAIM_EVENT = text("""
    UPDATE payment_event
    SET error = NULL,
        processing_started_at = :now,
        attempt_count = attempt_count + 1
    WHERE external_event_id = :external_event_id
      AND processed = false
      AND (
          error IS NOT NULL
          OR processing_started_at IS NULL
          OR processing_started_at < :stale_before
      )
    RETURNING attempt_count
""").bindparams(
    bindparam("now", type_=_TIMESTAMP),
    bindparam("stale_before", type_=_TIMESTAMP),
)

_MARK_PROCESSED = text("""
    UPDATE payment_event
    SET processed = true, processed_at = :now, error = :error
    WHERE external_event_id = :external_event_id
""").bindparams(bindparam("now", type_=_TIMESTAMP))

_MARK_FAILED = text("""
    UPDATE payment_event
    SET error = :error
    WHERE external_event_id = :external_event_id AND processed = false
""")


@dataclass(frozen=True)
class AcquireResult:
    """Outcome of an acquire attempt.

    Exactly one of three situations:
    - acquired: the caller owns the event and must run its handler
    - already_processed: a previous attempt finished
    - neither: another worker holds the event right now
    """

    acquired: bool
    already_processed: bool
    reclaimed: bool = False
    attempt: int = 0

    @property
    def in_flight(self) -> bool:
        return not self.acquired and not self.already_processed


class IdempotencyLedger:
    """Durable (external_event_id -> processing state) table with atomic acquire."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: LedgerConfig | None = None,
    ):
        self._session_factory = session_factory
        self.config = config or LedgerConfig()

    async def acquire(
        self,
        external_event_id: str,
        event_type: str,
        raw_payload: dict[str, Any],
    ) -> AcquireResult:
        """Try to take ownership of an event.

        Commits on its own so the lock is visible to other workers before
        any handler runs.
        """
        now = utcnow()
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    _INSERT_EVENT,
                    {
                        "id": new_id(),
                        "external_event_id": external_event_id,
                        "event_type": event_type,
                        "raw_payload": raw_payload,
                        "now": now,
                    },
                )
            ).first()
            if row is not None:
                await session.commit()
                return AcquireResult(acquired=True, already_processed=False, attempt=1)

            # Conflict - the event was seen before
            stale_before = now - timedelta(seconds=self.config.stale_lock_seconds)
            reclaimed = (
                await session.execute(
                    _RECLAIM_EVENT,
                    {
                        "external_event_id": external_event_id,
                        "now": now,
                        "stale_before": stale_before,
                    },
                )
            ).first()
            if reclaimed is not None:
                await session.commit()
                logger.info(
                    "Reclaimed event %s for attempt %d", external_event_id, reclaimed[0]
                )
                return AcquireResult(
                    acquired=True,
                    already_processed=False,
                    reclaimed=True,
                    attempt=int(reclaimed[0]),
                )

            processed = (
                await session.execute(
                    select(PaymentEvent.processed).where(
                        PaymentEvent.external_event_id == external_event_id
                    )
                )
            ).scalar_one_or_none()
            await session.commit()

        if processed is None:
            raise RuntimeError(
                f"Ledger acquire failed unexpectedly - no row created or found for {external_event_id}"
            )
        return AcquireResult(acquired=False, already_processed=bool(processed))

    async def mark_processed(
        self,
        external_event_id: str,
        *,
        error: str | None = None,
        session: AsyncSession | None = None,
    ) -> None:
        """Move an event to its terminal state.

        Args:
            external_event_id: Gateway event id
            error: Optional annotation (validation failures are processed
                events with an explanation attached)
            session: Session of the handler transaction. When given, the
                update joins it and the caller commits, so handler effects
                and the terminal mark land together.
        """
        params = {
            "external_event_id": external_event_id,
            "error": _truncate(error),
            "now": utcnow(),
        }
        if session is not None:
            await session.execute(_MARK_PROCESSED, params)
            return
        async with self._session_factory() as own:
            await own.execute(_MARK_PROCESSED, params)
            await own.commit()

    async def mark_failed(self, external_event_id: str, reason: str) -> None:
        """Record a retryable failure. The next delivery reclaims the row."""
        async with self._session_factory() as session:
            await session.execute(
                _MARK_FAILED,
                {"external_event_id": external_event_id, "error": _truncate(reason)},
            )
            await session.commit()

    async def get(self, external_event_id: str) -> PaymentEvent | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentEvent).where(PaymentEvent.external_event_id == external_event_id)
            )
            return result.scalar_one_or_none()

    async def list_failed(self, limit: int = 50) -> list[PaymentEvent]:
        """Failed events, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentEvent)
                .where(PaymentEvent.processed.is_(False), PaymentEvent.error.is_not(None))
                .order_by(PaymentEvent.received_at)
                .limit(limit)
            )
            return list(result.scalars())


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_LENGTH]
