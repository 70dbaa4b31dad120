"""Idempotency ledger model.

One row per external gateway notification. The row's existence is the
processing lock: it is inserted atomically by the ledger acquire step and
never deleted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from payment_reconciler.models.base import Base, JsonType, new_id, utcnow


class PaymentEvent(Base):
    """Processing state of an external payment gateway event."""

    __tablename__ = "payment_event"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("payment_event_unprocessed", "processed", "processing_started_at"),
    )
