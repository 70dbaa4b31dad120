"""Reconciliation observability metrics.

Computed from the durable tables, so every worker reports the same numbers
and nothing is lost on restart.

Metric Categories:
- Event metrics: received, processed, rejected, failed, in flight
- Escrow metrics: orders by escrow status, hold entries
- Observer metrics: open disputes, transfers, payouts by status

Usage:
    async with session_factory() as session:
        metrics = await MetricsCollector(session).collect_all()

    # For Prometheus export
    print(metrics.to_prometheus())

    # For JSON export
    print(metrics.to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciler.models import (
    Dispute,
    EscrowTransaction,
    Order,
    PaymentEvent,
    PayoutLogEntry,
    TransferLogEntry,
    utcnow,
)


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: float | int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class ReconcilerMetrics:
    """Collection of all reconciler metrics."""

    # Event metrics
    events_received: Counter
    events_processed: Counter
    events_rejected: Counter
    events_failed: Gauge
    events_in_flight: Gauge
    events_by_type: list[Counter]

    # Escrow metrics
    orders_by_escrow_status: list[Gauge]
    escrow_holds: Counter

    # Observer metrics
    disputes_open: Gauge
    transfers_recorded: Counter
    payouts_by_status: list[Counter]

    collected_at: datetime = field(default_factory=utcnow)

    def metrics(self) -> list[Counter | Gauge]:
        """All metrics, flattened."""
        result: list[Counter | Gauge] = []
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, list):
                result.extend(value)
            elif isinstance(value, (Counter, Gauge)):
                result.append(value)
        return result

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {"collected_at": self.collected_at.isoformat()}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, list):
                result[f.name] = [self._metric_to_dict(m) for m in value]
            elif isinstance(value, (Counter, Gauge)):
                result[f.name] = self._metric_to_dict(value)
        return result

    def _metric_to_dict(self, metric: Counter | Gauge) -> dict[str, Any]:
        """Convert single metric to dict."""
        return {
            "name": metric.name,
            "value": metric.value,
            "labels": metric.labels,
            "help": metric.help_text,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        described: set[str] = set()

        for metric in self.metrics():
            labels = ""
            if metric.labels:
                label_parts = [f'{k}="{v}"' for k, v in metric.labels.items()]
                labels = "{" + ",".join(label_parts) + "}"

            # HELP/TYPE once per metric family
            if metric.name not in described:
                described.add(metric.name)
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")
            lines.append(f"{metric.name}{labels} {metric.value}")

        return "\n".join(lines) + "\n"


class MetricsCollector:
    """Collects metrics from database."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def collect_all(self) -> ReconcilerMetrics:
        """Collect all metrics."""
        return ReconcilerMetrics(
            events_received=Counter(
                name="reconciler_events_received_total",
                value=await self._count(PaymentEvent),
                help_text="Distinct gateway events recorded in the ledger",
            ),
            events_processed=Counter(
                name="reconciler_events_processed_total",
                value=await self._count(PaymentEvent, PaymentEvent.processed.is_(True)),
                help_text="Events in terminal processed state",
            ),
            events_rejected=Counter(
                name="reconciler_events_rejected_total",
                value=await self._count(
                    PaymentEvent,
                    PaymentEvent.processed.is_(True),
                    PaymentEvent.error.is_not(None),
                ),
                help_text="Events acknowledged as permanently invalid",
            ),
            events_failed=Gauge(
                name="reconciler_events_failed",
                value=await self._count(
                    PaymentEvent,
                    PaymentEvent.processed.is_(False),
                    PaymentEvent.error.is_not(None),
                ),
                help_text="Events awaiting redelivery after a failure (should be low)",
            ),
            events_in_flight=Gauge(
                name="reconciler_events_in_flight",
                value=await self._count(
                    PaymentEvent,
                    PaymentEvent.processed.is_(False),
                    PaymentEvent.error.is_(None),
                ),
                help_text="Events currently held by a worker",
            ),
            events_by_type=[
                Counter(
                    name="reconciler_events_by_type_total",
                    value=count,
                    labels={"type": event_type},
                    help_text="Events by gateway type",
                )
                for event_type, count in await self._grouped(PaymentEvent.event_type)
            ],
            orders_by_escrow_status=[
                Gauge(
                    name="reconciler_orders_by_escrow_status",
                    value=count,
                    labels={"escrow_status": escrow_status},
                    help_text="Orders by escrow status",
                )
                for escrow_status, count in await self._grouped(Order.escrow_status)
            ],
            escrow_holds=Counter(
                name="reconciler_escrow_holds_total",
                value=await self._count(EscrowTransaction, EscrowTransaction.kind == "hold"),
                help_text="Escrow hold entries written",
            ),
            disputes_open=Gauge(
                name="reconciler_disputes_open",
                value=await self._count(Dispute, Dispute.status == "open"),
                help_text="Open chargebacks",
            ),
            transfers_recorded=Counter(
                name="reconciler_transfers_total",
                value=await self._count(TransferLogEntry),
                help_text="Transfers to connected accounts recorded",
            ),
            payouts_by_status=[
                Counter(
                    name="reconciler_payouts_total",
                    value=count,
                    labels={"status": payout_status},
                    help_text="Payouts by status",
                )
                for payout_status, count in await self._grouped(PayoutLogEntry.status)
            ],
        )

    async def _count(self, model: type, *conditions: Any) -> int:
        stmt = select(func.count()).select_from(model)
        if conditions:
            stmt = stmt.where(*conditions)
        return int((await self._session.execute(stmt)).scalar_one())

    async def _grouped(self, column: Any) -> list[tuple[str, int]]:
        result = await self._session.execute(
            select(column, func.count()).group_by(column).order_by(column)
        )
        return [(str(key), int(count)) for key, count in result.all()]
