"""Metrics endpoint."""

from typing import Literal

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse, Response

from payment_reconciler.api.dependencies import DbSession
from payment_reconciler.metrics import MetricsCollector

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def get_metrics(db: DbSession, format: Literal["prometheus", "json"] = "prometheus") -> Response:
    """Reconciler metrics in Prometheus text (default) or JSON."""
    metrics = await MetricsCollector(db).collect_all()
    if format == "json":
        return Response(content=metrics.to_json(), media_type="application/json")
    return PlainTextResponse(metrics.to_prometheus())
