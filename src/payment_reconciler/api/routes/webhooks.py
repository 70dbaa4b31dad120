"""Inbound gateway webhook endpoint."""

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Request, status
from fastapi.responses import JSONResponse

from payment_reconciler.api.dependencies import Engine
from payment_reconciler.api.schemas import ErrorResponse, WebhookAck
from payment_reconciler.engine import ProcessingFailed
from payment_reconciler.errors import SignatureInvalid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/gateway",
    response_model=WebhookAck,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
)
async def receive_gateway_event(
    request: Request,
    engine: Engine,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> WebhookAck | JSONResponse:
    """Receive a payment gateway notification.

    200 for every outcome that should stop retries, 400 only when the
    request is not authentic, 500 only when processing failed and the
    gateway should redeliver.
    """
    body = await request.body()
    try:
        outcome = await engine.handle(body, stripe_signature)
    except SignatureInvalid as exc:
        logger.warning("Rejected webhook: %s", exc.reason)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request"},
        )
    except ProcessingFailed:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Processing failed"},
        )

    return WebhookAck(status=outcome.status.value)
