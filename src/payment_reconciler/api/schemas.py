"""Pydantic schemas for API responses."""

from typing import Literal

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Acknowledgement that stops gateway retries."""

    received: bool = True
    status: Literal["processed", "already_processed", "processing"]


class ErrorResponse(BaseModel):
    """Error body. Deliberately carries no detail."""

    error: str
