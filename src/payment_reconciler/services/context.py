"""Per-event handler context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciler.models import ProviderProfile
from payment_reconciler.notifications import Notification, NotificationOutbox


@dataclass
class HandlerContext:
    """What a handler gets: the open transaction and the notification outbox.

    Handlers never commit. Notifications added here are sent only after the
    engine commits the transaction.
    """

    session: AsyncSession
    outbox: NotificationOutbox
    event_id: str

    def notify(
        self,
        user_id: str | None,
        title: str,
        body: str,
        *,
        priority: str = "medium",
        action_url: str | None = None,
        **metadata: Any,
    ) -> None:
        if not user_id:
            return
        self.outbox.add(
            Notification(
                user_id=user_id,
                title=title,
                body=body,
                priority=priority,
                action_url=action_url,
                metadata={"event_id": self.event_id, **metadata},
            )
        )


async def provider_user_id(session: AsyncSession, provider_profile_id: str) -> str | None:
    """User id behind a seller's provider profile."""
    result = await session.execute(
        select(ProviderProfile.user_id).where(ProviderProfile.id == provider_profile_id)
    )
    return result.scalar_one_or_none()


async def provider_by_account(session: AsyncSession, gateway_account_id: str) -> ProviderProfile | None:
    result = await session.execute(
        select(ProviderProfile).where(ProviderProfile.gateway_account_id == gateway_account_id)
    )
    return result.scalars().first()
