"""Connected account onboarding status."""

from __future__ import annotations

import logging

from sqlalchemy import select

from payment_reconciler.errors import MissingReference
from payment_reconciler.events.types import AccountUpdated
from payment_reconciler.models import ProviderProfile
from payment_reconciler.services.context import HandlerContext

logger = logging.getLogger(__name__)


class AccountStatusHandler:
    """Mirrors a seller's connected account capabilities onto their profile."""

    async def on_updated(self, ctx: HandlerContext, event: AccountUpdated) -> bool:
        """Apply capability flags. Returns True when onboarding just completed.

        Raises:
            MissingReference: the account is not tagged with a user id.
        """
        if not event.user_id:
            raise MissingReference(
                f"Account {event.account_id} has no user_id metadata", account_id=event.account_id
            )

        result = await ctx.session.execute(
            select(ProviderProfile)
            .where(ProviderProfile.user_id == event.user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        profile = result.scalar_one_or_none()
        if profile is None:
            logger.warning(
                "No provider profile for user %s (account %s)", event.user_id, event.account_id
            )
            return False

        was_complete = profile.onboarding_complete
        profile.gateway_account_id = event.account_id
        profile.charges_enabled = event.charges_enabled
        profile.payouts_enabled = event.payouts_enabled
        profile.onboarding_complete = event.fully_onboarded
        await ctx.session.flush()

        logger.info(
            "Account %s for user %s: charges=%s payouts=%s complete=%s",
            event.account_id,
            event.user_id,
            event.charges_enabled,
            event.payouts_enabled,
            event.fully_onboarded,
        )

        if event.fully_onboarded and not was_complete:
            ctx.notify(
                event.user_id,
                "You're ready to get paid",
                "Your payout account is verified. Payments for your work will now reach your bank.",
                action_url="/dashboard",
                account_id=event.account_id,
            )
            return True
        return False
