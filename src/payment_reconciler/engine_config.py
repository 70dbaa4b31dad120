"""Reconciliation engine configuration objects.

Explicit configuration for the engine. No module-level secrets.

Pattern:
    engine = ReconciliationEngine(
        session_factory=factory,
        config=EngineConfig(
            environment="production",
            signature=SignatureConfig(webhook_secret="whsec_..."),
            ledger=LedgerConfig(stale_lock_seconds=300),
            validation=ValidationConfig(amount_tolerance_minor=1),
        ),
        dispatcher=HttpNotificationDispatcher(...),
        charge_lookup=StripeChargeLookup(...),
    )

Rules:
    1. The engine never reads the environment; Settings does that once.
    2. Immutable after creation (frozen dataclasses).
    3. A production profile without a webhook secret fails at construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from payment_reconciler.config import Settings
from payment_reconciler.errors import ConfigurationError

ENVIRONMENTS = ("development", "test", "production")


@dataclass(frozen=True)
class SignatureConfig:
    """
    Webhook authenticity configuration.

    Attributes:
        webhook_secret: Shared secret used to sign notifications. Requests are
            rejected while it is unset.
        tolerance_seconds: Maximum age of the signed timestamp. Default 300.
    """

    webhook_secret: str | None = None
    tolerance_seconds: int = 300

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.tolerance_seconds < 1:
            raise ValueError("tolerance_seconds must be at least 1")


@dataclass(frozen=True)
class LedgerConfig:
    """
    Idempotency ledger configuration.

    Attributes:
        stale_lock_seconds: An event still in flight after this long is
            assumed abandoned (worker crash) and may be reclaimed by a
            redelivery. Default 300.
    """

    stale_lock_seconds: int = 300

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.stale_lock_seconds < 30:
            raise ValueError("stale_lock_seconds must be at least 30")


@dataclass(frozen=True)
class ValidationConfig:
    """
    Payment validation policy.

    Attributes:
        amount_tolerance_minor: Allowed difference, in minor units, between
            the order total and the captured amount. Default 1.
        block_on_amount_mismatch: If True, an out-of-tolerance amount aborts
            the hold. Default False: the mismatch is logged as a security
            alert and the hold proceeds.
    """

    amount_tolerance_minor: int = 1
    block_on_amount_mismatch: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.amount_tolerance_minor < 0:
            raise ValueError("amount_tolerance_minor cannot be negative")


@dataclass(frozen=True)
class EngineConfig:
    """
    Complete engine configuration.

    Attributes:
        environment: development, test or production.
        signature: Webhook authenticity configuration.
        ledger: Idempotency ledger configuration.
        validation: Payment validation policy.
    """

    environment: str = "development"
    signature: SignatureConfig = field(default_factory=SignatureConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.environment not in ENVIRONMENTS:
            raise ValueError(f"environment must be one of {ENVIRONMENTS}")
        if self.environment == "production" and not self.signature.webhook_secret:
            raise ConfigurationError("webhook secret is required in production")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        """Build engine configuration from process settings."""
        return cls(
            environment=settings.app_env,
            signature=SignatureConfig(
                webhook_secret=settings.gateway_webhook_secret,
                tolerance_seconds=settings.webhook_tolerance_seconds,
            ),
            ledger=LedgerConfig(stale_lock_seconds=settings.stale_lock_seconds),
            validation=ValidationConfig(
                amount_tolerance_minor=settings.amount_tolerance_minor,
                block_on_amount_mismatch=settings.block_on_amount_mismatch,
            ),
        )


def validate_production_config(config: EngineConfig) -> list[str]:
    """
    Validate that a configuration is safe for production.

    Returns a list of warnings. Empty list = safe.
    """
    issues: list[str] = []

    if not config.signature.webhook_secret:
        issues.append("CRITICAL: no webhook secret configured; every notification will be rejected")

    if config.signature.tolerance_seconds > 900:
        issues.append(
            f"WARNING: signature tolerance of {config.signature.tolerance_seconds}s widens the replay window"
        )

    if not config.validation.block_on_amount_mismatch:
        issues.append("WARNING: amount mismatches are logged but do not block escrow holds")

    if config.validation.amount_tolerance_minor > 1:
        issues.append(
            f"WARNING: amount tolerance of {config.validation.amount_tolerance_minor} minor units"
        )

    return issues
