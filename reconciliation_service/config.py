"""
config.py — Runtime Configuration for the Reconciliation Service

All tunables are read from environment variables once, at startup, into an
immutable `Settings` object. The object is then handed explicitly to every
component (engine, webhook ingress, clients) instead of being imported as a
global, so tests can build their own.

Business constants (discount rate, shipping fees, minimum charge) live here
rather than in the engine: they are pricing policy, not reconciliation logic.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class Settings:
    """
    Immutable service configuration.

    Attributes:
        database_url (str): SQLAlchemy URL of the relational store.
        stripe_secret_key (str): Secret API key for the payment provider.
        stripe_webhook_secret (str): Signing secret used to verify webhook payloads.
        stripe_api_base (str): Base URL of the provider's REST API.
        currency (str): ISO 4217 currency code used for new payment intents.
        member_discount_rate (Decimal): Fraction taken off the subtotal for authenticated users.
        member_shipping_fee (Decimal): Flat shipping fee for authenticated users.
        guest_shipping_fee (Decimal): Flat shipping fee for guest checkout.
        minimum_charge_cents (int): Smallest amount the provider accepts.
        webhook_tolerance_seconds (int): Maximum accepted age of a signed webhook.
        materialize_timeout_seconds (float): Upper bound for the order transaction.
        idempotency_retry_attempts (int): Retries when a conflicting insert vanished.
        rabbitmq_host (Optional[str]): Broker for orphaned-payment alerts; None disables them.
        admin_api_key (Optional[str]): Key required for admin status changes; None disables them.
    """
    database_url: str = "sqlite:///./reconciliation.db"
    stripe_secret_key: str = field(default="", repr=False)
    stripe_webhook_secret: str = field(default="", repr=False)
    stripe_api_base: str = "https://api.stripe.com"
    currency: str = "usd"
    member_discount_rate: Decimal = Decimal("0.05")
    member_shipping_fee: Decimal = Decimal("0.00")
    guest_shipping_fee: Decimal = Decimal("9.99")
    minimum_charge_cents: int = 50
    webhook_tolerance_seconds: int = 300
    materialize_timeout_seconds: float = 10.0
    idempotency_retry_attempts: int = 3
    rabbitmq_host: Optional[str] = None
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = field(default="guest", repr=False)
    orphaned_payments_queue: str = "payments.orphaned"
    admin_api_key: Optional[str] = field(default=None, repr=False)
    log_file: Optional[str] = "reconciliation.log"

    def override(self, **changes) -> "Settings":
        """Returns a copy with the given fields replaced."""
        return replace(self, **changes)


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.environ.get(name)
    return Decimal(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def load_settings() -> Settings:
    """
    Builds `Settings` from the process environment.

    Unset variables fall back to the dataclass defaults. Malformed numeric values
    raise immediately (ValueError / decimal.InvalidOperation) so a misconfigured
    deployment fails at startup rather than on the first payment.
    """
    defaults = Settings()
    return Settings(
        database_url=os.environ.get("DATABASE_URL", defaults.database_url),
        stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
        stripe_api_base=os.environ.get("STRIPE_API_BASE", defaults.stripe_api_base),
        currency=os.environ.get("CURRENCY", defaults.currency),
        member_discount_rate=_env_decimal("MEMBER_DISCOUNT_RATE", defaults.member_discount_rate),
        member_shipping_fee=_env_decimal("MEMBER_SHIPPING_FEE", defaults.member_shipping_fee),
        guest_shipping_fee=_env_decimal("GUEST_SHIPPING_FEE", defaults.guest_shipping_fee),
        minimum_charge_cents=_env_int("MINIMUM_CHARGE_CENTS", defaults.minimum_charge_cents),
        webhook_tolerance_seconds=_env_int("WEBHOOK_TOLERANCE_SECONDS", defaults.webhook_tolerance_seconds),
        materialize_timeout_seconds=_env_float("MATERIALIZE_TIMEOUT_SECONDS", defaults.materialize_timeout_seconds),
        idempotency_retry_attempts=_env_int("IDEMPOTENCY_RETRY_ATTEMPTS", defaults.idempotency_retry_attempts),
        rabbitmq_host=os.environ.get("RABBITMQ_HOST") or None,
        rabbitmq_user=os.environ.get("RABBITMQ_USER", defaults.rabbitmq_user),
        rabbitmq_password=os.environ.get("RABBITMQ_PASSWORD", defaults.rabbitmq_password),
        orphaned_payments_queue=os.environ.get("ORPHANED_PAYMENTS_QUEUE", defaults.orphaned_payments_queue),
        admin_api_key=os.environ.get("ADMIN_API_KEY") or None,
        log_file=os.environ.get("LOG_FILE", defaults.log_file) or None,
    )
