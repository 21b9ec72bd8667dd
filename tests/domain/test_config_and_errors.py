from decimal import Decimal

import pytest

from reconciliation_service.config import Settings, load_settings
from reconciliation_service.errors import (
    InsufficientStockError,
    PaymentGatewayUnavailableError,
    ProductNotFoundError,
    StoreUnavailableError,
    ValidationError,
)


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("MEMBER_DISCOUNT_RATE", "GUEST_SHIPPING_FEE", "RABBITMQ_HOST", "ADMIN_API_KEY"):
            monkeypatch.delenv(name, raising=False)

        settings = load_settings()

        assert settings.member_discount_rate == Decimal("0.05")
        assert settings.guest_shipping_fee == Decimal("9.99")
        assert settings.minimum_charge_cents == 50
        assert settings.rabbitmq_host is None
        assert settings.admin_api_key is None

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://shop@db/shop")
        monkeypatch.setenv("GUEST_SHIPPING_FEE", "4.95")
        monkeypatch.setenv("IDEMPOTENCY_RETRY_ATTEMPTS", "5")
        monkeypatch.setenv("RABBITMQ_HOST", "rabbit")

        settings = load_settings()

        assert settings.database_url.startswith("postgresql")
        assert settings.guest_shipping_fee == Decimal("4.95")
        assert settings.idempotency_retry_attempts == 5
        assert settings.rabbitmq_host == "rabbit"

    def test_malformed_number_fails_fast(self, monkeypatch):
        monkeypatch.setenv("MINIMUM_CHARGE_CENTS", "fifty")

        with pytest.raises(ValueError):
            load_settings()

    def test_override_returns_copy(self):
        base = Settings()
        changed = base.override(currency="eur")

        assert changed.currency == "eur"
        assert base.currency == "usd"

    def test_secrets_not_in_repr(self):
        assert "hunter2" not in repr(Settings(admin_api_key="hunter2", rabbitmq_password="hunter2"))


class TestErrors:
    def test_insufficient_stock_messages(self):
        assert "Only 2 items available" in str(InsufficientStockError("p1", 5, 2, "Lamp"))
        assert "out of stock" in str(InsufficientStockError("p1", 1, 0))
        assert "not available" in str(InsufficientStockError("p1", 1, None))

    def test_product_not_found_is_a_stock_error(self):
        error = ProductNotFoundError("p9", 1)

        assert isinstance(error, InsufficientStockError)
        assert str(error) == "Product p9 not found"

    def test_retryable_flags(self):
        assert StoreUnavailableError("x").retryable
        assert PaymentGatewayUnavailableError("x").retryable
        assert not ValidationError("x").retryable
