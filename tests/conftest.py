import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from reconciliation_service.config import Settings
from reconciliation_service.db import (
    CartItemTable,
    CartTable,
    ProductTable,
    create_db_engine,
    create_session_factory,
    init_db,
)

WEBHOOK_SECRET = "whsec_test_secret"


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = str(Path(item.fspath))

        if "/domain/" in test_path:
            item.add_marker(pytest.mark.domain)
        elif "/application/" in test_path:
            item.add_marker(pytest.mark.application)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'reconciliation.db'}",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_api_base="https://stripe.test",
        admin_api_key="admin-secret",
        materialize_timeout_seconds=15.0,
        log_file=None,
    )


@pytest.fixture
def db_engine(settings):
    engine = create_db_engine(settings.database_url, settings.materialize_timeout_seconds)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


# --- Seed helpers ---

class Seeder:
    """Writes catalog and cart rows the way the storefront would."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def product(self, product_id="prod-a", stock=10, price="10.00", name=None):
        with self.session_factory.begin() as session:
            session.add(ProductTable(
                id=product_id,
                name=name or f"Product {product_id}",
                price=Decimal(price),
                stock_quantity=stock,
            ))
        return product_id

    def cart(self, user_id=None, session_id=None, lines=(), updated_at=None):
        """
        Creates a cart with `lines` given as (product_id, quantity, unit_price) tuples.
        Lines get strictly increasing creation times so their order is stable.
        """
        cart_id = str(uuid.uuid4())
        base = datetime.now(timezone.utc)
        with self.session_factory.begin() as session:
            session.add(CartTable(
                id=cart_id,
                user_id=user_id,
                session_id=session_id,
                updated_at=updated_at or base,
            ))
            session.flush()
            for index, (product_id, quantity, price) in enumerate(lines):
                session.add(CartItemTable(
                    id=str(uuid.uuid4()),
                    cart_id=cart_id,
                    product_id=product_id,
                    quantity=quantity,
                    price=Decimal(price),
                    customizations_json={},
                    created_at=base + timedelta(milliseconds=index),
                ))
        return cart_id

    def add_line(self, cart_id, product_id, quantity, price):
        with self.session_factory.begin() as session:
            session.add(CartItemTable(
                id=str(uuid.uuid4()),
                cart_id=cart_id,
                product_id=product_id,
                quantity=quantity,
                price=Decimal(price),
                customizations_json={},
                created_at=datetime.now(timezone.utc) + timedelta(seconds=1),
            ))

    def stock(self, product_id):
        with self.session_factory() as session:
            return session.get(ProductTable, product_id).stock_quantity

    def cart_line_count(self, cart_id):
        with self.session_factory() as session:
            return session.query(CartItemTable).filter(CartItemTable.cart_id == cart_id).count()


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


# --- Provider payloads ---

def payment_intent_payload(payment_intent_id="pi_123", amount=1900, status="succeeded", metadata=None):
    return {
        "id": payment_intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "usd",
        "status": status,
        "client_secret": f"{payment_intent_id}_secret_abc",
        "metadata": metadata if metadata is not None else {"ownerType": "user", "userId": "user-1"},
        "last_payment_error": None,
    }


def guest_metadata(session_token="guest-token"):
    return {
        "ownerType": "guest",
        "guestSessionToken": session_token,
        "guestEmail": "ada@example.com",
        "guestName": "Ada Lovelace",
        "guestAddress": "1 Analytical Way",
        "guestCity": "London",
        "guestState": "LDN",
        "guestZipCode": "N1 9GU",
        "guestCountry": "GB",
    }


def make_event(event_type, intent, event_id=None):
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    }


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def signed_event(event_type, intent, event_id=None, secret=WEBHOOK_SECRET):
    """Returns (raw body bytes, Stripe-Signature header) for an event."""
    payload = json.dumps(make_event(event_type, intent, event_id))
    return payload.encode("utf-8"), sign(payload, secret)
