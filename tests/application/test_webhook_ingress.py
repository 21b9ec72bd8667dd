import json
import time
from unittest import mock

import pytest
from sqlalchemy import select

from conftest import guest_metadata, payment_intent_payload, sign, signed_event
from reconciliation_service.db import ProcessedWebhookEventTable
from reconciliation_service.domain import OrderStatus
from reconciliation_service.errors import (
    MalformedEventError,
    SignatureVerificationError,
    StoreUnavailableError,
)
from reconciliation_service.webhook import WebhookIngress, WebhookOutcome
from reconciliation_service.workflow import ReconciliationEngine


@pytest.fixture
def engine(session_factory, settings):
    return ReconciliationEngine(session_factory, settings)


@pytest.fixture
def ingress(session_factory, engine, settings):
    return WebhookIngress(session_factory, engine, settings)


@pytest.fixture
def member_cart(seed):
    seed.product("prod-a", stock=10)
    return seed.cart(user_id="user-1", lines=[("prod-a", 2, "10.00")])


class TestSignatureGating:
    def test_missing_header(self, ingress):
        body, _ = signed_event("payment_intent.succeeded", payment_intent_payload())

        with pytest.raises(SignatureVerificationError):
            ingress.handle(body, None)

    def test_wrong_secret(self, ingress):
        body, header = signed_event("payment_intent.succeeded", payment_intent_payload(), secret="whsec_other")

        with pytest.raises(SignatureVerificationError):
            ingress.handle(body, header)

    def test_tampered_body_never_reaches_engine(self, ingress, member_cart, seed):
        body, header = signed_event("payment_intent.succeeded", payment_intent_payload())
        tampered = body.replace(b'"amount": 1900', b'"amount": 1')

        with mock.patch.object(ingress.engine, "reconcile") as reconcile:
            with pytest.raises(SignatureVerificationError):
                ingress.handle(tampered, header)

        reconcile.assert_not_called()
        assert seed.stock("prod-a") == 10

    def test_stale_timestamp(self, ingress):
        payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded",
                              "data": {"object": payment_intent_payload()}})

        with pytest.raises(SignatureVerificationError):
            ingress.handle(payload.encode(), sign(payload, timestamp=int(time.time()) - 3600))

    def test_unconfigured_secret_fails_closed(self, session_factory, engine, settings):
        ingress = WebhookIngress(session_factory, engine, settings.override(stripe_webhook_secret=""))
        body, header = signed_event("payment_intent.succeeded", payment_intent_payload())

        with pytest.raises(SignatureVerificationError):
            ingress.handle(body, header)

    def test_signed_garbage_is_malformed(self, ingress):
        payload = "not json at all"

        with pytest.raises(MalformedEventError):
            ingress.handle(payload.encode(), sign(payload))

    def test_signed_event_without_payment_object(self, ingress):
        payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {}})

        with pytest.raises(MalformedEventError):
            ingress.handle(payload.encode(), sign(payload))


class TestDispatch:
    def test_success_creates_order(self, ingress, member_cart, seed):
        body, header = signed_event("payment_intent.succeeded", payment_intent_payload())

        result = ingress.handle(body, header)

        assert result.outcome == WebhookOutcome.ORDER_CREATED
        assert result.payment_intent_id == "pi_123"
        assert result.order_id is not None
        assert seed.stock("prod-a") == 8

    def test_same_event_redelivered_is_duplicate(self, ingress, member_cart, seed):
        body, header = signed_event("payment_intent.succeeded", payment_intent_payload(), event_id="evt_same")

        ingress.handle(body, header)
        with mock.patch.object(ingress.engine, "reconcile") as reconcile:
            result = ingress.handle(body, header)

        assert result.outcome == WebhookOutcome.DUPLICATE_EVENT
        reconcile.assert_not_called()
        assert seed.stock("prod-a") == 8

    def test_distinct_events_for_same_payment_create_one_order(self, ingress, member_cart, seed):
        first = ingress.handle(*signed_event("payment_intent.succeeded", payment_intent_payload()))
        second = ingress.handle(*signed_event("payment_intent.succeeded", payment_intent_payload()))

        assert first.outcome == WebhookOutcome.ORDER_CREATED
        assert second.outcome == WebhookOutcome.ALREADY_MATERIALIZED
        assert second.order_id == first.order_id
        assert seed.stock("prod-a") == 8

    def test_business_failure_is_acknowledged(self, ingress, seed):
        seed.product("prod-a", stock=1)
        seed.cart(session_id="guest-token", lines=[("prod-a", 2, "10.00")])
        intent = payment_intent_payload(amount=2999, metadata=guest_metadata())

        result = ingress.handle(*signed_event("payment_intent.succeeded", intent))

        assert result.outcome == WebhookOutcome.BUSINESS_FAILURE
        assert "Only 1 items available" in result.detail

    def test_store_failure_propagates_and_is_not_recorded(self, ingress, session_factory):
        body, header = signed_event("payment_intent.succeeded", payment_intent_payload(), event_id="evt_retry")

        with mock.patch.object(ingress.engine, "reconcile", side_effect=StoreUnavailableError("locked")):
            with pytest.raises(StoreUnavailableError):
                ingress.handle(body, header)

        with session_factory() as session:
            assert session.get(ProcessedWebhookEventTable, "evt_retry") is None

    def test_payment_failed_cancels_order(self, ingress, member_cart):
        created = ingress.handle(*signed_event("payment_intent.succeeded", payment_intent_payload()))

        result = ingress.handle(*signed_event("payment_intent.payment_failed",
                                              payment_intent_payload(status="requires_payment_method")))

        assert result.outcome == WebhookOutcome.ORDER_CANCELLED
        assert result.order_id == created.order_id
        assert ingress.engine.find_order("pi_123").status == OrderStatus.CANCELLED

    def test_canceled_without_order(self, ingress):
        result = ingress.handle(*signed_event("payment_intent.canceled", payment_intent_payload(status="canceled")))

        assert result.outcome == WebhookOutcome.NOTHING_TO_CANCEL

    def test_cancel_of_delivered_order_is_acknowledged(self, ingress, member_cart):
        created = ingress.handle(*signed_event("payment_intent.succeeded", payment_intent_payload()))
        ingress.engine.change_status(created.order_id, OrderStatus.SHIPPED)
        ingress.engine.change_status(created.order_id, OrderStatus.DELIVERED)

        result = ingress.handle(*signed_event("payment_intent.canceled", payment_intent_payload(status="canceled")))

        assert result.outcome == WebhookOutcome.CANCEL_REJECTED
        assert ingress.engine.find_order("pi_123").status == OrderStatus.DELIVERED

    def test_unknown_event_type_is_ignored(self, ingress, session_factory):
        result = ingress.handle(*signed_event("customer.created", {"id": "cus_1"}, event_id="evt_cus"))

        assert result.outcome == WebhookOutcome.IGNORED
        with session_factory() as session:
            outcome = session.execute(
                select(ProcessedWebhookEventTable.outcome).where(ProcessedWebhookEventTable.event_id == "evt_cus")
            ).scalar_one()
        assert outcome == "ignored"
