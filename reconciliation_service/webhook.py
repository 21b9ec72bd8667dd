"""
webhook.py — Payment Provider Webhook Ingress

Entry point for asynchronous payment notifications. The ingress fails closed:
nothing in a payload is looked at before its signature has been verified
against the shared webhook secret.

Event handling:
    • payment_intent.succeeded       → Reconciliation Engine (create the order once)
    • payment_intent.payment_failed  → cancel the order for the payment, if any
    • payment_intent.canceled        → cancel the order for the payment, if any
    • anything else                  → acknowledged and ignored

Every handled event id is written to `processed_webhook_events`, so a
redelivered event is acknowledged without touching the engine again. This is
only a transport-level shortcut: the engine itself is idempotent per payment.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .db import ProcessedWebhookEventTable, insert_ignoring_conflict, utcnow
from .domain import PaymentReference, PaymentStatus
from .errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    MalformedEventError,
    OrphanedPaymentError,
    SignatureVerificationError,
)
from .workflow import ReconciliationEngine, store_errors

log = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_CANCELED = "payment_intent.canceled"


class WebhookOutcome(str, Enum):
    ORDER_CREATED = "order_created"
    ALREADY_MATERIALIZED = "already_materialized"
    BUSINESS_FAILURE = "business_failure"
    ORDER_CANCELLED = "order_cancelled"
    NOTHING_TO_CANCEL = "nothing_to_cancel"
    CANCEL_REJECTED = "cancel_rejected"
    IGNORED = "ignored"
    DUPLICATE_EVENT = "duplicate_event"


@dataclass(frozen=True)
class WebhookResult:
    """
    What the ingress did with one delivery. Every result is acknowledged to the provider.

    Attributes:
        event_id (str): Provider event id.
        event_type (str): Provider event type.
        outcome (WebhookOutcome): How the event was handled.
        payment_intent_id (Optional[str]): Payment the event refers to, if any.
        order_id (Optional[str]): Order created, found or cancelled, if any.
        detail (Optional[str]): Human-readable reason for business failures / rejections.
    """
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    payment_intent_id: Optional[str] = None
    order_id: Optional[str] = None
    detail: Optional[str] = None


class WebhookIngress:
    """
    Verifies, deduplicates and dispatches provider webhook deliveries.
    """
    def __init__(self, session_factory: sessionmaker, engine: ReconciliationEngine, settings: Settings):
        self.session_factory = session_factory
        self.engine = engine
        self.settings = settings

    def handle(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Processes one webhook delivery.

        Args:
            raw_payload (bytes): The request body exactly as received.
            signature_header (Optional[str]): Value of the `Stripe-Signature` header.

        Returns:
            WebhookResult: The acknowledged outcome.

        Raises:
            SignatureVerificationError: Missing header, wrong signature or stale timestamp.
            MalformedEventError: Verified payload that is not a usable event.
            StoreUnavailableError: The store failed; the provider should redeliver.
        """
        event = self._verify(raw_payload, signature_header)

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise MalformedEventError("Event is missing its id or type")

        log_prefix = f"[Event: {event_id}]"
        if self._already_processed(event_id, log_prefix):
            log.info(f"{log_prefix} Duplicate delivery of {event_type}, acknowledged.")
            return WebhookResult(event_id, event_type, WebhookOutcome.DUPLICATE_EVENT)

        log.info(f"{log_prefix} Received {event_type}.")
        if event_type == PAYMENT_SUCCEEDED:
            result = self._on_succeeded(event_id, event_type, self._payment_object(event))
        elif event_type in (PAYMENT_FAILED, PAYMENT_CANCELED):
            result = self._on_failed_or_canceled(event_id, event_type, self._payment_object(event))
        else:
            log.info(f"{log_prefix} Unhandled event type {event_type}, ignored.")
            result = WebhookResult(event_id, event_type, WebhookOutcome.IGNORED)

        self._mark_processed(result, log_prefix)
        return result

    # --- Verification ---

    def _verify(self, raw_payload: bytes, signature_header: Optional[str]) -> Mapping[str, Any]:
        if not signature_header:
            raise SignatureVerificationError("Missing Stripe-Signature header")
        if not self.settings.stripe_webhook_secret:
            log.error("Webhook received but no webhook secret is configured; rejecting.")
            raise SignatureVerificationError("Webhook secret is not configured")

        try:
            payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureVerificationError("Payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.settings.stripe_webhook_secret,
                tolerance=self.settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            log.warning(f"Webhook signature verification failed: {e}")
            raise SignatureVerificationError(str(e)) from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise MalformedEventError(f"Payload is not valid JSON: {e}") from e
        if not isinstance(event, dict):
            raise MalformedEventError("Payload is not a JSON object")
        return event

    @staticmethod
    def _payment_object(event: Mapping[str, Any]) -> PaymentReference:
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict) or not obj.get("id"):
            raise MalformedEventError(f"Event {event.get('id')} carries no payment intent")
        return PaymentReference.from_provider(obj)

    # --- Dispatch ---

    def _on_succeeded(self, event_id: str, event_type: str, payment: PaymentReference) -> WebhookResult:
        if payment.status != PaymentStatus.SUCCEEDED:
            log.warning(f"[Payment: {payment.external_id}] Success event with status "
                        f"{payment.status.value}, ignored.")
            return WebhookResult(event_id, event_type, WebhookOutcome.IGNORED, payment.external_id)

        try:
            outcome = self.engine.reconcile(payment)
        except (EmptyCartError, InsufficientStockError, OrphanedPaymentError) as e:
            # Already logged, persisted and alerted by the engine; redelivery cannot fix it.
            log.warning(f"[Payment: {payment.external_id}] Acknowledging event despite failure: {e}")
            return WebhookResult(event_id, event_type, WebhookOutcome.BUSINESS_FAILURE,
                                 payment.external_id, detail=str(e))

        outcome_kind = WebhookOutcome.ORDER_CREATED if outcome.created else WebhookOutcome.ALREADY_MATERIALIZED
        return WebhookResult(event_id, event_type, outcome_kind, payment.external_id, outcome.order.id)

    def _on_failed_or_canceled(self, event_id: str, event_type: str, payment: PaymentReference) -> WebhookResult:
        try:
            order = self.engine.cancel_for_payment(payment.external_id)
        except InvalidStatusTransitionError as e:
            log.warning(f"[Payment: {payment.external_id}] {event_type} for a finished order: {e}")
            return WebhookResult(event_id, event_type, WebhookOutcome.CANCEL_REJECTED,
                                 payment.external_id, detail=str(e))

        if order is None:
            return WebhookResult(event_id, event_type, WebhookOutcome.NOTHING_TO_CANCEL, payment.external_id)
        return WebhookResult(event_id, event_type, WebhookOutcome.ORDER_CANCELLED, payment.external_id, order.id)

    # --- Processed events ---

    def _already_processed(self, event_id: str, log_prefix: str) -> bool:
        with store_errors(log_prefix):
            with self.session_factory() as session:
                found = session.execute(
                    select(ProcessedWebhookEventTable.event_id).where(ProcessedWebhookEventTable.event_id == event_id)
                ).scalar_one_or_none()
        return found is not None

    def _mark_processed(self, result: WebhookResult, log_prefix: str):
        try:
            with self.session_factory.begin() as session:
                insert_ignoring_conflict(
                    session,
                    ProcessedWebhookEventTable,
                    {
                        "event_id": result.event_id,
                        "event_type": result.event_type,
                        "payment_intent_id": result.payment_intent_id,
                        "outcome": result.outcome.value,
                        "processed_at": utcnow(),
                    },
                    ["event_id"],
                )
        except SQLAlchemyError as e:
            # A redelivery is handled idempotently by the engine anyway.
            log.warning(f"{log_prefix} Could not record processed event: {e}")
