"""
This module provides communication clients for external systems used by the reconciliation service:
- Payment provider (Stripe-compatible REST API) for creating and retrieving payment intents
- Message broker (RabbitMQ) for alerting operators about orphaned payments
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import threading
import time
import uuid
from typing import Any, Mapping, Optional

import httpx
import pika
import pika.exceptions

from .config import Settings
from .domain import PaymentReference
from .errors import PaymentGatewayError, PaymentGatewayUnavailableError

log = logging.getLogger(__name__)


def _form_encode_metadata(metadata: Mapping[str, Any]) -> dict:
    return {f"metadata[{key}]": str(value) for key, value in metadata.items() if value is not None}


# --- Payment Intent Client (REST) ---
class PaymentIntentClient:
    """
    Client for the payment provider's PaymentIntent API.
    Creates pending payment references and retrieves them for confirmation.
    Contains no business logic: amounts and metadata are computed by the caller.
    """
    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            settings (Settings): Provides the API base URL and secret key.
            transport (Optional[httpx.BaseTransport]): Custom transport (used by tests).
        """
        timeout_config = httpx.Timeout(5.0, read=8.0)
        self.client = httpx.Client(
            base_url=settings.stripe_api_base,
            timeout=timeout_config,
            headers={"Authorization": f"Bearer {settings.stripe_secret_key}"},
            transport=transport,
        )

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def create_payment_intent(
            self,
            amount: int,
            currency: str,
            metadata: Mapping[str, Any],
            receipt_email: Optional[str] = None,
            idempotency_key: Optional[str] = None,
    ) -> PaymentReference:
        """
        Creates a new payment intent.

        Args:
            amount (int): Amount in minor currency units (e.g. cents).
            currency (str): ISO currency code (e.g. 'usd').
            metadata (Mapping[str, Any]): Owner metadata echoed back on webhooks.
            receipt_email (Optional[str]): Where the provider sends the receipt.
            idempotency_key (Optional[str]): Provider-side idempotency key; generated if omitted.

        Returns:
            PaymentReference: The pending payment, including its client secret.

        Raises:
            PaymentGatewayUnavailableError: On timeouts or connection failures.
            PaymentGatewayError: If the provider rejects the request.
        """
        payload = {
            "amount": str(amount),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
            **_form_encode_metadata(metadata),
        }
        if receipt_email:
            payload["receipt_email"] = receipt_email
        headers = {"Idempotency-Key": idempotency_key or str(uuid.uuid4())}

        data = self._request("POST", "/v1/payment_intents", data=payload, headers=headers)
        reference = PaymentReference.from_provider(data)
        log.info(f"[Payment: {reference.external_id}] Payment intent created ({amount} {currency}).")
        return reference

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentReference:
        """
        Retrieves a payment intent by id.

        Raises:
            PaymentGatewayUnavailableError: On timeouts or connection failures.
            PaymentGatewayError: If the provider rejects the request (e.g. unknown id).
        """
        data = self._request("GET", f"/v1/payment_intents/{payment_intent_id}")
        return PaymentReference.from_provider(data)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            log.error(f"Payment provider unreachable ({method} {path}): {e}")
            raise PaymentGatewayUnavailableError(f"Payment provider unreachable: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            try:
                message = e.response.json().get("error", {}).get("message") or e.response.text
            except ValueError:
                message = e.response.text
            if status >= 500:
                log.error(f"Payment provider error {status} ({method} {path}): {message}")
                raise PaymentGatewayUnavailableError(message, status_code=status) from e
            log.warning(f"Payment provider rejected request {status} ({method} {path}): {message}")
            raise PaymentGatewayError(message, status_code=status) from e


# --- Orphaned Payment Alerts (MQ) ---
class NullAlertPublisher:
    """Used when no broker is configured: the error log is the only alert."""

    def publish_orphaned_payment(self, alert: Mapping[str, Any]):
        log.debug(f"[Payment: {alert.get('paymentIntentId')}] No alert broker configured.")

    def close(self):
        pass


class ReconciliationAlertPublisher:
    """
    Publisher for the orphaned-payments queue (RabbitMQ).
    Every payment that was captured without producing an order is announced so
    an operator can create the order or refund the customer by hand.
    """
    def __init__(self, settings: Settings):
        """Stores connection parameters; the connection is opened lazily on first publish."""
        self.host = settings.rabbitmq_host
        self.queue = settings.orphaned_payments_queue
        self.credentials = pika.PlainCredentials(settings.rabbitmq_user, settings.rabbitmq_password)
        self.connection = None
        self.channel = None
        self._lock = threading.Lock()  # BlockingConnection is not thread-safe

    def _connect(self):
        """
        Establishes the RabbitMQ connection and declares the alert queue.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        self.connection = pika.BlockingConnection(
            pika.ConnectionParameters(host=self.host, credentials=self.credentials, heartbeat=60)
        )
        self.channel = self.connection.channel()
        self.channel.queue_declare(queue=self.queue, durable=True)
        log.info("Alert publisher connected to RabbitMQ.")

    def publish_orphaned_payment(self, alert: Mapping[str, Any]):
        """
        Publishes one orphaned-payment alert as a persistent message.

        Never raises: a broker outage must not hide the reconciliation failure
        that caused the alert, which is already in the error log and the
        orphaned_payments table.
        """
        payment_intent_id = alert.get("paymentIntentId")
        message = {
            "alertId": str(uuid.uuid4()),
            "alertTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            **alert,
        }
        try:
            with self._lock:
                if not self.connection or self.connection.is_closed:
                    self._connect()

                self.channel.basic_publish(
                    exchange='',
                    routing_key=self.queue,
                    body=json.dumps(message, default=str),
                    properties=pika.BasicProperties(delivery_mode=2)  # persistent
                )
            log.info(f"[Payment: {payment_intent_id}] Orphaned-payment alert published.")
        except pika.exceptions.AMQPError as e:
            log.critical(f"[Payment: {payment_intent_id}] Could not publish orphaned-payment alert: {e}. "
                         f"MANUAL ACTION REQUIRED.")

    def close(self):
        if self.connection and self.connection.is_open:
            self.connection.close()


def create_alert_publisher(settings: Settings):
    """Returns a broker-backed publisher when RABBITMQ_HOST is set, a no-op publisher otherwise."""
    if settings.rabbitmq_host:
        return ReconciliationAlertPublisher(settings)
    return NullAlertPublisher()
