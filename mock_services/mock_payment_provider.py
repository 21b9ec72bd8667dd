"""
mock_payment_provider.py — Mock Payment Provider (Stripe-shaped REST API + webhooks)

This module provides a simulated payment provider for running the reconciliation
service locally. It mimics the subset of the PaymentIntent API the service uses
and, when a payment changes state, delivers a signed webhook to the service.

Simulation Scenarios (chosen by the `payment_method` passed to /confirm):
    • any other value          → payment succeeds, `payment_intent.succeeded` is sent
    • "pm_card_chargeDeclined" → payment fails, `payment_intent.payment_failed` is sent
    • "pm_timeout"             → confirmation hangs (simulates a client read timeout)
    • WEBHOOK_DUPLICATES=N     → every event is delivered N times (redelivery testing)

Endpoints:
    POST /v1/payment_intents               — create a payment intent
    GET  /v1/payment_intents/{id}          — retrieve it
    POST /v1/payment_intents/{id}/confirm  — simulate the customer paying
    POST /v1/payment_intents/{id}/cancel   — cancel it

Port:
    Default: 8001 (HTTP)
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from typing import Dict, Optional
from urllib.parse import parse_qsl

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

log = logging.getLogger("mock_payment_provider")

WEBHOOK_URL = os.environ.get("WEBHOOK_URL")  # e.g. http://localhost:8000/payments/webhook
WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_mock")
WEBHOOK_DUPLICATES = int(os.environ.get("WEBHOOK_DUPLICATES", "1"))

app = FastAPI(title="Mock Payment Provider")
intents: Dict[str, dict] = {}


class ProviderError(Exception):
    """Rendered in the provider's error shape: {"error": {"type", "message"}}."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"type": "invalid_request_error", "message": exc.message}},
    )


def sign_payload(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    """
    Builds a `Stripe-Signature` header value for `payload`.

    Args:
        payload (str): The exact JSON body that will be sent.
        secret (str): Webhook signing secret shared with the receiver.
        timestamp (Optional[int]): Signing time; defaults to now.

    Returns:
        str: Header value of the form `t=<timestamp>,v1=<hex hmac-sha256>`.
    """
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(event_type: str, intent: dict) -> dict:
    return {
        "id": f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": intent},
    }


async def deliver_event(event: dict, url: Optional[str] = None, secret: Optional[str] = None) -> Optional[int]:
    """
    Sends a signed event to the webhook receiver.

    Returns:
        Optional[int]: HTTP status of the last delivery, or None when no receiver is configured
        or it could not be reached.
    """
    url = url or WEBHOOK_URL
    if not url:
        log.info(f"[MPP] No WEBHOOK_URL configured, {event['type']} not delivered.")
        return None

    payload = json.dumps(event)
    status = None
    async with httpx.AsyncClient(timeout=10.0) as client:
        for attempt in range(1, WEBHOOK_DUPLICATES + 1):
            headers = {"Stripe-Signature": sign_payload(payload, secret or WEBHOOK_SECRET),
                       "Content-Type": "application/json"}
            try:
                response = await client.post(url, content=payload, headers=headers)
                status = response.status_code
                log.info(f"[MPP] {event['type']} ({event['id']}) delivered, attempt {attempt}: HTTP {status}")
            except httpx.RequestError as e:
                log.error(f"[MPP] Webhook delivery failed: {e}")
                return None
    return status


def _get_intent(payment_intent_id: str) -> dict:
    intent = intents.get(payment_intent_id)
    if intent is None:
        raise ProviderError(404, f"No such payment_intent: '{payment_intent_id}'")
    return intent


async def _form(request: Request) -> Dict[str, str]:
    return dict(parse_qsl((await request.body()).decode("utf-8")))


@app.post("/v1/payment_intents")
async def create_payment_intent(request: Request):
    """
    Creates a payment intent in `requires_payment_method`.

    Accepts the form encoding of the real API; `metadata[key]` fields are folded
    into a `metadata` object. The `Idempotency-Key` header returns the intent
    created earlier with the same key.
    """
    form = await _form(request)
    idempotency_key = request.headers.get("Idempotency-Key")
    if idempotency_key:
        for intent in intents.values():
            if intent["_idempotency_key"] == idempotency_key:
                return _public(intent)

    try:
        amount = int(form.get("amount", ""))
    except ValueError:
        raise ProviderError(400, "Invalid amount")
    if amount < 50:
        raise ProviderError(400, "Amount must be at least 50 cents")

    payment_intent_id = f"pi_{uuid.uuid4().hex[:24]}"
    intent = {
        "id": payment_intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": form.get("currency", "usd"),
        "status": "requires_payment_method",
        "client_secret": f"{payment_intent_id}_secret_{uuid.uuid4().hex[:16]}",
        "metadata": {key[len("metadata["):-1]: value for key, value in form.items() if key.startswith("metadata[")},
        "receipt_email": form.get("receipt_email"),
        "last_payment_error": None,
        "created": int(time.time()),
        "_idempotency_key": idempotency_key,
    }
    intents[payment_intent_id] = intent
    log.info(f"[MPP] PaymentIntent {payment_intent_id} created ({amount} {intent['currency']}).")
    return _public(intent)


@app.get("/v1/payment_intents/{payment_intent_id}")
def retrieve_payment_intent(payment_intent_id: str):
    return _public(_get_intent(payment_intent_id))


@app.post("/v1/payment_intents/{payment_intent_id}/confirm")
async def confirm_payment_intent(payment_intent_id: str, request: Request):
    """
    Simulates the customer completing (or failing) the payment and sends the webhook.
    """
    intent = _get_intent(payment_intent_id)
    payment_method = (await _form(request)).get("payment_method", "pm_card_visa")

    if payment_method == "pm_timeout":
        log.info(f"[MPP] Simulating timeout for {payment_intent_id}...")
        await asyncio.sleep(10)
        log.error(f"[MPP] Timeout request {payment_intent_id} finished (too late).")
        return _public(intent)

    if payment_method == "pm_card_chargeDeclined":
        intent["status"] = "requires_payment_method"
        intent["last_payment_error"] = {"code": "card_declined", "message": "Your card was declined."}
        log.warning(f"[MPP] Payment {payment_intent_id} declined.")
        await deliver_event(build_event("payment_intent.payment_failed", _public(intent)))
        return _public(intent)

    intent["status"] = "succeeded"
    intent["last_payment_error"] = None
    log.info(f"[MPP] Payment {payment_intent_id} succeeded.")
    await deliver_event(build_event("payment_intent.succeeded", _public(intent)))
    return _public(intent)


@app.post("/v1/payment_intents/{payment_intent_id}/cancel")
async def cancel_payment_intent(payment_intent_id: str):
    intent = _get_intent(payment_intent_id)
    if intent["status"] == "succeeded":
        raise ProviderError(400, "A succeeded PaymentIntent cannot be canceled")
    intent["status"] = "canceled"
    log.info(f"[MPP] Payment {payment_intent_id} canceled.")
    await deliver_event(build_event("payment_intent.canceled", _public(intent)))
    return _public(intent)


def _public(intent: dict) -> dict:
    return {key: value for key, value in intent.items() if not key.startswith("_")}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8001)
