"""
main.py — FastAPI Entry Point for the Reconciliation Service

This module provides the REST API between the storefront, the payment provider
and the reconciliation engine.

Responsibilities:
    • Create payment intents carrying the cart owner in their metadata
    • Confirm / complete payments synchronously after client-side checkout
    • Receive signed provider webhooks (the authoritative "money moved" signal)
    • Order lookup for confirmation pages, order history and admin status changes
    • Provide system health information

Identity is resolved upstream: the authenticated user id arrives in `X-User-Id`,
the guest cart token in `X-Session-Id`.

Run with:
    uvicorn reconciliation_service.main:create_app --factory
"""

import hmac
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from .cart import CartSnapshotReader
from .clients import PaymentIntentClient, create_alert_publisher
from .config import Settings, load_settings
from .db import create_db_engine, create_session_factory, init_db
from .domain import AuthenticatedOwner, GuestOwner, OrderStatus, PaymentStatus, owner_to_metadata
from .errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    MalformedEventError,
    OrderNotFoundError,
    OrphanedPaymentError,
    PaymentGatewayError,
    PaymentGatewayUnavailableError,
    SignatureVerificationError,
    StoreUnavailableError,
)
from .logging_config import get_logger, setup_logging
from .models import CreateIntentRequest, OrderResponse, PaymentIntentIdRequest, StatusUpdateRequest
from .pricing import compute_totals
from .webhook import WebhookIngress
from .workflow import ReconciliationEngine, store_errors

log = get_logger(__name__)


def _gateway_http_error(e: PaymentGatewayError) -> HTTPException:
    if isinstance(e, PaymentGatewayUnavailableError):
        return HTTPException(status_code=503, detail="Payment provider unavailable, please retry.")
    if e.status_code == 404:
        return HTTPException(status_code=404, detail="Payment intent not found")
    return HTTPException(status_code=502, detail=f"Payment provider error: {e}")


def create_app(settings: Optional[Settings] = None, gateway_transport=None) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        settings (Optional[Settings]): Configuration; read from the environment if omitted.
        gateway_transport: Optional httpx transport for the payment provider client (used by tests).

    Returns:
        FastAPI: The application. Storage, clients and the engine are created on startup.
    """
    settings = settings or load_settings()
    setup_logging(settings.log_file)

    # Startup / Shutdown: storage, clients, engine
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Creates the database engine and session factory, ensures the schema,
        and wires the gateway client, alert publisher, engine and webhook ingress.
        Everything is released again on shutdown.
        """
        log.info("Reconciliation service starting...")
        db_engine = create_db_engine(settings.database_url, settings.materialize_timeout_seconds)
        init_db(db_engine)
        session_factory = create_session_factory(db_engine)
        alerts = create_alert_publisher(settings)
        cart_reader = CartSnapshotReader(session_factory)
        engine = ReconciliationEngine(session_factory, settings, alerts, cart_reader)

        app.state.db_engine = db_engine
        app.state.session_factory = session_factory
        app.state.alerts = alerts
        app.state.cart_reader = cart_reader
        app.state.engine = engine
        app.state.gateway = PaymentIntentClient(settings, transport=gateway_transport)
        app.state.ingress = WebhookIngress(session_factory, engine, settings)
        log.info(f"Reconciliation service ready (store: {db_engine.url.get_backend_name()}).")

        yield

        app.state.gateway.close()
        app.state.alerts.close()
        db_engine.dispose()
        log.info("Reconciliation service stopped.")

    app = FastAPI(title="Order Reconciliation Service", lifespan=lifespan)
    app.state.settings = settings

    # --- Payments ---

    @app.post("/payments/intent")
    def create_payment_intent(
            body: CreateIntentRequest,
            request: Request,
            x_user_id: Optional[str] = Header(None),
            x_session_id: Optional[str] = Header(None),
    ):
        """
        Creates a pending payment intent for the caller's cart.

        Authenticated users are charged the server-computed cart total; guests
        send the amount together with their shipping contact.

        Returns:
            dict: `clientSecret` and `paymentIntentId`.

        Raises:
            HTTPException(400): Empty cart, incomplete guest info, missing amount or amount below minimum.
            HTTPException(502 / 503): Payment provider rejected the request / is unreachable.
        """
        state = request.app.state
        receipt_email = None

        if x_user_id:
            owner = AuthenticatedOwner(x_user_id)
            snapshot = _read_cart_or_400(state.cart_reader, owner)
            amount = compute_totals(snapshot, settings).total_cents
        else:
            if not x_session_id:
                raise HTTPException(status_code=400, detail="Guest checkout requires a session")
            if body.guestInfo is None or body.guestInfo.missing_fields():
                missing = body.guestInfo.missing_fields() if body.guestInfo else ["guestInfo"]
                raise HTTPException(status_code=400,
                                    detail=f"Guest information is incomplete: missing {', '.join(missing)}")
            if body.amount is None:
                raise HTTPException(status_code=400, detail="Amount is required for guest checkout")
            owner = GuestOwner(x_session_id, body.guestInfo.to_contact())
            snapshot = _read_cart_or_400(state.cart_reader, owner)
            expected = compute_totals(snapshot, settings).total_cents
            if body.amount != expected:
                log.warning(f"[Session: {x_session_id}] Guest amount {body.amount} differs from cart total {expected}.")
            amount = body.amount
            receipt_email = owner.contact.email

        if amount < settings.minimum_charge_cents:
            minimum = _format_cents(settings.minimum_charge_cents)
            raise HTTPException(status_code=400, detail=f"Order total must be at least ${minimum}")

        try:
            reference = state.gateway.create_payment_intent(
                amount=amount,
                currency=settings.currency,
                metadata=owner_to_metadata(owner),
                receipt_email=receipt_email,
                idempotency_key=str(uuid.uuid4()),
            )
        except PaymentGatewayError as e:
            raise _gateway_http_error(e)

        return {"clientSecret": reference.client_secret, "paymentIntentId": reference.external_id}

    @app.post("/payments/confirm")
    def confirm_payment(body: PaymentIntentIdRequest, request: Request):
        """Reports whether the provider has captured the payment."""
        try:
            reference = request.app.state.gateway.retrieve_payment_intent(body.paymentIntentId)
        except PaymentGatewayError as e:
            raise _gateway_http_error(e)

        if reference.status != PaymentStatus.SUCCEEDED:
            raise HTTPException(status_code=400, detail="Payment has not been completed")
        return {"status": reference.status.value, "paymentIntentId": reference.external_id}

    @app.post("/payments/complete")
    def complete_payment(body: PaymentIntentIdRequest, request: Request):
        """
        Creates the order for a captured payment (synchronous counterpart of the webhook).

        Safe to call any number of times and concurrently with webhook delivery:
        the order is created once, later calls return it with `created: false`.

        Raises:
            HTTPException(400): Payment not captured.
            HTTPException(409): Cart empty, stock insufficient or payment not attributable.
            HTTPException(503): Store or payment provider unavailable (retry).
        """
        try:
            reference = request.app.state.gateway.retrieve_payment_intent(body.paymentIntentId)
        except PaymentGatewayError as e:
            raise _gateway_http_error(e)

        if reference.status != PaymentStatus.SUCCEEDED:
            raise HTTPException(status_code=400, detail="Payment has not been completed")

        try:
            outcome = request.app.state.engine.reconcile(reference)
        except (EmptyCartError, InsufficientStockError, OrphanedPaymentError) as e:
            raise HTTPException(status_code=409, detail=str(e))
        except StoreUnavailableError:
            raise HTTPException(status_code=503, detail="Order store unavailable, please retry.")

        return {"success": True, "created": outcome.created, "data": OrderResponse.from_order(outcome.order)}

    @app.post("/payments/webhook")
    async def payment_webhook(request: Request):
        """
        Receives provider events. The raw body is needed for signature verification.

        Returns:
            dict: `{"received": true}` for every event that does not need redelivery.

        Raises:
            HTTPException(400): Missing/invalid signature or malformed payload.
            HTTPException(503): Store unavailable; the provider will redeliver.
        """
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        try:
            result = await run_in_threadpool(request.app.state.ingress.handle, payload, signature)
        except SignatureVerificationError as e:
            raise HTTPException(status_code=400, detail=f"Webhook signature verification failed: {e}")
        except MalformedEventError as e:
            raise HTTPException(status_code=400, detail=f"Malformed webhook payload: {e}")
        except StoreUnavailableError:
            raise HTTPException(status_code=503, detail="Order store unavailable, please retry.")

        log.info(f"[Event: {result.event_id}] {result.event_type} -> {result.outcome.value}")
        return {"received": True}

    # --- Orders ---

    @app.get("/orders")
    def list_my_orders(request: Request, x_user_id: Optional[str] = Header(None)):
        """
        Order history of the authenticated caller, newest first.

        Raises:
            HTTPException(401): No authenticated user.
        """
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Authentication required")
        try:
            user_orders = request.app.state.engine.orders_for_user(x_user_id)
        except StoreUnavailableError:
            raise HTTPException(status_code=503, detail="Order store unavailable, please retry.")
        return {"success": True, "data": [OrderResponse.from_order(order) for order in user_orders]}

    @app.get("/orders/{order_id}")
    def get_my_order(order_id: str, request: Request, x_user_id: Optional[str] = Header(None)):
        """Single order of the authenticated caller; other owners' orders are reported as missing."""
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Authentication required")
        try:
            order = request.app.state.engine.find_user_order(order_id, x_user_id)
        except StoreUnavailableError:
            raise HTTPException(status_code=503, detail="Order store unavailable, please retry.")
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return {"success": True, "data": OrderResponse.from_order(order)}

    @app.get("/orders/payment-intent/{payment_intent_id}")
    def get_order_by_payment_intent(payment_intent_id: str, request: Request):
        """Looks up the order created for a payment (checkout confirmation page)."""
        try:
            order = request.app.state.engine.find_order(payment_intent_id)
        except StoreUnavailableError:
            raise HTTPException(status_code=503, detail="Order store unavailable, please retry.")
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return {"success": True, "data": OrderResponse.from_order(order)}

    @app.put("/orders/{order_id}/status")
    def update_order_status(
            order_id: str,
            body: StatusUpdateRequest,
            request: Request,
            x_admin_key: Optional[str] = Header(None),
    ):
        """
        Admin status change along the order status machine.

        Raises:
            HTTPException(403): Missing or wrong admin key, or no admin key configured.
            HTTPException(400): Unknown status or transition not allowed.
            HTTPException(404): Unknown order.
        """
        if not settings.admin_api_key or not x_admin_key or \
                not hmac.compare_digest(x_admin_key, settings.admin_api_key):
            raise HTTPException(status_code=403, detail="Admin access required")

        try:
            target = OrderStatus(body.status)
        except ValueError:
            allowed = ", ".join(s.value for s in OrderStatus)
            raise HTTPException(status_code=400, detail=f"Invalid status '{body.status}'. Allowed: {allowed}")

        try:
            order = request.app.state.engine.change_status(order_id, target)
        except OrderNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidStatusTransitionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreUnavailableError:
            raise HTTPException(status_code=503, detail="Order store unavailable, please retry.")

        log.info(f"[Order: {order_id}] Status set to {order.status.value} by admin.")
        return {"success": True, "data": OrderResponse.from_order(order)}

    # Health Check Endpoint
    @app.get("/health")
    def health_check():
        """
        Simple health check endpoint for monitoring systems and container orchestrators.

        Returns:
            dict: A basic JSON object indicating service availability.
        """
        return {"status": "ok"}

    return app


def _read_cart_or_400(cart_reader: CartSnapshotReader, owner):
    try:
        with store_errors(f"[Owner: {owner.describe()}]"):
            return cart_reader.read(owner)
    except EmptyCartError:
        raise HTTPException(status_code=400, detail="Cart is empty")
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Order store unavailable, please retry.")


def _format_cents(cents: int) -> str:
    return f"{cents // 100}.{cents % 100:02d}"


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("reconciliation_service.main:create_app", factory=True, host="0.0.0.0", port=8000)
