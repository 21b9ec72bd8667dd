"""
workflow.py — Core Reconciliation Logic for Order Creation

This module turns a completed payment into exactly one order. It is called by
the webhook ingress and by the synchronous /payments/complete endpoint, possibly
many times and concurrently for the same payment.

Workflow Overview:
1. LookupExisting: an order for this payment intent already exists → no-op success
2. Read the cart snapshot for the owner encoded in the payment metadata
3. Materialize in ONE transaction: insert the order (unique payment id),
   insert its items, decrement stock for every line; commit or roll back everything
4. After commit: move the order to `processing`, clear the snapshot's cart lines
5. Failure handling: the payment was already captured by the provider, so every
   business failure is recorded as an orphaned payment for manual reconciliation

Coordination between concurrent deliveries is left to the database: the unique
constraint on the payment id decides which delivery creates the order, and the
loser falls back to step 1.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import List, Optional

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from . import inventory, orders
from .cart import CartSnapshotReader
from .clients import NullAlertPublisher
from .config import Settings
from .db import apply_transaction_timeout
from .domain import (
    CartSnapshot,
    Order,
    OrderStatus,
    OwnerIdentity,
    PaymentReference,
    PaymentStatus,
    owner_as_json,
    owner_from_metadata,
)
from .errors import (
    DuplicatePaymentError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    OrphanedPaymentError,
    ProductNotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from .pricing import OrderTotals, compute_totals

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationOutcome:
    """
    Result of one reconciliation attempt.

    Attributes:
        order (Order): The order belonging to the payment.
        created (bool): True if this attempt created the order, False if it already existed.
    """
    order: Order
    created: bool


@contextmanager
def store_errors(log_prefix: str):
    """Translates connectivity / timeout failures of the store into a retryable error."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as e:
        log.error(f"{log_prefix} Store unavailable, transaction rolled back: {e}")
        raise StoreUnavailableError(f"Order store unavailable: {e}") from e


class ReconciliationEngine:
    """
    Orchestrates order materialization for completed payments.

    All state lives in the relational store reached through `session_factory`;
    the engine holds no locks or caches of its own, so any number of instances
    (threads, processes, hosts) can reconcile the same payment concurrently.
    """
    def __init__(self, session_factory: sessionmaker, settings: Settings, alerts=None, cart_reader=None):
        """
        Args:
            session_factory (sessionmaker): Storage handle for every transaction the engine opens.
            settings (Settings): Pricing constants, timeouts and retry bounds.
            alerts: Publisher for orphaned-payment alerts (defaults to a no-op publisher).
            cart_reader (CartSnapshotReader): Defaults to a reader on the same session factory.
        """
        self.session_factory = session_factory
        self.settings = settings
        self.alerts = alerts or NullAlertPublisher()
        self.cart_reader = cart_reader or CartSnapshotReader(session_factory)

    # --- Public operations ---

    def reconcile(self, payment: PaymentReference) -> ReconciliationOutcome:
        """
        Materializes the order for a succeeded payment, exactly once.

        Args:
            payment (PaymentReference): The succeeded payment (from a webhook or a retrieve call).

        Returns:
            ReconciliationOutcome: The order, and whether this call created it.

        Raises:
            ValidationError: If the payment has not succeeded.
            OrphanedPaymentError: If the metadata does not identify a cart owner.
            EmptyCartError: If the owner's cart is empty.
            InsufficientStockError / ProductNotFoundError: If a line cannot be supplied.
            StoreUnavailableError: If the store failed or timed out (safe to retry).
        """
        payment_intent_id = payment.external_id
        log_prefix = f"[Payment: {payment_intent_id}]"

        if payment.status != PaymentStatus.SUCCEEDED:
            raise ValidationError(f"Payment {payment_intent_id} has not been completed (status: {payment.status.value})")

        log.info(f"{log_prefix} Starting reconciliation.")

        # --- 1. LookupExisting ---
        existing = self._lookup(payment_intent_id, log_prefix)
        if existing is not None:
            return self._already_materialized(existing, log_prefix)

        # --- 2. Cart snapshot (outside the order transaction) ---
        owner = owner_from_metadata(payment.metadata)
        if owner is None:
            error = OrphanedPaymentError(payment_intent_id, "payment metadata does not identify a cart owner")
            return self._fail(payment, error, "unknown_owner", log_prefix)

        try:
            with store_errors(log_prefix):
                snapshot = self.cart_reader.read(owner)
        except EmptyCartError as e:
            return self._fail(payment, e, "empty_cart", log_prefix, owner=owner)

        totals = compute_totals(snapshot, self.settings)
        if payment.amount and payment.amount != totals.total_cents:
            log.warning(f"{log_prefix} Captured amount {payment.amount} differs from cart total "
                        f"{totals.total_cents} ({totals.total}). Order is created from the cart.")

        # --- 3. Materialize ---
        attempts = max(1, self.settings.idempotency_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                order_id = self._materialize(payment_intent_id, snapshot, totals, log_prefix)
            except DuplicatePaymentError:
                existing = self._lookup(payment_intent_id, log_prefix)
                if existing is not None:
                    return self._already_materialized(existing, log_prefix)
                # The conflicting writer rolled back after our insert saw it; try again.
                log.warning(f"{log_prefix} Conflicting order vanished, retrying ({attempt}/{attempts}).")
                continue
            except ProductNotFoundError as e:
                return self._fail(payment, e, "product_not_found", log_prefix, owner=owner, snapshot=snapshot)
            except InsufficientStockError as e:
                return self._fail(payment, e, "insufficient_stock", log_prefix, owner=owner, snapshot=snapshot)

            # --- 4. After commit ---
            return self._after_commit(order_id, payment_intent_id, snapshot, log_prefix)

        raise StoreUnavailableError(f"Could not settle the order insert for payment {payment_intent_id}")

    def cancel_for_payment(self, payment_intent_id: str) -> Optional[Order]:
        """
        Cancels the order created for a payment, if there is one.

        Returns:
            Optional[Order]: The (now cancelled) order, or None if no order exists.

        Raises:
            InvalidStatusTransitionError: If the order is already delivered.
            StoreUnavailableError: If the store failed (safe to retry).
        """
        log_prefix = f"[Payment: {payment_intent_id}]"
        with store_errors(log_prefix):
            with self.session_factory.begin() as session:
                apply_transaction_timeout(session, self.settings.materialize_timeout_seconds)
                order = orders.find_by_payment_intent(session, payment_intent_id)
                if order is None:
                    log.info(f"{log_prefix} No order to cancel.")
                    return None
                if order.status == OrderStatus.CANCELLED:
                    log.info(f"{log_prefix} Order {order.id} already cancelled.")
                    return order
                cancelled = orders.transition_status(session, order.id, OrderStatus.CANCELLED)
        log.info(f"{log_prefix} Order {cancelled.id} cancelled.")
        return cancelled

    def change_status(self, order_id: str, target: OrderStatus) -> Order:
        """
        Applies an explicit (admin) status change.

        Raises:
            OrderNotFoundError, InvalidStatusTransitionError, StoreUnavailableError
        """
        with store_errors(f"[Order: {order_id}]"):
            with self.session_factory.begin() as session:
                return orders.transition_status(session, order_id, target)

    def find_order(self, payment_intent_id: str) -> Optional[Order]:
        return self._lookup(payment_intent_id, f"[Payment: {payment_intent_id}]")

    def orders_for_user(self, user_id: str) -> List[Order]:
        """Order history of an authenticated user, newest first."""
        with store_errors(f"[User: {user_id}]"):
            with self.session_factory() as session:
                return orders.list_orders_for_user(session, user_id)

    def find_user_order(self, order_id: str, user_id: str) -> Optional[Order]:
        """
        Returns the order only if it belongs to `user_id`; guest orders and other
        users' orders look the same as missing ones.
        """
        with store_errors(f"[Order: {order_id}]"):
            with self.session_factory() as session:
                order = orders.get_order(session, order_id)
        if order is None or order.user_id != user_id:
            return None
        return order

    # --- Steps ---

    def _lookup(self, payment_intent_id: str, log_prefix: str) -> Optional[Order]:
        with store_errors(log_prefix):
            with self.session_factory() as session:
                return orders.find_by_payment_intent(session, payment_intent_id)

    def _materialize(self, payment_intent_id: str, snapshot: CartSnapshot, totals: OrderTotals,
                     log_prefix: str) -> str:
        """
        Writes order, items and stock decrements in a single transaction.

        Products are locked in id order before any line is checked, so two
        checkouts over the same products cannot deadlock each other.
        """
        with store_errors(log_prefix):
            with self.session_factory.begin() as session:
                apply_transaction_timeout(session, self.settings.materialize_timeout_seconds)

                order_id = orders.insert_order(session, payment_intent_id, snapshot.owner, totals.total)

                product_ids = sorted({line.product_id for line in snapshot.lines})
                products = {pid: inventory.lock_product(session, pid) for pid in product_ids}
                remaining = {pid: p for pid, p in products.items() if p is not None}

                for line in snapshot.lines:
                    product = products[line.product_id]
                    if product is None:
                        raise ProductNotFoundError(line.product_id, line.quantity)

                    stock = remaining[line.product_id]
                    available = stock.stock_quantity
                    if not stock.can_supply(line.quantity):
                        raise InsufficientStockError(product.id, line.quantity, available, product.name)

                    orders.add_item(session, order_id, line)

                    new_stock, ok = inventory.try_decrement(session, product.id, line.quantity)
                    if not ok:
                        raise InsufficientStockError(product.id, line.quantity, available, product.name)
                    remaining[line.product_id] = replace(stock, stock_quantity=new_stock)
                    log.info(f"{log_prefix} {line.quantity} x {product.id} reserved, stock now {new_stock}.")

        log.info(f"{log_prefix} Order {order_id} committed (total {totals.total}).")
        return order_id

    def _after_commit(self, order_id: str, payment_intent_id: str, snapshot: CartSnapshot,
                      log_prefix: str) -> ReconciliationOutcome:
        try:
            with self.session_factory.begin() as session:
                order = orders.transition_status(session, order_id, OrderStatus.PROCESSING)
                if orders.resolve_orphaned_payment(session, payment_intent_id):
                    log.info(f"{log_prefix} Earlier orphaned-payment record resolved.")
        except (SQLAlchemyError, InvalidStatusTransitionError) as e:
            # The next delivery of this payment finds the order and advances it.
            log.error(f"{log_prefix} Order {order_id} committed but not moved to processing: {e}")
            with store_errors(log_prefix):
                with self.session_factory() as session:
                    order = orders.get_order(session, order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found after commit")

        try:
            self.cart_reader.clear(snapshot)
        except SQLAlchemyError as e:
            log.warning(f"{log_prefix} Order {order_id} created but cart could not be cleared: {e}")

        log.info(f"{log_prefix} Reconciliation finished: order {order_id} is {order.status.value}.")
        return ReconciliationOutcome(order=order, created=True)

    def _already_materialized(self, order: Order, log_prefix: str) -> ReconciliationOutcome:
        log.info(f"{log_prefix} Order {order.id} already exists, nothing to do.")
        if order.status == OrderStatus.PENDING:
            try:
                with self.session_factory.begin() as session:
                    order = orders.transition_status(session, order.id, OrderStatus.PROCESSING)
            except (SQLAlchemyError, InvalidStatusTransitionError) as e:
                log.warning(f"{log_prefix} Could not advance pending order {order.id}: {e}")
        return ReconciliationOutcome(order=order, created=False)

    def _fail(self, payment: PaymentReference, error: Exception, reason: str, log_prefix: str,
              owner: Optional[OwnerIdentity] = None,
              snapshot: Optional[CartSnapshot] = None) -> ReconciliationOutcome:
        """
        Handles a business failure after the payment was captured.

        A concurrent delivery may have created the order (and cleared the cart)
        while this one was failing; in that case the failure is moot. Otherwise
        the payment is recorded as orphaned and `error` is re-raised.
        """
        existing = self._lookup(payment.external_id, log_prefix)
        if existing is not None:
            return self._already_materialized(existing, log_prefix)

        self._record_orphan(payment, error, reason, log_prefix, owner, snapshot)
        raise error

    def _record_orphan(self, payment: PaymentReference, error: Exception, reason: str, log_prefix: str,
                       owner: Optional[OwnerIdentity], snapshot: Optional[CartSnapshot]):
        lines = snapshot.lines if snapshot is not None else ()
        owner_text = owner.describe() if owner is not None else f"unknown (metadata: {dict(payment.metadata)})"
        lines_text = ", ".join(f"{l.quantity} x {l.product_id} @ {l.unit_price}" for l in lines) or "none"
        log.error(f"{log_prefix} ORPHANED PAYMENT ({reason}): {error}. Amount: {payment.amount} {payment.currency}. "
                  f"Owner: {owner_text}. Lines: {lines_text}. MANUAL RECONCILIATION REQUIRED.")

        try:
            with self.session_factory.begin() as session:
                orders.record_orphaned_payment(
                    session,
                    payment_intent_id=payment.external_id,
                    reason=reason,
                    detail=str(error),
                    amount=payment.amount,
                    owner=owner,
                    lines=lines,
                )
        except SQLAlchemyError as e:
            log.critical(f"{log_prefix} Orphaned payment could not be persisted: {e}. Rely on the log entry above.")

        self.alerts.publish_orphaned_payment({
            "paymentIntentId": payment.external_id,
            "reason": reason,
            "detail": str(error),
            "amount": payment.amount,
            "currency": payment.currency,
            "owner": owner_as_json(owner) if owner is not None else None,
            "lines": [line.as_json() for line in lines],
        })
