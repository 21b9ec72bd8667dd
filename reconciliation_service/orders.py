"""
orders.py — Order Store

Durable storage for orders and their items, plus the orphaned-payment ledger.

Every function takes the caller's `Session`, so the transaction scope is always
visible at the call site; nothing here commits on its own.

The uniqueness of `orders.stripe_payment_intent_id` is what makes order
creation idempotent: `insert_order` writes first and detects a conflict
afterwards, instead of trusting an earlier "does it exist?" query.
"""

import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from .db import OrderItemTable, OrderTable, OrphanedPaymentTable, insert_ignoring_conflict, utcnow
from .domain import (
    AuthenticatedOwner,
    CartLine,
    Order,
    OrderItem,
    OrderStatus,
    OwnerIdentity,
    owner_as_json,
)
from .errors import DuplicatePaymentError, InvalidStatusTransitionError, OrderNotFoundError

log = logging.getLogger(__name__)


def _to_order(row: OrderTable) -> Order:
    items = tuple(
        OrderItem(
            id=item.id,
            order_id=item.order_id,
            product_id=item.product_id,
            quantity=item.quantity,
            price=item.price,
            customizations=dict(item.customizations_json or {}),
            created_at=item.created_at,
        )
        for item in row.items
    )
    return Order(
        id=row.id,
        user_id=row.user_id,
        total=row.total,
        status=OrderStatus(row.status),
        stripe_payment_intent_id=row.stripe_payment_intent_id,
        guest_email=row.guest_email,
        guest_name=row.guest_name,
        guest_address=row.guest_address_json,
        created_at=row.created_at,
        updated_at=row.updated_at,
        items=items,
    )


def _select_orders():
    return select(OrderTable).options(selectinload(OrderTable.items)).execution_options(populate_existing=True)


# --- Lookups ---

def find_by_payment_intent(session: Session, payment_intent_id: str) -> Optional[Order]:
    row = session.execute(
        _select_orders().where(OrderTable.stripe_payment_intent_id == payment_intent_id)
    ).scalar_one_or_none()
    return _to_order(row) if row is not None else None


def get_order(session: Session, order_id: str) -> Optional[Order]:
    row = session.execute(_select_orders().where(OrderTable.id == order_id)).scalar_one_or_none()
    return _to_order(row) if row is not None else None


def list_orders_for_user(session: Session, user_id: str) -> List[Order]:
    rows = session.execute(
        _select_orders().where(OrderTable.user_id == user_id).order_by(OrderTable.created_at.desc())
    ).scalars().all()
    return [_to_order(row) for row in rows]


# --- Creation ---

def insert_order(session: Session, payment_intent_id: str, owner: OwnerIdentity, total) -> str:
    """
    Inserts a `pending` order for `payment_intent_id`.

    Returns:
        str: The new order id.

    Raises:
        DuplicatePaymentError: If an order for this payment intent already exists
            (including one committed concurrently while this insert waited).
    """
    order_id = str(uuid.uuid4())
    now = utcnow()
    values = {
        "id": order_id,
        "total": total,
        "status": OrderStatus.PENDING.value,
        "stripe_payment_intent_id": payment_intent_id,
        "created_at": now,
        "updated_at": now,
    }
    if isinstance(owner, AuthenticatedOwner):
        values["user_id"] = owner.user_id
    else:
        values.update(
            user_id=None,
            guest_email=owner.contact.email,
            guest_name=owner.contact.name,
            guest_address_json=owner.contact.address_json(),
        )

    if not insert_ignoring_conflict(session, OrderTable, values, ["stripe_payment_intent_id"]):
        raise DuplicatePaymentError(payment_intent_id)
    return order_id


def add_item(session: Session, order_id: str, line: CartLine) -> str:
    """Adds one immutable order item priced at the cart line's captured unit price."""
    item_id = str(uuid.uuid4())
    session.add(
        OrderItemTable(
            id=item_id,
            order_id=order_id,
            product_id=line.product_id,
            quantity=line.quantity,
            price=line.unit_price,
            customizations_json=dict(line.customizations),
            created_at=utcnow(),
        )
    )
    session.flush()
    return item_id


# --- Status ---

def transition_status(session: Session, order_id: str, target: OrderStatus) -> Order:
    """
    Moves an order to `target` if the status machine allows it.

    Re-applying the current status is a no-op. The order row is locked for the
    rest of the transaction so concurrent transitions serialize.

    Raises:
        OrderNotFoundError: If no order has this id.
        InvalidStatusTransitionError: If the move is not allowed.
    """
    row = session.execute(
        select(OrderTable.status).where(OrderTable.id == order_id).with_for_update()
    ).scalar_one_or_none()
    if row is None:
        raise OrderNotFoundError(f"Order {order_id} not found")

    current = OrderStatus(row)
    if not current.can_transition_to(target):
        raise InvalidStatusTransitionError(current.value, target.value)

    if current != target:
        session.execute(
            update(OrderTable)
            .where(OrderTable.id == order_id)
            .values(status=target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        log.info(f"[Order: {order_id}] Status {current.value} -> {target.value}.")

    return get_order(session, order_id)


# --- Orphaned payments ---

def record_orphaned_payment(
        session: Session,
        payment_intent_id: str,
        reason: str,
        detail: str,
        amount: int,
        owner: Optional[OwnerIdentity] = None,
        lines: Iterable[CartLine] = (),
) -> bool:
    """
    Records a captured payment that has no order.

    There is one row per payment intent. A later failure of the same payment
    overwrites the reason and detail of an open row, so the row always shows
    the most recent failure; owner and lines are only replaced when the later
    attempt knows them. Resolved rows are left alone.

    Returns:
        bool: True if a new ledger row was written.
    """
    owner_json = owner_as_json(owner) if owner is not None else None
    lines_json = [line.as_json() for line in lines]
    values = {
        "id": str(uuid.uuid4()),
        "stripe_payment_intent_id": payment_intent_id,
        "reason": reason,
        "detail": detail,
        "owner_json": owner_json,
        "lines_json": lines_json,
        "amount": amount,
        "created_at": utcnow(),
    }
    if insert_ignoring_conflict(session, OrphanedPaymentTable, values, ["stripe_payment_intent_id"]):
        return True

    changes = {"reason": reason, "detail": detail, "amount": amount}
    if owner_json is not None:
        changes["owner_json"] = owner_json
    if lines_json:
        changes["lines_json"] = lines_json
    result = session.execute(
        update(OrphanedPaymentTable)
        .where(
            OrphanedPaymentTable.stripe_payment_intent_id == payment_intent_id,
            OrphanedPaymentTable.resolved_at.is_(None),
        )
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        log.info(f"[Payment: {payment_intent_id}] Orphaned-payment record updated ({reason}).")
    return False


def resolve_orphaned_payment(session: Session, payment_intent_id: str) -> bool:
    """Marks an open ledger row as resolved once an order exists for the payment."""
    result = session.execute(
        update(OrphanedPaymentTable)
        .where(
            OrphanedPaymentTable.stripe_payment_intent_id == payment_intent_id,
            OrphanedPaymentTable.resolved_at.is_(None),
        )
        .values(resolved_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def list_orphaned_payments(session: Session, include_resolved: bool = False) -> List[OrphanedPaymentTable]:
    stmt = select(OrphanedPaymentTable).order_by(OrphanedPaymentTable.created_at)
    if not include_resolved:
        stmt = stmt.where(OrphanedPaymentTable.resolved_at.is_(None))
    return list(session.execute(stmt).scalars().all())
