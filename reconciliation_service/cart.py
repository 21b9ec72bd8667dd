"""
cart.py — Cart Snapshot Reader

Materializes "what was in the cart right now" for an owner as an immutable,
priced snapshot. Guest and authenticated carts are looked up by different keys
but produce the same snapshot shape.

The read happens in its own short transaction, before the order transaction
opens; the reader never touches money or inventory.
"""

import logging
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from .db import CartItemTable, CartTable
from .domain import AuthenticatedOwner, CartLine, CartSnapshot, OwnerIdentity
from .errors import EmptyCartError

log = logging.getLogger(__name__)


class CartSnapshotReader:
    """
    Reads and clears carts through an explicitly passed session factory.
    """
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def read(self, owner: OwnerIdentity) -> CartSnapshot:
        """
        Returns the owner's current cart as a snapshot.

        The most recently updated cart wins if an owner has several; lines keep
        the order in which they were added.

        Raises:
            EmptyCartError: If the owner has no cart or the cart has no lines.
        """
        with self._session_factory() as session:
            cart_id = self._find_cart_id(session, owner)
            if cart_id is None:
                raise EmptyCartError(owner.describe())

            rows = session.execute(
                select(CartItemTable)
                .where(CartItemTable.cart_id == cart_id)
                .order_by(CartItemTable.created_at, CartItemTable.id)
            ).scalars().all()

        if not rows:
            raise EmptyCartError(owner.describe())

        lines = tuple(
            CartLine(
                line_id=row.id,
                product_id=row.product_id,
                quantity=row.quantity,
                unit_price=Decimal(row.price),
                customizations=dict(row.customizations_json or {}),
            )
            for row in rows
        )
        return CartSnapshot(owner=owner, cart_id=cart_id, lines=lines)

    def clear(self, snapshot: CartSnapshot) -> int:
        """
        Deletes the lines captured in `snapshot` from the cart.

        Lines added after the snapshot was taken are kept.

        Returns:
            int: Number of cart lines removed.
        """
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(CartItemTable).where(CartItemTable.id.in_(snapshot.line_ids))
            )
            removed = result.rowcount
        log.info(f"[Cart: {snapshot.cart_id}] Cleared {removed} line(s) for {snapshot.owner.describe()}.")
        return removed

    @staticmethod
    def _find_cart_id(session: Session, owner: OwnerIdentity):
        if isinstance(owner, AuthenticatedOwner):
            condition = CartTable.user_id == owner.user_id
        else:
            condition = CartTable.user_id.is_(None) & (CartTable.session_id == owner.session_token)
        return session.execute(
            select(CartTable.id).where(condition).order_by(CartTable.updated_at.desc()).limit(1)
        ).scalar_one_or_none()
