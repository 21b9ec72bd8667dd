"""
inventory.py — Inventory Ledger

Per-product stock counter with decrement-if-available semantics. Every function
here runs inside the caller's transaction: the ledger never commits, so a
failed decrement rolls back together with the order rows written before it.

There is no reservation step. Stock is only touched when an order is
materialized; when two checkouts race for the last unit, whichever commits
first wins and the other one sees the decrement fail.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .db import ProductTable, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductStock:
    """Inventory-relevant slice of a product row."""
    id: str
    name: str
    stock_quantity: int
    price: Decimal
    promotional_price: Optional[Decimal]

    def can_supply(self, quantity: int) -> bool:
        """True if `quantity` units can be taken out of this stock level."""
        return self.stock_quantity > 0 and self.stock_quantity >= quantity


def lock_product(session: Session, product_id: str) -> Optional[ProductStock]:
    """
    Reads a product's stock and holds a row lock on it until the transaction ends.

    Returns:
        Optional[ProductStock]: The product, or None if it does not exist.
    """
    row = session.execute(
        select(ProductTable)
        .where(ProductTable.id == product_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        return None
    return ProductStock(
        id=row.id,
        name=row.name,
        stock_quantity=row.stock_quantity,
        price=row.price,
        promotional_price=row.promotional_price,
    )


def try_decrement(session: Session, product_id: str, quantity: int) -> Tuple[Optional[int], bool]:
    """
    Atomically takes `quantity` units out of stock if that many are available.

    The check and the write are one conditional UPDATE, so no other transaction
    can slip in between them.

    Args:
        session (Session): The open order transaction.
        product_id (str): Product to decrement.
        quantity (int): Units to take; must be positive.

    Returns:
        Tuple[Optional[int], bool]: (new stock, True) on success; (None, False) when
        the product does not exist or has fewer than `quantity` units.

    Raises:
        ValueError: If `quantity` is not positive.
    """
    if quantity <= 0:
        raise ValueError(f"Decrement quantity must be positive, got {quantity}")

    result = session.execute(
        update(ProductTable)
        .where(ProductTable.id == product_id, ProductTable.stock_quantity >= quantity)
        .values(stock_quantity=ProductTable.stock_quantity - quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.info(f"[Product: {product_id}] Decrement of {quantity} refused.")
        return None, False

    new_stock = session.execute(
        select(ProductTable.stock_quantity).where(ProductTable.id == product_id)
    ).scalar_one()
    return new_stock, True
