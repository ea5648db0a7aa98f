# Overview: Service-layer stock adjustments; clamps product stock at zero.

# backend/shiftledger/services/inventory_service.py

from sqlalchemy import case, update

from ..extensions import db
from ..models import Product, StockMovement
from shiftledger.time_utils import utcnow
from .concurrency import lock_for_update
from .ledger_service import append_ledger_event
"""
Stock invariants (authoritative)

- products.stock_quantity >= 0 always (also a CHECK constraint).
- A sale never fails on insufficient stock: the counter is clamped at zero
  and the movement is flagged oversold for later reconciliation.
- The counter only changes through SQL-side updates. Application code never
  writes back a value it computed from an earlier read.
- Every sale decrement appends a StockMovement row in the same transaction.
"""


class InventoryError(Exception):
    """Raised for stock adjustment errors."""
    pass


def _clamped(delta):
    new_value = Product.stock_quantity + delta
    return case((new_value < 0, 0), else_=new_value)


def _read_stock(product_id: int, *, lock: bool = False) -> int:
    query = db.session.query(Product.stock_quantity).filter(Product.id == product_id)
    if lock:
        query = lock_for_update(query)
    return query.scalar()


def adjust_product_stock(product_id: int, delta: int) -> int:
    """
    Apply a stock delta as one SQL statement, clamping at zero.

    Returns the stock after the change. Does not commit.
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=_clamped(delta))
        .execution_options(synchronize_session="fetch")
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        raise InventoryError(f"Product {product_id} not found")
    return _read_stock(product_id)


def decrement_stock(
    *,
    store_id: int,
    product_id: int,
    quantity: int,
    sale_id: int | None = None,
    invoice_number: str | None = None,
    actor_user_id: int | None = None,
) -> StockMovement:
    """
    Decrement stock for a sold quantity: new stock = max(0, stock - quantity).

    The common case (enough stock) is a single conditional UPDATE. When it
    matches no row the product is oversold; the row is then locked, the
    current stock read, and the counter clamped to zero in the same
    transaction so quantity_applied is exact.

    Does not commit; the caller's saga step commits the movement together
    with its step marker.
    """
    if quantity <= 0:
        raise InventoryError("Quantity must be positive")

    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise InventoryError(f"Product {product_id} not found")
    if product.store_id != store_id:
        raise InventoryError("Product does not belong to store")

    full = (
        update(Product)
        .where(Product.id == product_id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session="fetch")
    )
    result = db.session.execute(full)

    if result.rowcount:
        applied = quantity
        stock_after = _read_stock(product_id)
    else:
        stock_before = _read_stock(product_id, lock=True)
        stock_after = adjust_product_stock(product_id, -quantity)
        applied = stock_before - stock_after

    movement = StockMovement(
        store_id=store_id,
        product_id=product_id,
        sale_id=sale_id,
        invoice_number=invoice_number,
        quantity_requested=quantity,
        quantity_applied=applied,
        stock_after=stock_after,
        oversold=applied < quantity,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()

    append_ledger_event(
        store_id=store_id,
        event_type="inventory.sale_decrement",
        event_category="inventory",
        entity_type="stock_movement",
        entity_id=movement.id,
        actor_user_id=actor_user_id,
        sale_id=sale_id,
        occurred_at=movement.occurred_at,
        note=f"Sale {invoice_number}" if invoice_number else None,
        payload=f"product_id={product_id},requested={quantity},applied={applied},stock_after={stock_after}",
    )
    return movement


def get_oversold_movements(store_id: int) -> list[StockMovement]:
    """Movements where demand exceeded stock and the counter was clamped."""
    return db.session.query(StockMovement).filter_by(
        store_id=store_id,
        oversold=True,
    ).order_by(StockMovement.occurred_at).all()
