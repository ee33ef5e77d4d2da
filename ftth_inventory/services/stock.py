import logging

from sqlalchemy import update
from sqlmodel import Session, select

from ftth_inventory.error import abort, conflict, not_found
from ftth_inventory.models import Product, Stock, utcnow

logger = logging.getLogger(__name__)


def find_stock(session: Session, product_id: int, warehouse_id: str) -> Stock | None:
    stmt = select(Stock).where(Stock.product_id == product_id, Stock.warehouse_id == warehouse_id)
    return session.exec(stmt).first()


def stock_in(session: Session, product_id: int, warehouse_id: str, quantity: int) -> tuple[Stock, int]:
    """Add ``quantity``; creates the (product, warehouse) row on first use. Returns (stock, old_qty)."""
    if quantity <= 0:
        abort(400, "INVALID_QUANTITY", "quantity must be > 0")
    if not session.get(Product, product_id):
        not_found("Product")

    stock = find_stock(session, product_id, warehouse_id)
    if stock is None:
        stock = Stock(product_id=product_id, warehouse_id=warehouse_id, quantity=0)
        session.add(stock)
        session.flush()

    old_qty = stock.quantity
    # ✅ SQL 里自增，并发入库不会互相覆盖
    session.exec(
        update(Stock)
        .where(Stock.id == stock.id)
        .values(quantity=Stock.quantity + quantity, updated_at=utcnow())
    )
    session.refresh(stock)
    return stock, old_qty


def stock_out(session: Session, product_id: int, warehouse_id: str, quantity: int) -> tuple[Stock, int]:
    """Remove ``quantity`` or fail with 409, leaving the row untouched.

    The check and the decrement are one conditional UPDATE, so two
    concurrent stock-outs can never both pass the zero floor.
    """
    if quantity <= 0:
        abort(400, "INVALID_QUANTITY", "quantity must be > 0")

    stock = find_stock(session, product_id, warehouse_id)
    if stock is None:
        not_found("Stock")

    old_qty = stock.quantity
    result = session.exec(
        update(Stock)
        .where(Stock.id == stock.id, Stock.quantity >= quantity)
        .values(quantity=Stock.quantity - quantity, updated_at=utcnow())
    )
    if result.rowcount == 0:
        session.refresh(stock)
        logger.info(
            "stock out rejected: product=%s warehouse=%s have=%s want=%s",
            product_id, warehouse_id, stock.quantity, quantity,
        )
        conflict(
            "INSUFFICIENT_STOCK",
            f"Insufficient stock: have {stock.quantity}, requested {quantity}",
            available=stock.quantity,
        )

    session.refresh(stock)
    return stock, old_qty


def build_note(action: str, quantity: int, old_qty: int, new_qty: int, note: str | None) -> str:
    note_clean = (note or "").strip()
    if note_clean:
        return note_clean
    if action == "STOCK_IN":
        return f"Stock in +{quantity} ({old_qty}->{new_qty})"
    return f"Stock out -{quantity} ({old_qty}->{new_qty})"
