from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session, select

from ftth_inventory.config import get_settings
from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.models import Stock
from ftth_inventory.permissions import Permission
from ftth_inventory.schemas import StockChange, StockRead
from ftth_inventory.services import audit
from ftth_inventory.services.stock import build_note, stock_in, stock_out

router = APIRouter(prefix="/api/stocks", tags=["stocks"])


def _warehouse(data: StockChange) -> str:
    return (data.warehouse_id or "").strip() or get_settings().default_warehouse_id


def _audit_change(session: Session, ctx: AuthContext, action: str, stock: Stock, old_qty: int, data: StockChange, request: Request):
    note = build_note(action, data.quantity, old_qty, stock.quantity, data.note)
    audit.record(
        session,
        actor=ctx.user,
        entity="STOCK",
        entity_id=stock.id,
        action=action,
        before={"product_id": stock.product_id, "warehouse_id": stock.warehouse_id, "quantity": old_qty},
        after={
            "product_id": stock.product_id,
            "warehouse_id": stock.warehouse_id,
            "quantity": stock.quantity,
            "note": note,
        },
        request=request,
    )


@router.get("", response_model=list[StockRead])
def list_stocks(
    warehouse_id: Optional[str] = None,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    stmt = select(Stock)
    if warehouse_id:
        stmt = stmt.where(Stock.warehouse_id == warehouse_id)
    return session.exec(stmt.order_by(Stock.updated_at.desc(), Stock.id.desc())).all()


@router.get("/product/{product_id}", response_model=list[StockRead])
def stock_by_product(
    product_id: int,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    return session.exec(select(Stock).where(Stock.product_id == product_id).order_by(Stock.warehouse_id)).all()


@router.post("/in", response_model=StockRead, status_code=201)
def post_stock_in(
    data: StockChange,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_STOCK_IN)),
):
    stock, old_qty = stock_in(session, data.product_id, _warehouse(data), data.quantity)
    _audit_change(session, ctx, "STOCK_IN", stock, old_qty, data, request)
    session.commit()
    session.refresh(stock)
    return stock


@router.post("/out", response_model=StockRead)
def post_stock_out(
    data: StockChange,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_STOCK_OUT)),
):
    stock, old_qty = stock_out(session, data.product_id, _warehouse(data), data.quantity)
    _audit_change(session, ctx, "STOCK_OUT", stock, old_qty, data, request)
    session.commit()
    session.refresh(stock)
    return stock
