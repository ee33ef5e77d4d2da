from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.models import ItemDetail, ItemStatus, Product, Stock
from ftth_inventory.permissions import Permission
from ftth_inventory.schemas import CategorySummary, DashboardStats, LowStockRow, RecentActivity, StockTrendRow

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

LOW_STOCK_THRESHOLD = 10


def _live_items():
    return ItemDetail.is_deleted == False  # noqa: E712


def _status_counts() -> dict[str, int]:
    return {s.value: 0 for s in ItemStatus}


@router.get("/stats", response_model=DashboardStats)
def stats(
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    total_products = session.exec(select(func.count()).select_from(Product)).one()
    by_status = _status_counts()
    for status, n in session.exec(
        select(ItemDetail.status, func.count()).where(_live_items()).group_by(ItemDetail.status)
    ).all():
        by_status[status] = n

    total_qty = session.exec(select(func.coalesce(func.sum(Stock.quantity), 0))).one()
    low = session.exec(
        select(func.count()).select_from(Stock).where(Stock.quantity < LOW_STOCK_THRESHOLD)
    ).one()
    by_category = {
        category: n
        for category, n in session.exec(select(Product.category, func.count()).group_by(Product.category)).all()
    }

    return {
        "total_products": total_products,
        "total_items": sum(by_status.values()),
        "items_by_status": by_status,
        "total_stock_quantity": int(total_qty),
        "low_stock_count": low,
        "products_by_category": by_category,
    }


@router.get("/low-stock", response_model=list[LowStockRow])
def low_stock(
    threshold: int = Query(LOW_STOCK_THRESHOLD, ge=0),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    rows = session.exec(
        select(Stock, Product)
        .join(Product, Product.id == Stock.product_id)
        .where(Stock.quantity < threshold)
        .order_by(Stock.quantity.asc(), Stock.id.asc())
    ).all()
    return [
        {
            "stock_id": stock.id,
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "unit": product.unit,
            "warehouse_id": stock.warehouse_id,
            "quantity": stock.quantity,
        }
        for stock, product in rows
    ]


@router.get("/by-category", response_model=list[CategorySummary])
def by_category(
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    out: dict[str, dict] = {}

    def bucket(category: str) -> dict:
        if category not in out:
            out[category] = {"category": category, "product_count": 0, "total_stock": 0, "item_count": 0, "items_by_status": _status_counts()}
        return out[category]

    for category, n in session.exec(select(Product.category, func.count()).group_by(Product.category)).all():
        bucket(category)["product_count"] = n

    for category, qty in session.exec(
        select(Product.category, func.sum(Stock.quantity))
        .join(Stock, Stock.product_id == Product.id)
        .group_by(Product.category)
    ).all():
        bucket(category)["total_stock"] = int(qty or 0)

    for category, status, n in session.exec(
        select(Product.category, ItemDetail.status, func.count())
        .join(ItemDetail, ItemDetail.product_id == Product.id)
        .where(_live_items())
        .group_by(Product.category, ItemDetail.status)
    ).all():
        b = bucket(category)
        b["item_count"] += n
        b["items_by_status"][status] = b["items_by_status"].get(status, 0) + n

    return sorted(out.values(), key=lambda b: b["category"])


@router.get("/stock-trend", response_model=list[StockTrendRow])
def stock_trend(
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    products = session.exec(select(Product).order_by(Product.name.asc(), Product.id.asc())).all()

    qty = dict(session.exec(select(Stock.product_id, func.sum(Stock.quantity)).group_by(Stock.product_id)).all())
    items: dict[int, dict[str, int]] = {}
    for product_id, status, n in session.exec(
        select(ItemDetail.product_id, ItemDetail.status, func.count())
        .where(_live_items())
        .group_by(ItemDetail.product_id, ItemDetail.status)
    ).all():
        items.setdefault(product_id, {})[status] = n

    rows = []
    for p in products:
        counts = items.get(p.id, {})
        item_count = sum(counts.values())
        rows.append(
            {
                "id": p.id,
                "sku": p.sku,
                "name": p.name,
                "category": p.category,
                "unit": p.unit,
                # Pcs 按件数，其余按库存量
                "stock_level": item_count if p.unit == "Pcs" else int(qty.get(p.id) or 0),
                "available_items": counts.get(ItemStatus.GUDANG.value, 0),
                "deployed_items": counts.get(ItemStatus.TERPASANG.value, 0),
            }
        )
    return rows


@router.get("/recent-activities", response_model=list[RecentActivity])
def recent_activities(
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    items = session.exec(
        select(ItemDetail, Product)
        .join(Product, Product.id == ItemDetail.product_id)
        .order_by(ItemDetail.updated_at.desc(), ItemDetail.id.desc())
        .limit(limit)
    ).all()
    stocks = session.exec(
        select(Stock, Product)
        .join(Product, Product.id == Stock.product_id)
        .order_by(Stock.updated_at.desc(), Stock.id.desc())
        .limit(limit)
    ).all()

    activities = [
        {
            "type": "item",
            "id": item.id,
            "description": f"{product.name} - SN: {item.serial_number}",
            "status": item.status,
            "timestamp": item.updated_at,
        }
        for item, product in items
    ] + [
        {
            "type": "stock",
            "id": stock.id,
            "description": f"{product.name} - Stock updated to {stock.quantity} {product.unit}",
            "timestamp": stock.updated_at,
        }
        for stock, product in stocks
    ]
    activities.sort(key=lambda a: a["timestamp"], reverse=True)
    return activities[:limit]
